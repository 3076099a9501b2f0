"""Retry and timeout policy for provider calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from ragcore.errors import ProviderError, ProviderRateLimited, ProviderUnavailable
from ragcore.metrics.observability import PipelineMetrics, get_logger

T = TypeVar("T")

_logger = get_logger("providers.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for retryable provider errors."""

    max_attempts: int = 4
    initial_delay: float = 0.5
    max_delay: float = 8.0
    rate_limit_default_delay: float = 2.0
    timeout: float | None = 60.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            rate_limit_default_delay=settings.rate_limit_default_delay_seconds,
            timeout=settings.provider_timeout_seconds,
        )


class wait_for_provider(wait_base):  # noqa: N801 - tenacity naming style
    """Exponential backoff for outages, provider-supplied delay for rate limits."""

    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ProviderRateLimited):
            if exc.retry_after is not None:
                return exc.retry_after
            return self._policy.rate_limit_default_delay
        delay = self._policy.initial_delay * (2 ** (retry_state.attempt_number - 1))
        return min(self._policy.max_delay, delay)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    kind = getattr(exc, "kind", "unknown")
    PipelineMetrics.observe_provider_error(kind)
    _logger.warning(
        "provider.retry",
        attempt=retry_state.attempt_number,
        kind=kind,
        detail=str(exc),
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
    )


def build_retrying(
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> AsyncRetrying:
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_for_provider(policy),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
        reraise=True,
        **kwargs,
    )


async def with_timeout(awaitable: Awaitable[T], timeout: float | None, *, provider_id: str | None = None) -> T:
    """Await ``awaitable``; a call that neither completes nor errors in time is an outage."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise ProviderUnavailable(
            f"Provider did not respond within {timeout:.1f}s",
            provider_id=provider_id,
        ) from exc


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    provider_id: str | None = None,
) -> T:
    """Run ``call`` under ``policy``, re-raising the last error once attempts run out."""
    async for attempt in build_retrying(policy):
        with attempt:
            return await with_timeout(call(), policy.timeout, provider_id=provider_id)
    raise AssertionError("unreachable")  # pragma: no cover
