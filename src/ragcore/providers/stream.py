"""Cancellable, pull-based token stream over a provider completion."""

from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Awaitable, Callable

from ragcore.errors import ProviderError, ProviderUnavailable
from ragcore.providers.base import TokenEvent
from ragcore.providers.retry import RetryPolicy, build_retrying

_CANCELLED = object()


class CancellationToken:
    """One-shot cancellation signal observed at every stream yield point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class TokenStream:
    """Async iterator over a provider completion.

    Opening the stream (up to the first event) is retried under ``policy``;
    once a token has been delivered, errors surface without retry so no
    token is ever delivered twice. Every pull races the cancellation token
    and the idle timeout, and the underlying provider iterator is closed as
    soon as the stream ends for any reason.
    """

    def __init__(
        self,
        opener: Callable[[], AsyncIterator[TokenEvent]],
        *,
        cancel: CancellationToken,
        policy: RetryPolicy | None = None,
        provider_id: str | None = None,
    ) -> None:
        self._opener = opener
        self._cancel = cancel
        self._policy = policy or RetryPolicy()
        self._provider_id = provider_id
        self._iterator: AsyncIterator[TokenEvent] | None = None
        self._finished = False
        self.cancelled = False
        self.attempts = 0

    def __aiter__(self) -> "TokenStream":
        return self

    async def __anext__(self) -> TokenEvent:
        if self._finished:
            raise StopAsyncIteration
        try:
            if self._iterator is None:
                event = await self._open()
            else:
                event = await self._pull(self._iterator)
        except BaseException:
            await self.aclose()
            raise
        if event is _CANCELLED:
            self.cancelled = True
            await self.aclose()
            raise StopAsyncIteration
        if event.done:
            await self.aclose()
        return event

    async def _open(self):
        async for attempt in build_retrying(self._policy, sleep=self._sleep):
            with attempt:
                if self._cancel.cancelled:
                    return _CANCELLED
                self.attempts += 1
                iterator = self._opener()
                try:
                    event = await self._pull(iterator)
                except BaseException:
                    await _close(iterator)
                    raise
                if event is _CANCELLED:
                    await _close(iterator)
                    return event
                self._iterator = iterator
                return event
        raise AssertionError("unreachable")  # pragma: no cover

    async def _pull(self, iterator: AsyncIterator[TokenEvent]):
        pending = asyncio.ensure_future(iterator.__anext__())
        cancel_wait = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {pending, cancel_wait},
                timeout=self._policy.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
        if pending in done:
            try:
                return pending.result()
            except StopAsyncIteration:
                return TokenEvent(text="", done=True, finish_reason="stop")
        pending.cancel()
        await asyncio.wait({pending})
        if not pending.cancelled():
            pending.exception()
        if cancel_wait in done or self._cancel.cancelled:
            return _CANCELLED
        raise ProviderUnavailable(
            f"Provider produced no output within {self._policy.timeout:.1f}s",
            provider_id=self._provider_id,
        )

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)

    async def aclose(self) -> None:
        self._finished = True
        iterator, self._iterator = self._iterator, None
        if iterator is not None:
            await _close(iterator)


async def _close(iterator: AsyncIterator[TokenEvent]) -> None:
    closer: Callable[[], Awaitable[None]] | None = getattr(iterator, "aclose", None)
    if closer is None:
        return
    with contextlib.suppress(RuntimeError, StopAsyncIteration, ProviderError):
        await closer()
