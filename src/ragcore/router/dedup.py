"""Request fingerprints and in-flight de-duplication."""

from __future__ import annotations

import asyncio
import hashlib
import json
import threading
import unicodedata
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, TypeVar

from ragcore.metrics.observability import PipelineMetrics, get_logger

T = TypeVar("T")


def normalize(value: Any) -> Any:
    """Canonical form of request parameters: NFC-normalized, stripped strings and plain containers."""
    if isinstance(value, str):
        return unicodedata.normalize("NFC", value).strip()
    if isinstance(value, Mapping):
        return {str(key): normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [normalize(item) for item in value]
        return sorted(items, key=repr) if isinstance(value, (set, frozenset)) else items
    return value


def fingerprint(kind: str, params: Mapping[str, Any], *, verbatim: Iterable[str] = ()) -> str:
    """Hash of ``kind`` and normalized ``params``; keys in ``verbatim`` (document bodies) are hashed as given."""
    kept = set(verbatim)
    canonical = {str(key): value if key in kept else normalize(value) for key, value in params.items()}
    payload = json.dumps({"op": kind, "params": canonical}, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class InFlightRequests:
    """Map of fingerprint to the task currently executing it.

    Callers with a fingerprint already in flight wait on the same task
    instead of starting another. Entries are dropped as soon as the task
    finishes, successfully or not; nothing is cached beyond that.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()
        self._logger = get_logger("router.dedup")

    async def run(self, key: str, factory: Callable[[], Awaitable[T]], *, operation: str = "unknown") -> T:
        with self._lock:
            task = self._pending.get(key)
            joined = task is not None
            if task is None:
                task = asyncio.ensure_future(factory())
                self._pending[key] = task
                task.add_done_callback(lambda done, key=key: self._discard(key, done))
        if joined:
            PipelineMetrics.deduplicated_requests.labels(operation=operation).inc()
            self._logger.info("router.deduplicated", operation=operation, fingerprint=key[:12])
        return await asyncio.shield(task)

    def _discard(self, key: str, task: asyncio.Future) -> None:
        with self._lock:
            if self._pending.get(key) is task:
                del self._pending[key]
        if not task.cancelled():
            # Mark the exception retrieved when every caller went away.
            task.exception()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
