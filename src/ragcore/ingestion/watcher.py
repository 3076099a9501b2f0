"""Poll registered document sources and emit debounced change events."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from ragcore.errors import InvalidInput
from ragcore.ingestion.readers import content_hash, read_source
from ragcore.metrics.observability import get_logger

FailureHandler = Callable[[str, str], Awaitable[None]]


@dataclass(frozen=True)
class DocumentChanged:
    document_id: str
    source: str
    content_hash: str


@dataclass
class _WatchedSource:
    document_id: str
    path: Path
    indexed_hash: Optional[str]
    pending_hash: Optional[str] = None
    changed_at: float = 0.0


class DocumentWatcher:
    """Turns content changes of watched files into ``DocumentChanged`` events.

    A change is only emitted once the new content has stayed the same for
    ``debounce_seconds``; every further edit restarts that quiet period. A
    source that can no longer be read is reported through ``on_failure`` and
    dropped from the watch list.
    """

    def __init__(
        self,
        queue: "asyncio.Queue[DocumentChanged]",
        *,
        debounce_seconds: float = 2.0,
        poll_interval_seconds: float = 1.0,
        on_failure: FailureHandler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._debounce = debounce_seconds
        self._interval = poll_interval_seconds
        self.on_failure = on_failure
        self._clock = clock
        self._sources: Dict[str, _WatchedSource] = {}
        self._logger = get_logger("ingestion.watcher")

    @property
    def queue(self) -> "asyncio.Queue[DocumentChanged]":
        return self._queue

    def register(self, document_id: str, path: str | Path, indexed_hash: str | None = None) -> None:
        self._sources[document_id] = _WatchedSource(document_id, Path(path), indexed_hash)
        self._logger.debug("watcher.register", document_id=document_id, path=str(path))

    def unregister(self, document_id: str) -> bool:
        return self._sources.pop(document_id, None) is not None

    def mark_indexed(self, document_id: str, indexed_hash: str) -> None:
        watched = self._sources.get(document_id)
        if watched is not None:
            watched.indexed_hash = indexed_hash
            if watched.pending_hash == indexed_hash:
                watched.pending_hash = None

    def watched(self) -> List[str]:
        return sorted(self._sources)

    async def poll_once(self, now: float | None = None) -> List[DocumentChanged]:
        now = self._clock() if now is None else now
        emitted: List[DocumentChanged] = []
        for watched in list(self._sources.values()):
            try:
                digest = await asyncio.to_thread(_hash_source, watched.path)
            except InvalidInput as exc:
                await self._fail(watched, str(exc))
                continue
            if self._sources.get(watched.document_id) is not watched:
                continue
            if digest == watched.indexed_hash:
                watched.pending_hash = None
                continue
            if digest != watched.pending_hash:
                watched.pending_hash = digest
                watched.changed_at = now
                continue
            if now - watched.changed_at < self._debounce:
                continue
            event = DocumentChanged(watched.document_id, str(watched.path), digest)
            watched.indexed_hash = digest
            watched.pending_hash = None
            await self._queue.put(event)
            emitted.append(event)
            self._logger.info("watcher.changed", document_id=watched.document_id, content_hash=digest)
        return emitted

    async def run(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def _fail(self, watched: _WatchedSource, reason: str) -> None:
        self._sources.pop(watched.document_id, None)
        self._logger.warning("watcher.source_failed", document_id=watched.document_id, reason=reason)
        if self.on_failure is not None:
            await self.on_failure(watched.document_id, reason)


def _hash_source(path: Path) -> str:
    return content_hash(read_source(path))
