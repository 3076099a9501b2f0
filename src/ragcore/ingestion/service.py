"""Document ingestion service for ragcore."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Optional, Set

from ragcore.errors import DocumentNotFound, IndexCorruption, RagCoreError
from ragcore.ingestion.chunking import Chunker, reconstruct
from ragcore.ingestion.embedding import EmbeddingPipeline
from ragcore.ingestion.readers import content_hash, read_source, require_text
from ragcore.ingestion.watcher import DocumentChanged, DocumentWatcher
from ragcore.metrics.observability import PipelineMetrics, get_logger
from ragcore.models import Chunk, Document, DocumentStatus, IngestionState
from ragcore.notifications import IngestionStatusChanged, NotificationHub
from ragcore.store.database import Registry
from ragcore.store.locks import KeyedLocks
from ragcore.store.vector import VectorStore

INLINE_SOURCE = "inline"


class IngestionService:
    """Reads, chunks, embeds and stores documents.

    Failures only mark the affected document ``failed``; the chunks indexed
    by an earlier successful run stay queryable until a new run commits.
    """

    _logger = get_logger("ingestion")

    def __init__(
        self,
        registry: Registry,
        store: VectorStore,
        embedder: EmbeddingPipeline,
        chunker: Chunker,
        notifications: NotificationHub,
        *,
        watcher: DocumentWatcher | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._embedder = embedder
        self._chunker = chunker
        self._notifications = notifications
        self._watcher = watcher
        self._locks = KeyedLocks()
        self._repairing: Set[str] = set()
        self._unrepairable: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        store.on_corruption = self.schedule_repair

    @property
    def watcher(self) -> DocumentWatcher | None:
        return self._watcher

    async def ingest(
        self,
        document_id: str,
        source: str | Path | None = None,
        workspace_id: str = "default",
        *,
        text: str | None = None,
        force: bool = False,
    ) -> Document:
        """Index ``source`` (a file path) or inline ``text`` under ``document_id``.

        Unchanged content of an already indexed document is not re-embedded
        unless ``force`` is set.
        """
        label = str(source) if source is not None else INLINE_SOURCE
        async with self._locks.hold(document_id):
            return await self._ingest_locked(document_id, label, workspace_id, text, force)

    async def _ingest_locked(
        self,
        document_id: str,
        source: str,
        workspace_id: str,
        text: str | None,
        force: bool,
    ) -> Document:
        start = time.perf_counter()
        existing = await asyncio.to_thread(self._registry.get_document, document_id)
        try:
            if text is not None:
                body = require_text(text, document_id)
            else:
                body = await asyncio.to_thread(read_source, source)
        except RagCoreError as exc:
            await self._mark_failed(document_id, exc, source=source, workspace_id=workspace_id)
            raise
        digest = content_hash(body)

        if (
            not force
            and existing is not None
            and existing.status.state is IngestionState.INDEXED
            and existing.generation
            and existing.content_hash == digest
            and existing.workspace_id == workspace_id
        ):
            PipelineMetrics.ingestion_outcomes.labels(outcome="unchanged").inc()
            self._logger.info("ingestion.unchanged", document_id=document_id, content_hash=digest)
            self._watch(existing)
            return existing

        await self._set_status(
            document_id,
            DocumentStatus(IngestionState.INDEXING),
            source=source,
            workspace_id=workspace_id,
        )
        try:
            spans = list(self._chunker.chunk(body))
            texts = [span.text for span in spans]
            report = await self._embedder.embed_batch(texts)
            if not report.complete:
                report = await self._embedder.retry_failed(texts, report)
            vectors = report.require_complete()
            chunks = [
                Chunk(document_id=document_id, ordinal=span.ordinal, text=span.text, start=span.start, end=span.end)
                for span in spans
            ]
            await self._store.upsert(
                document_id,
                chunks,
                vectors,
                workspace_id=workspace_id,
                source=source,
                content_hash=digest,
            )
        except RagCoreError as exc:
            await self._mark_failed(document_id, exc)
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self._restore_after_interrupt(document_id))
            raise

        self._unrepairable.discard(document_id)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(duration, len(chunks))
        self._logger.info(
            "ingestion.complete",
            document_id=document_id,
            source=source,
            chunk_count=len(chunks),
            duration_seconds=duration,
        )
        document = await asyncio.to_thread(self._registry.get_document, document_id)
        await self._notifications.publish(IngestionStatusChanged(document_id, document.status))
        self._watch(document)
        return document

    async def delete(self, document_id: str) -> bool:
        """Remove a document and its chunks; deleting an unknown document is a no-op."""
        async with self._locks.hold(document_id):
            if self._watcher is not None:
                self._watcher.unregister(document_id)
            existed = await self._store.delete(document_id)
            self._unrepairable.discard(document_id)
        self._logger.info("ingestion.deleted", document_id=document_id, existed=existed)
        return existed

    async def reingest(self, document_id: str) -> Document:
        """Rebuild the index of a known document from its source, ignoring the stored hash.

        Inline documents are rebuilt from their stored chunks; when those no
        longer cover the indexed text the document is marked ``failed``.
        """
        document = await self.get_document(document_id)
        if document.source != INLINE_SOURCE and Path(document.source).is_file():
            return await self.ingest(document_id, document.source, document.workspace_id, force=True)
        chunks = await self._store.chunks_for(document_id)
        try:
            text = _restore_text(document, chunks)
        except IndexCorruption as exc:
            await self._mark_failed(document_id, exc)
            raise
        return await self.ingest(document_id, None, document.workspace_id, text=text, force=True)

    async def get_document(self, document_id: str) -> Document:
        document = await asyncio.to_thread(self._registry.get_document, document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        return document

    async def run_worker(self, queue: "asyncio.Queue[DocumentChanged]") -> None:
        """Consume change events until cancelled; one failing document never stops the loop."""
        while True:
            event = await queue.get()
            try:
                document = await asyncio.to_thread(self._registry.get_document, event.document_id)
                workspace_id = document.workspace_id if document is not None else "default"
                await self.ingest(event.document_id, event.source, workspace_id)
            except RagCoreError as exc:
                self._logger.warning(
                    "ingestion.reindex_failed",
                    document_id=event.document_id,
                    kind=exc.kind,
                    detail=str(exc),
                )
            finally:
                queue.task_done()

    async def recover(self) -> None:
        """Repair state left behind by an interrupted process."""
        await self._store.recover()
        for document in await asyncio.to_thread(self._registry.list_documents):
            if document.status.state is IngestionState.INDEXING:
                status = (
                    DocumentStatus(IngestionState.INDEXED)
                    if document.generation
                    else DocumentStatus.failed("interrupted")
                )
                document = await asyncio.to_thread(self._registry.set_status, document.document_id, status)
                self._logger.warning("ingestion.recovered", document_id=document.document_id, status=str(status))
            if document.status.state is IngestionState.INDEXED:
                self._watch(document)

    def schedule_repair(self, document_id: str) -> None:
        """Queue one re-ingestion attempt for a document whose stored chunks are unreadable."""
        if document_id in self._repairing or document_id in self._unrepairable:
            return
        self._repairing.add(document_id)
        task = asyncio.get_running_loop().create_task(self._repair(document_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_for_repairs(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _repair(self, document_id: str) -> None:
        self._logger.warning("ingestion.repair", document_id=document_id)
        try:
            await self.reingest(document_id)
        except DocumentNotFound:
            return
        except IndexCorruption as exc:
            self._unrepairable.add(document_id)
            self._logger.error("ingestion.repair_failed", document_id=document_id, kind=exc.kind)
        except RagCoreError as exc:
            self._logger.error("ingestion.repair_failed", document_id=document_id, kind=exc.kind)
        finally:
            self._repairing.discard(document_id)

    async def _mark_failed(
        self,
        document_id: str,
        exc: RagCoreError,
        *,
        source: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> None:
        PipelineMetrics.ingestion_outcomes.labels(outcome="failed").inc()
        self._logger.warning("ingestion.failed", document_id=document_id, kind=exc.kind, detail=str(exc))
        await self._set_status(
            document_id,
            DocumentStatus.failed(f"{exc.kind}: {exc}"),
            source=source,
            workspace_id=workspace_id,
        )

    async def _restore_after_interrupt(self, document_id: str) -> None:
        document = await asyncio.to_thread(self._registry.get_document, document_id)
        if document is not None and document.status.state is IngestionState.INDEXING:
            if document.generation:
                await self._set_status(document_id, DocumentStatus(IngestionState.INDEXED))
            else:
                await self._set_status(document_id, DocumentStatus.failed("interrupted"))

    async def _set_status(
        self,
        document_id: str,
        status: DocumentStatus,
        *,
        source: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(
            self._registry.set_status,
            document_id,
            status,
            source=source,
            workspace_id=workspace_id,
        )
        await self._notifications.publish(IngestionStatusChanged(document_id, status))

    def _watch(self, document: Document) -> None:
        if self._watcher is None or document.source == INLINE_SOURCE:
            return
        if document.document_id in self._watcher.watched():
            self._watcher.mark_indexed(document.document_id, document.content_hash or "")
        elif Path(document.source).is_file():
            self._watcher.register(document.document_id, document.source, document.content_hash)

    async def handle_watch_failure(self, document_id: str, reason: str) -> None:
        """Called by the watcher when a source can no longer be read."""
        await self._set_status(document_id, DocumentStatus.failed(reason))


def _restore_text(document: Document, chunks: list[Chunk]) -> str:
    """Reassemble an inline document from its chunks, refusing gaps and hash mismatches."""
    covered = 0
    for expected, chunk in enumerate(chunks):
        if chunk.ordinal != expected or chunk.start > covered:
            raise IndexCorruption(document.document_id, f"chunk {expected} is missing")
        covered = max(covered, chunk.end)
    text = reconstruct(chunks)
    if not chunks or content_hash(text) != document.content_hash:
        raise IndexCorruption(document.document_id, "stored chunks do not match the indexed content")
    return text
