"""Chroma-backed vector store with atomic per-document replacement."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterable, Mapping, MutableMapping, Sequence
from uuid import uuid4

import chromadb
import numpy as np
from chromadb.api import ClientAPI

from ragcore.errors import EmbeddingDimensionMismatch, IndexCorruption, InvalidInput
from ragcore.metrics.observability import get_logger
from ragcore.models import Chunk, RetrievalResult, RetrievedChunk
from ragcore.store.database import Registry
from ragcore.store.locks import KeyedLocks

_DIMENSION_KEY = "embedding_dim"
_METRIC_KEY = "metric"
_WRITE_BATCH = 1000


@dataclass(frozen=True)
class QueryFilter:
    """Restricts a query to a workspace and/or a set of documents."""

    workspace_id: str | None = None
    document_ids: tuple[str, ...] | None = None


class VectorStore:
    """Persists chunk embeddings and answers cosine nearest-neighbour queries.

    Every ``upsert`` writes the new chunks under a fresh generation id and
    then flips the document's active generation in the SQL registry in one
    transaction. Queries only read active generations, so they see either
    the old or the new chunk set of a document, never a mix, and rows from
    an interrupted ingestion stay invisible until ``recover`` removes them.
    Retired generations are purged once no query is reading.
    """

    metric = "cosine"

    def __init__(
        self,
        registry: Registry,
        collection_name: str = "ragcore-chunks",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
        exact_search_threshold: int = 2000,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": self.metric},
        )
        self._registry = registry
        self._registry.set_meta_if_absent(_METRIC_KEY, self.metric)
        self._exact_threshold = exact_search_threshold
        self._locks = KeyedLocks()
        self._readers = 0
        self._retired: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._corrupt: set[str] = set()
        self._corrupt_lock = threading.Lock()
        self.on_corruption: Callable[[str], None] | None = None
        self._logger = get_logger("store.vector")

    @property
    def dimension(self) -> int | None:
        value = self._registry.get_meta(_DIMENSION_KEY)
        return int(value) if value is not None else None

    async def upsert(
        self,
        document_id: str,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]] | None = None,
        *,
        workspace_id: str,
        source: str = "",
        content_hash: str | None = None,
    ) -> str:
        """Replace every chunk of ``document_id``; returns the new generation id.

        ``vectors`` pairs with ``chunks`` by position; when omitted each chunk
        must already carry its vector.
        """
        if not chunks:
            raise InvalidInput(f"No chunks to store for {document_id}")
        if vectors is not None:
            if len(vectors) != len(chunks):
                raise InvalidInput(f"Got {len(vectors)} vectors for {len(chunks)} chunks")
            chunks = [replace(chunk, vector=tuple(vector)) for chunk, vector in zip(chunks, vectors)]
        await asyncio.to_thread(self._check_dimension, chunks)
        async with self._locks.hold(document_id):
            generation = uuid4().hex
            try:
                await asyncio.to_thread(self._insert, document_id, generation, workspace_id, source, chunks)
                stored = await asyncio.to_thread(self._generation_size, generation)
                if stored != len(chunks):
                    raise IndexCorruption(document_id, f"stored {stored} of {len(chunks)} chunks")
            except BaseException:
                await asyncio.to_thread(self._delete_generations, {generation})
                raise
            previous = await asyncio.to_thread(
                self._registry.commit_generation,
                document_id,
                generation=generation,
                content_hash=content_hash,
                chunk_count=len(chunks),
                workspace_id=workspace_id,
                source=source,
            )
            if previous:
                await self._retire(previous)
        self._logger.info(
            "store.upsert",
            document_id=document_id,
            generation=generation,
            chunk_count=len(chunks),
        )
        return generation

    async def delete(self, document_id: str) -> bool:
        """Remove all chunks for ``document_id``; absent documents are not an error."""
        async with self._locks.hold(document_id):
            previous = await asyncio.to_thread(self._registry.remove_document, document_id)
            if previous:
                await self._retire(previous)
        self._logger.info("store.delete", document_id=document_id, existed=previous is not None)
        return previous is not None

    async def query(
        self,
        vector: Sequence[float],
        k: int,
        filter: QueryFilter | None = None,
    ) -> RetrievalResult:
        if k <= 0:
            return RetrievalResult()
        scope = filter or QueryFilter()
        self._readers += 1
        try:
            generations = await asyncio.to_thread(
                self._registry.active_generations,
                workspace_id=scope.workspace_id,
                document_ids=scope.document_ids,
            )
            if not generations:
                return RetrievalResult()
            hits = await asyncio.to_thread(self._search, tuple(vector), k, generations)
            self._dispatch_corruption()
        finally:
            self._readers -= 1
            if self._readers == 0 and self._retired:
                self._spawn(self._purge())
        return RetrievalResult(hits=tuple(hits))

    async def count(self) -> int:
        documents = await asyncio.to_thread(self._registry.list_documents)
        return sum(doc.chunk_count for doc in documents if doc.generation)

    async def count_by_workspace(self) -> Mapping[str, int]:
        counts: dict[str, int] = {}
        for doc in await asyncio.to_thread(self._registry.list_documents):
            if doc.generation:
                counts[doc.workspace_id] = counts.get(doc.workspace_id, 0) + doc.chunk_count
        return counts

    async def chunks_for(self, document_id: str) -> list[Chunk]:
        """Active chunks of a document ordered by ordinal."""
        generations = await asyncio.to_thread(self._registry.active_generations, document_ids=[document_id])
        generation = generations.get(document_id)
        if generation is None:
            return []
        rows = await asyncio.to_thread(
            self._collection.get,
            where={"generation": generation},
            include=["metadatas", "documents"],
        )
        chunks = [
            self._deserialize(chunk_id, text, metadata, generations)
            for chunk_id, text, metadata in zip(rows["ids"], rows["documents"], rows["metadatas"])
        ]
        self._dispatch_corruption()
        return sorted((c for c in chunks if c is not None), key=lambda c: c.ordinal)

    async def recover(self) -> int:
        """Delete rows whose generation is not active, left behind by interrupted writes."""
        active = set((await asyncio.to_thread(self._registry.active_generations)).values())
        orphans = await asyncio.to_thread(self._orphan_ids, active)
        if orphans:
            await asyncio.to_thread(self._delete_ids, orphans)
        self._logger.info("store.recover", orphan_rows=len(orphans))
        return len(orphans)

    async def flush(self) -> None:
        """Wait for pending purges of retired generations."""
        if self._retired and self._readers == 0:
            await self._purge()
        while self._background:
            await asyncio.gather(*list(self._background))

    # Internals -------------------------------------------------------------

    def _check_dimension(self, chunks: Sequence[Chunk]) -> None:
        dims = {len(chunk.vector) for chunk in chunks}
        if len(dims) != 1 or 0 in dims:
            raise EmbeddingDimensionMismatch("Chunks must carry vectors of one non-zero dimensionality")
        dim = dims.pop()
        stored = int(self._registry.set_meta_if_absent(_DIMENSION_KEY, str(dim)))
        if stored != dim:
            raise EmbeddingDimensionMismatch(
                f"Vector dimensionality {dim} does not match store dimensionality {stored}"
            )

    def _insert(
        self,
        document_id: str,
        generation: str,
        workspace_id: str,
        source: str,
        chunks: Sequence[Chunk],
    ) -> None:
        for offset in range(0, len(chunks), _WRITE_BATCH):
            batch = chunks[offset : offset + _WRITE_BATCH]
            self._collection.add(
                ids=[f"{generation}-{chunk.ordinal}" for chunk in batch],
                documents=[chunk.text for chunk in batch],
                embeddings=[list(chunk.vector) for chunk in batch],
                metadatas=[self._serialize(chunk, document_id, generation, workspace_id, source) for chunk in batch],
            )

    def _generation_size(self, generation: str) -> int:
        return len(self._collection.get(where={"generation": generation}, include=["metadatas"])["ids"])

    def _search(self, vector: tuple[float, ...], k: int, generations: Mapping[str, str]) -> list[RetrievedChunk]:
        where = self._where_generations(generations.values())
        scoped = self._collection.get(where=where, include=["metadatas"])["ids"]
        if not scoped:
            return []
        if len(scoped) <= self._exact_threshold:
            rows = self._collection.get(
                ids=list(scoped),
                include=["embeddings", "metadatas", "documents"],
            )
            candidates = self._exact_scores(vector, rows, generations)
        else:
            results = self._collection.query(
                query_embeddings=[list(vector)],
                n_results=min(k, len(scoped)),
                where=where,
                include=["metadatas", "documents", "distances"],
            )
            candidates = self._approximate_scores(results, generations)
        candidates.sort(key=lambda hit: (-hit.score, hit.chunk.ordinal, hit.chunk.document_id))
        return candidates[:k]

    def _exact_scores(
        self,
        vector: tuple[float, ...],
        rows: Mapping[str, object],
        generations: Mapping[str, str],
    ) -> list[RetrievedChunk]:
        embeddings = rows.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return []
        matrix = np.asarray(embeddings, dtype=np.float64)
        query = np.asarray(vector, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
            raise EmbeddingDimensionMismatch(
                f"Query dimensionality {query.shape[0]} does not match store rows"
            )
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query) or 1.0)
        norms[norms == 0] = 1.0
        scores = (matrix @ query) / norms
        hits: list[RetrievedChunk] = []
        for chunk_id, text, metadata, score in zip(rows["ids"], rows["documents"], rows["metadatas"], scores):
            chunk = self._deserialize(chunk_id, text, metadata, generations)
            if chunk is not None:
                hits.append(RetrievedChunk(chunk=chunk, score=float(score), workspace_id=_workspace(metadata)))
        return hits

    def _approximate_scores(self, results: Mapping[str, object], generations: Mapping[str, str]) -> list[RetrievedChunk]:
        ids = _first(results.get("ids"))
        documents = _first(results.get("documents"))
        metadatas = _first(results.get("metadatas"))
        distances = _first(results.get("distances"))
        hits: list[RetrievedChunk] = []
        for chunk_id, text, metadata, distance in zip(ids, documents, metadatas, distances):
            chunk = self._deserialize(chunk_id, text, metadata, generations)
            if chunk is not None:
                hits.append(RetrievedChunk(chunk=chunk, score=1.0 - float(distance), workspace_id=_workspace(metadata)))
        return hits

    def _deserialize(
        self,
        chunk_id: str,
        text: str | None,
        metadata: Mapping[str, object] | None,
        generations: Mapping[str, str],
    ) -> Chunk | None:
        metadata = metadata or {}
        document_id = str(metadata.get("document_id", ""))
        try:
            if not document_id or text is None:
                raise ValueError("missing document id or text")
            ordinal = int(metadata["ordinal"])
            start = int(metadata.get("start", 0))
            end = int(metadata.get("end", 0))
        except (KeyError, TypeError, ValueError) as exc:
            self._report_corruption(document_id or _generation_owner(chunk_id, metadata, generations), str(exc))
            return None
        if generations.get(document_id) != metadata.get("generation"):
            return None
        return Chunk(document_id=document_id, ordinal=ordinal, text=text, start=start, end=end)

    def _report_corruption(self, document_id: str | None, detail: str) -> None:
        self._logger.error("store.corruption", document_id=document_id, detail=detail)
        if document_id:
            with self._corrupt_lock:
                self._corrupt.add(document_id)

    def _dispatch_corruption(self) -> None:
        with self._corrupt_lock:
            corrupt, self._corrupt = self._corrupt, set()
        if self.on_corruption is None:
            return
        for document_id in sorted(corrupt):
            self.on_corruption(document_id)

    async def _retire(self, generation: str) -> None:
        self._retired.add(generation)
        if self._readers == 0:
            await self._purge()

    async def _purge(self) -> None:
        pending, self._retired = set(self._retired), set()
        if pending:
            await asyncio.to_thread(self._delete_generations, pending)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _delete_generations(self, generations: set[str]) -> None:
        self._collection.delete(where=self._where_generations(generations))

    def _orphan_ids(self, active: set[str]) -> list[str]:
        orphans: list[str] = []
        limit = 1000
        offset = 0
        while True:
            batch = self._collection.get(include=["metadatas"], limit=limit, offset=offset)
            ids = batch.get("ids") or []
            metadatas = batch.get("metadatas") or []
            for chunk_id, metadata in zip(ids, metadatas):
                if not isinstance(metadata, Mapping) or metadata.get("generation") not in active:
                    orphans.append(chunk_id)
            if len(ids) < limit:
                break
            offset += limit
        return orphans

    def _delete_ids(self, ids: Sequence[str]) -> None:
        for offset in range(0, len(ids), _WRITE_BATCH):
            self._collection.delete(ids=list(ids[offset : offset + _WRITE_BATCH]))

    @staticmethod
    def _where_generations(generations: Iterable[str]) -> dict[str, object]:
        values = sorted(set(generations))
        if len(values) == 1:
            return {"generation": values[0]}
        return {"generation": {"$in": values}}

    @staticmethod
    def _serialize(
        chunk: Chunk,
        document_id: str,
        generation: str,
        workspace_id: str,
        source: str,
    ) -> MutableMapping[str, object]:
        return {
            "document_id": document_id,
            "workspace_id": workspace_id,
            "generation": generation,
            "ordinal": chunk.ordinal,
            "start": chunk.start,
            "end": chunk.end,
            "source": source,
        }


def _first(value: object) -> list:
    if isinstance(value, list):
        return value[0] if value else []
    return []


def _workspace(metadata: Mapping[str, object] | None) -> str | None:
    if not metadata:
        return None
    value = metadata.get("workspace_id")
    return str(value) if value is not None else None


def _generation_owner(chunk_id: str, metadata: Mapping[str, object], generations: Mapping[str, str]) -> str | None:
    generation = metadata.get("generation") if metadata else None
    if generation is None:
        generation = chunk_id.rsplit("-", 1)[0]
    for document_id, active in generations.items():
        if active == generation:
            return document_id
    return None

