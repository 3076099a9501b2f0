"""Retrieval orchestration built on top of the vector store."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Sequence

from ragcore.ingestion.embedding import EmbeddingPipeline
from ragcore.metrics.observability import PipelineMetrics, get_logger
from ragcore.models import RetrievalResult
from ragcore.store.vector import QueryFilter, VectorStore


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    top_k: int = 5
    max_top_k: int | None = 50
    min_score: float = 0.0


class Retriever:
    """Embeds a query and returns the closest chunks within a scope."""

    def __init__(
        self,
        embedder: EmbeddingPipeline,
        store: VectorStore,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    async def retrieve(
        self,
        query: str,
        *,
        top_k: int | None = None,
        workspace_id: str | None = None,
        document_ids: Sequence[str] | None = None,
    ) -> RetrievalResult:
        limit = top_k or self._config.top_k
        if self._config.max_top_k:
            limit = min(limit, self._config.max_top_k)
        limit = max(1, limit)
        start = time.perf_counter()
        vector = await self._embedder.embed_query(query)
        scope = QueryFilter(
            workspace_id=workspace_id,
            document_ids=tuple(document_ids) if document_ids else None,
        )
        result = await self._store.query(vector, limit, scope)
        hits = tuple(hit for hit in result if hit.score >= self._config.min_score)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(hits), (hit.score for hit in hits))
        self._logger.info(
            "retrieval.complete",
            chunk_count=len(hits),
            duration_seconds=duration,
            top_k=limit,
            workspace_id=workspace_id,
        )
        return RetrievalResult(hits=hits)
