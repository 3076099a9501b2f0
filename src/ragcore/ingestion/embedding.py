"""Batched embedding of chunk texts with per-batch failure isolation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Sequence

from ragcore.errors import EmbeddingDimensionMismatch, EmbeddingFailed, ModelError, RagCoreError
from ragcore.metrics.observability import PipelineMetrics, get_logger
from ragcore.providers.base import ModelProvider
from ragcore.providers.retry import RetryPolicy, call_with_retry

Vector = tuple[float, ...]


@dataclass(frozen=True)
class FailedRange:
    """Half-open range ``[start, end)`` of input positions that could not be embedded."""

    start: int
    end: int
    error: RagCoreError


@dataclass
class EmbeddingReport:
    """Outcome of :meth:`EmbeddingPipeline.embed_batch`; partial success is allowed."""

    vectors: list[Vector | None]
    failed: list[FailedRange] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed

    @property
    def failed_ranges(self) -> list[tuple[int, int]]:
        return [(item.start, item.end) for item in self.failed]

    def require_complete(self) -> list[Vector]:
        if self.failed:
            first = self.failed[0].error
            raise EmbeddingFailed(
                f"{len(self.failed)} embedding batch(es) failed: {first}",
                failed_ranges=self.failed_ranges,
                cause=first,
            )
        return [vector for vector in self.vectors if vector is not None]


class EmbeddingPipeline:
    """Calls the embedding provider in bounded batches.

    A failing batch is recorded and skipped; batches already embedded are
    kept so only the failed ranges need to be retried.
    """

    def __init__(
        self,
        provider: Callable[[], ModelProvider],
        *,
        batch_size: int = 16,
        policy: RetryPolicy | None = None,
        dim: int | None = None,
    ) -> None:
        self._provider = provider
        self._batch_size = max(1, batch_size)
        self._policy = policy or RetryPolicy()
        self._dim = dim
        self._logger = get_logger("ingestion.embedding")

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingReport:
        report = EmbeddingReport(vectors=[None] * len(texts))
        for start in range(0, len(texts), self._batch_size):
            end = min(start + self._batch_size, len(texts))
            await self._embed_range(texts, start, end, report)
        return report

    async def retry_failed(self, texts: Sequence[str], report: EmbeddingReport) -> EmbeddingReport:
        """Re-embed only the ranges that failed in ``report``."""
        retried = EmbeddingReport(vectors=list(report.vectors))
        for failed in report.failed:
            await self._embed_range(texts, failed.start, failed.end, retried)
        return retried

    async def embed_query(self, text: str) -> Vector:
        provider = self._provider()
        vectors = await call_with_retry(lambda: provider.embed([text]), self._policy, provider_id=provider.provider_id)
        if len(vectors) != 1:
            raise ModelError(f"Expected one query embedding, got {len(vectors)}", provider_id=provider.provider_id)
        self._check_dim(vectors[0])
        return vectors[0]

    async def _embed_range(self, texts: Sequence[str], start: int, end: int, report: EmbeddingReport) -> None:
        provider = self._provider()
        batch = list(texts[start:end])
        try:
            vectors = await call_with_retry(
                lambda: provider.embed(batch),
                self._policy,
                provider_id=provider.provider_id,
            )
            if len(vectors) != len(batch):
                raise ModelError(
                    f"Provider returned {len(vectors)} vectors for {len(batch)} texts",
                    provider_id=provider.provider_id,
                )
            for vector in vectors:
                self._check_dim(vector)
        except RagCoreError as exc:
            PipelineMetrics.embedding_batch_failures.inc()
            self._logger.warning(
                "embedding.batch_failed",
                start=start,
                end=end,
                kind=exc.kind,
                detail=str(exc),
            )
            report.failed.append(FailedRange(start=start, end=end, error=exc))
            return
        report.vectors[start:end] = [tuple(vector) for vector in vectors]

    def _check_dim(self, vector: Sequence[float]) -> None:
        if self._dim is None:
            self._dim = len(vector)
        elif len(vector) != self._dim:
            raise EmbeddingDimensionMismatch(
                f"Embedding dimensionality {len(vector)} does not match store dimensionality {self._dim}"
            )
