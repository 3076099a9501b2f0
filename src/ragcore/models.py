"""Shared domain models used across the ragcore pipeline."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Sequence


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionState(str, enum.Enum):
    PENDING = "pending"
    INDEXING = "indexing"
    INDEXED = "indexed"
    FAILED = "failed"


@dataclass(frozen=True)
class DocumentStatus:
    """Ingestion status; ``reason`` is only set for ``FAILED``."""

    state: IngestionState
    reason: str | None = None

    @classmethod
    def failed(cls, reason: str) -> "DocumentStatus":
        return cls(IngestionState.FAILED, reason)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value}({self.reason})"
        return self.state.value


@dataclass(frozen=True)
class Document:
    """Registry record for an ingested document source."""

    document_id: str
    source: str
    workspace_id: str
    status: DocumentStatus
    content_hash: str | None = None
    generation: str | None = None
    chunk_count: int = 0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ChunkSpan:
    """Span of the source text produced by the chunker.

    ``start``/``end`` are character offsets into the original text and
    ``text == original[start:end]``.
    """

    ordinal: int
    start: int
    end: int
    text: str


@dataclass(frozen=True)
class Chunk:
    """Chunk of document text with its embedding vector."""

    document_id: str
    ordinal: int
    text: str
    vector: tuple[float, ...] = ()
    start: int = 0
    end: int = 0

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}-{self.ordinal}"


@dataclass(frozen=True)
class RetrievedChunk:
    """Chunk returned from the vector store during retrieval."""

    chunk: Chunk
    score: float
    workspace_id: str | None = None


@dataclass(frozen=True)
class RetrievalResult:
    """Ranked retrieval hits, descending score, ties broken by chunk ordinal."""

    hits: Sequence[RetrievedChunk] = ()

    def __iter__(self):
        return iter(self.hits)

    def __len__(self) -> int:
        return len(self.hits)

    def __bool__(self) -> bool:
        return bool(self.hits)


@dataclass(frozen=True)
class Citation:
    document_id: str
    ordinal: int
    score: float


class TurnRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnStatus(str, enum.Enum):
    STREAMING = "streaming"
    COMPLETE = "complete"
    PARTIAL = "partial"
    ERROR = "error"


@dataclass(frozen=True)
class Turn:
    """One conversation turn. Finalized turns are never mutated."""

    role: TurnRole
    content: str
    created_at: datetime = field(default_factory=utcnow)
    citations: Sequence[Citation] = ()
    status: TurnStatus = TurnStatus.COMPLETE
    error_kind: str | None = None
    error_message: str | None = None

    @property
    def is_final(self) -> bool:
        return self.status is not TurnStatus.STREAMING

    def finalized(self, status: TurnStatus, **changes) -> "Turn":
        return replace(self, status=status, **changes)
