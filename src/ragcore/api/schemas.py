"""Pydantic models for the ragcore API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ragcore.chat.session import ChatSession
from ragcore.models import Document, RetrievalResult, Turn


class CitationModel(BaseModel):
    document_id: str
    ordinal: int
    score: float


class TurnModel(BaseModel):
    role: str
    content: str
    status: str
    created_at: datetime
    citations: List[CitationModel] = Field(default_factory=list)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_turn(cls, turn: Turn) -> "TurnModel":
        return cls(
            role=turn.role.value,
            content=turn.content,
            status=turn.status.value,
            created_at=turn.created_at,
            citations=[
                CitationModel(document_id=c.document_id, ordinal=c.ordinal, score=c.score) for c in turn.citations
            ],
            error_kind=turn.error_kind,
            error_message=turn.error_message,
        )


class CreateSessionRequest(BaseModel):
    workspace_id: str = Field(default="default", min_length=1)
    document_ids: List[str] = Field(default_factory=list, description="Restrict retrieval to these documents")
    provider_id: Optional[str] = Field(default=None, description="Provider to use; defaults to the active one")


class SessionResponse(BaseModel):
    session_id: str
    workspace_id: str
    provider_id: Optional[str]
    document_ids: List[str]
    state: str
    turns: List[TurnModel]
    pending_turn: Optional[TurnModel] = None

    @classmethod
    def from_session(cls, session: ChatSession) -> "SessionResponse":
        pending = session.pending_turn
        return cls(
            session_id=session.session_id,
            workspace_id=session.workspace_id,
            provider_id=session.provider_id,
            document_ids=list(session.document_ids),
            state=session.state.value,
            turns=[TurnModel.from_turn(turn) for turn in session.turns],
            pending_turn=TurnModel.from_turn(pending) if pending is not None else None,
        )


class MessageRequest(BaseModel):
    text: str = Field(..., min_length=1, description="User message")


class CancelRequest(BaseModel):
    keep_partial: bool = Field(default=True, description="Keep the streamed text as a partial turn")


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool


class AcknowledgeResponse(BaseModel):
    session_id: str
    acknowledged: bool


class IngestRequest(BaseModel):
    document_id: str = Field(..., min_length=1)
    source: Optional[str] = Field(default=None, description="Path of a local document file")
    text: Optional[str] = Field(default=None, description="Inline document text")
    workspace_id: str = Field(default="default", min_length=1)

    @model_validator(mode="after")
    def _require_content(self) -> "IngestRequest":
        if self.source is None and self.text is None:
            raise ValueError("Provide either source or text")
        return self


class DocumentResponse(BaseModel):
    document_id: str
    source: str
    workspace_id: str
    state: str
    reason: Optional[str] = None
    content_hash: Optional[str] = None
    chunk_count: int = Field(..., ge=0)
    updated_at: datetime

    @classmethod
    def from_document(cls, document: Document) -> "DocumentResponse":
        return cls(
            document_id=document.document_id,
            source=document.source,
            workspace_id=document.workspace_id,
            state=document.status.state.value,
            reason=document.status.reason,
            content_hash=document.content_hash,
            chunk_count=document.chunk_count,
            updated_at=document.updated_at,
        )


class DeleteDocumentResponse(BaseModel):
    document_id: str
    deleted: bool


class QueryRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Text to find similar chunks for")
    k: int = Field(default=5, ge=1, le=50)
    workspace_id: Optional[str] = None
    document_ids: List[str] = Field(default_factory=list)


class QueryHit(BaseModel):
    document_id: str
    ordinal: int
    text: str
    score: float
    workspace_id: Optional[str] = None


class QueryResponse(BaseModel):
    hits: List[QueryHit]

    @classmethod
    def from_result(cls, result: RetrievalResult) -> "QueryResponse":
        return cls(
            hits=[
                QueryHit(
                    document_id=hit.chunk.document_id,
                    ordinal=hit.chunk.ordinal,
                    text=hit.chunk.text,
                    score=hit.score,
                    workspace_id=hit.workspace_id,
                )
                for hit in result
            ]
        )


class IndexStatsResponse(BaseModel):
    collection: str
    total_chunks: int
    workspaces: Dict[str, int]


class TeardownResponse(BaseModel):
    workspace_id: str
    deleted_sessions: int


class ErrorResponse(BaseModel):
    kind: str
    detail: str
    correlation_id: str
