"""Typed operations and their dispatch onto the chat and ingestion services."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from ragcore.chat.manager import ChatSessionManager
from ragcore.errors import InvalidInput
from ragcore.ingestion.service import IngestionService
from ragcore.metrics.observability import get_logger
from ragcore.retrieval.service import Retriever
from ragcore.router.dedup import InFlightRequests, fingerprint


@dataclass(frozen=True)
class CreateSession:
    workspace_id: str = "default"
    document_ids: Tuple[str, ...] = ()
    provider_id: Optional[str] = None


@dataclass(frozen=True)
class SendMessage:
    session_id: str
    text: str


@dataclass(frozen=True)
class CancelGeneration:
    session_id: str
    keep_partial: bool = True


@dataclass(frozen=True)
class DeleteSession:
    session_id: str


@dataclass(frozen=True)
class IngestDocument:
    """Index a file path (``source``) or inline ``text``."""

    document_id: str
    source: Optional[str] = None
    workspace_id: str = "default"
    text: Optional[str] = None


@dataclass(frozen=True)
class DeleteDocument:
    document_id: str


@dataclass(frozen=True)
class GetDocument:
    document_id: str


@dataclass(frozen=True)
class QuerySimilar:
    text: str
    k: int = 5
    workspace_id: Optional[str] = None
    document_ids: Tuple[str, ...] = ()


Operation = Union[
    CreateSession,
    SendMessage,
    CancelGeneration,
    DeleteSession,
    IngestDocument,
    DeleteDocument,
    GetDocument,
    QuerySimilar,
]

# Creating a session and cancelling must run for every caller.
_DEDUPLICATED = (SendMessage, IngestDocument, DeleteDocument, GetDocument, QuerySimilar, DeleteSession)
# Document bodies take part in the content hash exactly as given.
_VERBATIM_FIELDS = {IngestDocument: ("text",)}


class RequestRouter:
    """Entry point for inbound operations.

    Identical operations that overlap in time execute once; every caller
    receives the same result or the same error.
    """

    def __init__(
        self,
        chat: ChatSessionManager,
        ingestion: IngestionService,
        retriever: Retriever,
        *,
        inflight: InFlightRequests | None = None,
    ) -> None:
        self._chat = chat
        self._ingestion = ingestion
        self._retriever = retriever
        self._inflight = inflight or InFlightRequests()
        self._handlers: Dict[type, Callable[[Any], Awaitable[Any]]] = {
            CreateSession: self._create_session,
            SendMessage: self._send_message,
            CancelGeneration: self._cancel_generation,
            DeleteSession: self._delete_session,
            IngestDocument: self._ingest_document,
            DeleteDocument: self._delete_document,
            GetDocument: self._get_document,
            QuerySimilar: self._query_similar,
        }
        self._logger = get_logger("router")

    @property
    def inflight(self) -> InFlightRequests:
        return self._inflight

    async def dispatch(self, operation: Operation) -> Any:
        handler = self._handlers.get(type(operation))
        if handler is None:
            raise InvalidInput(f"Unsupported operation: {type(operation).__name__}")
        name = type(operation).__name__
        self._logger.debug("router.dispatch", operation=name)
        if isinstance(operation, _DEDUPLICATED):
            key = fingerprint(name, asdict(operation), verbatim=_VERBATIM_FIELDS.get(type(operation), ()))
            return await self._inflight.run(key, lambda: handler(operation), operation=name)
        return await handler(operation)

    async def _create_session(self, operation: CreateSession):
        return await self._chat.create_session(
            operation.workspace_id,
            document_ids=operation.document_ids,
            provider_id=operation.provider_id,
        )

    async def _send_message(self, operation: SendMessage):
        return await self._chat.send_message(operation.session_id, operation.text)

    async def _cancel_generation(self, operation: CancelGeneration):
        return await self._chat.cancel_generation(operation.session_id, keep_partial=operation.keep_partial)

    async def _delete_session(self, operation: DeleteSession):
        await self._chat.delete_session(operation.session_id)

    async def _ingest_document(self, operation: IngestDocument):
        if operation.source is None and operation.text is None:
            raise InvalidInput("IngestDocument needs a source path or inline text")
        return await self._ingestion.ingest(
            operation.document_id,
            operation.source,
            operation.workspace_id,
            text=operation.text,
        )

    async def _delete_document(self, operation: DeleteDocument):
        return await self._ingestion.delete(operation.document_id)

    async def _get_document(self, operation: GetDocument):
        return await self._ingestion.get_document(operation.document_id)

    async def _query_similar(self, operation: QuerySimilar):
        if not operation.text.strip():
            raise InvalidInput("Query text must not be empty")
        if operation.k <= 0:
            raise InvalidInput("k must be positive")
        return await self._retriever.retrieve(
            operation.text,
            top_k=operation.k,
            workspace_id=operation.workspace_id,
            document_ids=operation.document_ids or None,
        )
