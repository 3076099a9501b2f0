"""FastAPI application exposing ragcore operations."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ragcore.api.schemas import (
    AcknowledgeResponse,
    CancelRequest,
    CancelResponse,
    CreateSessionRequest,
    DeleteDocumentResponse,
    DocumentResponse,
    ErrorResponse,
    IndexStatsResponse,
    IngestRequest,
    MessageRequest,
    QueryRequest,
    QueryResponse,
    SessionResponse,
    TeardownResponse,
)
from ragcore.chat.session import GenerationOutcome, GenerationResult
from ragcore.config import Settings, get_settings
from ragcore.context import AppContext
from ragcore.errors import RagCoreError
from ragcore.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from ragcore.notifications import (
    GenerationCancelled,
    GenerationError,
    GenerationFinished,
    Notification,
    Subscription,
    is_terminal,
    to_payload,
)
from ragcore.router.service import (
    CancelGeneration,
    CreateSession,
    DeleteDocument,
    DeleteSession,
    GetDocument,
    IngestDocument,
    QuerySimilar,
    SendMessage,
)

STATUS_BY_KIND = {
    "busy": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_input": status.HTTP_400_BAD_REQUEST,
    "invalid_request": status.HTTP_400_BAD_REQUEST,
    "unauthenticated": status.HTTP_401_UNAUTHORIZED,
    "rate_limited": status.HTTP_429_TOO_MANY_REQUESTS,
    "unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "model_error": status.HTTP_502_BAD_GATEWAY,
    "index_corruption": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(exc: RagCoreError) -> int:
    return STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def _ndjson(notification: Notification) -> bytes:
    return (json.dumps(to_payload(notification)) + "\n").encode("utf-8")


def create_app(*, settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    settings = settings or get_settings()
    ctx = context or AppContext.build(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await ctx.start(watch=not settings.is_test)
        try:
            yield
        finally:
            await ctx.stop()

    app = FastAPI(title="ragcore API", version="0.1.0", lifespan=lifespan)
    app.state.context = ctx

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(RagCoreError)
    async def handle_ragcore_error(request: Request, exc: RagCoreError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        code = status_for(exc)
        log = logger.error if code >= 500 else logger.info
        log("request.failed", correlation_id=correlation_id, kind=exc.kind, detail=str(exc))
        body = ErrorResponse(kind=exc.kind, detail=str(exc), correlation_id=correlation_id)
        return JSONResponse(status_code=code, content=body.model_dump())

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        body = ErrorResponse(kind="internal", detail="Internal Server Error", correlation_id=correlation_id)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())

    def get_context(request: Request) -> AppContext:
        return request.app.state.context

    @app.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
    async def create_session(
        payload: CreateSessionRequest,
        context: AppContext = Depends(get_context),
    ) -> SessionResponse:
        session = await context.router.dispatch(
            CreateSession(
                workspace_id=payload.workspace_id,
                document_ids=tuple(payload.document_ids),
                provider_id=payload.provider_id,
            )
        )
        return SessionResponse.from_session(session)

    @app.get("/sessions/{session_id}", response_model=SessionResponse)
    async def get_session(session_id: str, context: AppContext = Depends(get_context)) -> SessionResponse:
        return SessionResponse.from_session(await context.chat.get_session(session_id))

    @app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_session(session_id: str, context: AppContext = Depends(get_context)) -> Response:
        await context.router.dispatch(DeleteSession(session_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/sessions/{session_id}/messages")
    async def send_message(
        session_id: str,
        payload: MessageRequest,
        context: AppContext = Depends(get_context),
    ) -> StreamingResponse:
        await context.chat.get_session(session_id)
        subscription = context.notifications.subscribe_session(session_id)
        generation = asyncio.ensure_future(context.router.dispatch(SendMessage(session_id, payload.text)))
        generation.add_done_callback(lambda task: task.cancelled() or task.exception())
        try:
            first = await _first_notification(subscription, generation)
        except BaseException:
            subscription.close()
            raise

        async def stream() -> AsyncIterator[bytes]:
            try:
                yield _ndjson(first)
                if is_terminal(first):
                    return
                async for notification in subscription.until_terminal():
                    yield _ndjson(notification)
            finally:
                subscription.close()

        return StreamingResponse(stream(), media_type="application/x-ndjson")

    @app.post("/sessions/{session_id}/cancel", response_model=CancelResponse)
    async def cancel_generation(
        session_id: str,
        payload: CancelRequest | None = None,
        context: AppContext = Depends(get_context),
    ) -> CancelResponse:
        keep_partial = payload.keep_partial if payload is not None else True
        cancelled = await context.router.dispatch(CancelGeneration(session_id, keep_partial=keep_partial))
        return CancelResponse(session_id=session_id, cancelled=cancelled)

    @app.post("/sessions/{session_id}/acknowledge", response_model=AcknowledgeResponse)
    async def acknowledge_error(session_id: str, context: AppContext = Depends(get_context)) -> AcknowledgeResponse:
        acknowledged = await context.chat.acknowledge_error(session_id)
        return AcknowledgeResponse(session_id=session_id, acknowledged=acknowledged)

    @app.delete("/workspaces/{workspace_id}/sessions", response_model=TeardownResponse)
    async def teardown_workspace(workspace_id: str, context: AppContext = Depends(get_context)) -> TeardownResponse:
        deleted = await context.chat.teardown_workspace(workspace_id)
        return TeardownResponse(workspace_id=workspace_id, deleted_sessions=deleted)

    @app.post("/documents", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
    async def ingest_document(payload: IngestRequest, context: AppContext = Depends(get_context)) -> DocumentResponse:
        document = await context.router.dispatch(
            IngestDocument(
                document_id=payload.document_id,
                source=payload.source,
                workspace_id=payload.workspace_id,
                text=payload.text,
            )
        )
        return DocumentResponse.from_document(document)

    @app.get("/documents/{document_id}", response_model=DocumentResponse)
    async def get_document(document_id: str, context: AppContext = Depends(get_context)) -> DocumentResponse:
        return DocumentResponse.from_document(await context.router.dispatch(GetDocument(document_id)))

    @app.delete("/documents/{document_id}", response_model=DeleteDocumentResponse)
    async def delete_document(document_id: str, context: AppContext = Depends(get_context)) -> DeleteDocumentResponse:
        deleted = await context.router.dispatch(DeleteDocument(document_id))
        return DeleteDocumentResponse(document_id=document_id, deleted=deleted)

    @app.post("/query", response_model=QueryResponse)
    async def query_similar(payload: QueryRequest, context: AppContext = Depends(get_context)) -> QueryResponse:
        result = await context.router.dispatch(
            QuerySimilar(
                text=payload.text,
                k=payload.k,
                workspace_id=payload.workspace_id,
                document_ids=tuple(payload.document_ids),
            )
        )
        return QueryResponse.from_result(result)

    @app.get("/index/stats", response_model=IndexStatsResponse)
    async def index_stats(context: AppContext = Depends(get_context)) -> IndexStatsResponse:
        return IndexStatsResponse(
            collection=context.settings.chroma_collection,
            total_chunks=await context.store.count(),
            workspaces=dict(await context.store.count_by_workspace()),
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from ragcore import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    return app


async def _first_notification(subscription: Subscription, generation: asyncio.Future) -> Notification:
    """Wait for the first notification, or re-raise when the generation fails before emitting one."""
    pending = asyncio.ensure_future(subscription.get())
    try:
        done, _ = await asyncio.wait({pending, generation}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        pending.cancel()
        raise
    if pending in done:
        return pending.result()
    if subscription.pending():
        pending.cancel()
        return subscription.get_nowait()
    pending.cancel()
    # The generation ended without notifying this subscriber.
    return _terminal_from(generation.result())


def _terminal_from(result: GenerationResult) -> Notification:
    if result.outcome is GenerationOutcome.FINISHED and result.turn is not None:
        return GenerationFinished(result.session_id, result.turn)
    if result.outcome is GenerationOutcome.ERRORED:
        return GenerationError(result.session_id, result.error_kind or "internal", result.error_message or "")
    return GenerationCancelled(result.session_id, result.turn)
