"""Chat session orchestration: retrieval, prompt building and token streaming."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Awaitable, Dict, List, Optional, Sequence, TypeVar
from uuid import uuid4

from ragcore.chat.prompt import Prompt, PromptBuilder
from ragcore.chat.session import (
    ActiveGeneration,
    ChatSession,
    GenerationOutcome,
    GenerationResult,
    SessionState,
)
from ragcore.errors import InvalidInput, ProviderError, RagCoreError, SessionNotFound
from ragcore.metrics.observability import PipelineMetrics, get_logger
from ragcore.models import Turn, TurnRole, TurnStatus
from ragcore.notifications import (
    GenerationCancelled,
    GenerationError,
    GenerationFinished,
    NotificationHub,
    TokenAppended,
)
from ragcore.providers.base import CompletionOptions, ProviderRegistry
from ragcore.providers.retry import RetryPolicy
from ragcore.providers.stream import CancellationToken, TokenStream
from ragcore.retrieval.service import Retriever
from ragcore.store.database import Registry, SessionRecord

T = TypeVar("T")

_CANCELLED = object()


class ChatSessionManager:
    """Owns chat sessions and runs their generations.

    Each generation runs as a task owned by the session, so a caller that
    goes away does not abandon the session mid-state; callers wait on the
    task through ``asyncio.shield``.
    """

    def __init__(
        self,
        registry: Registry,
        providers: ProviderRegistry,
        retriever: Retriever,
        notifications: NotificationHub,
        prompt_builder: PromptBuilder | None = None,
        *,
        options: CompletionOptions | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._registry = registry
        self._providers = providers
        self._retriever = retriever
        self._notifications = notifications
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._options = options or CompletionOptions()
        self._policy = policy or RetryPolicy()
        self._sessions: Dict[str, ChatSession] = {}
        self._lock = threading.Lock()
        self._logger = get_logger("chat")

    async def create_session(
        self,
        workspace_id: str = "default",
        *,
        document_ids: Sequence[str] = (),
        provider_id: str | None = None,
        session_id: str | None = None,
    ) -> ChatSession:
        if provider_id is not None and provider_id not in self._providers.ids():
            raise InvalidInput(f"Provider is not configured: {provider_id}")
        provider = self._providers.get(provider_id)
        session = ChatSession(
            session_id=session_id or uuid4().hex,
            workspace_id=workspace_id,
            provider_id=provider.provider_id,
            document_ids=tuple(document_ids),
        )
        await asyncio.to_thread(
            self._registry.save_session,
            SessionRecord(
                session_id=session.session_id,
                workspace_id=session.workspace_id,
                provider_id=session.provider_id,
                document_ids=session.document_ids,
                created_at=session.created_at,
            ),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        self._logger.info("session.created", session_id=session.session_id, workspace_id=workspace_id)
        return session

    async def get_session(self, session_id: str) -> ChatSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is not None:
            return session
        record = await asyncio.to_thread(self._registry.load_session, session_id)
        if record is None:
            raise SessionNotFound(session_id)
        loaded = ChatSession(
            session_id=record.session_id,
            workspace_id=record.workspace_id,
            provider_id=record.provider_id,
            document_ids=tuple(record.document_ids),
            turns=list(record.turns),
            created_at=record.created_at,
        )
        with self._lock:
            # Another task may have loaded it meanwhile.
            session = self._sessions.setdefault(session_id, loaded)
        return session

    async def send_message(
        self,
        session_id: str,
        text: str,
        *,
        options: CompletionOptions | None = None,
    ) -> GenerationResult:
        """Run one user turn to completion; raises ``SessionBusy`` while another is active."""
        if not text or not text.strip():
            raise InvalidInput("Message text must not be empty")
        session = await self.get_session(session_id)
        active = session.begin()
        active.task = asyncio.get_running_loop().create_task(
            self._generate(session, active, text, self._options.merged(options))
        )
        return await asyncio.shield(active.task)

    async def cancel_generation(self, session_id: str, keep_partial: bool = True) -> bool:
        """Stop the active generation; returns ``False`` when nothing was running."""
        session = await self.get_session(session_id)
        active = session.active
        if active is None:
            return False
        active.keep_partial = keep_partial
        active.cancel.cancel()
        if active.task is not None:
            await asyncio.wait({active.task})
        return True

    async def acknowledge_error(self, session_id: str) -> bool:
        session = await self.get_session(session_id)
        return session.acknowledge()

    async def delete_session(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is not None:
            await self.cancel_generation(session_id, keep_partial=False)
            with self._lock:
                self._sessions.pop(session_id, None)
        deleted = await asyncio.to_thread(self._registry.delete_session, session_id)
        if session is None and not deleted:
            raise SessionNotFound(session_id)
        self._logger.info("session.deleted", session_id=session_id)

    async def teardown_workspace(self, workspace_id: str) -> int:
        """Delete every session of a workspace, cancelling active generations."""
        stored = await asyncio.to_thread(self._registry.session_ids, workspace_id)
        with self._lock:
            in_memory = [sid for sid, s in self._sessions.items() if s.workspace_id == workspace_id]
        session_ids = sorted(set(stored) | set(in_memory))
        for session_id in session_ids:
            await self.delete_session(session_id)
        self._logger.info("workspace.teardown", workspace_id=workspace_id, session_count=len(session_ids))
        return len(session_ids)

    async def shutdown(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            await self.cancel_generation(session_id, keep_partial=True)

    def set_options(self, options: CompletionOptions) -> None:
        """Default options for generations started from now on."""
        self._options = options

    def session_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    # Generation --------------------------------------------------------------

    async def _generate(
        self,
        session: ChatSession,
        active: ActiveGeneration,
        text: str,
        options: CompletionOptions,
    ) -> GenerationResult:
        PipelineMetrics.active_generations.inc()
        start = time.perf_counter()
        history = list(session.turns)
        try:
            await self._append(session, Turn(role=TurnRole.USER, content=text))
            hits = await self._until_cancelled(
                active.cancel,
                self._retriever.retrieve(
                    text,
                    workspace_id=session.workspace_id,
                    document_ids=session.document_ids or None,
                ),
            )
            if hits is _CANCELLED:
                return await self._finish_cancelled(session, active)
            prompt = self._prompt_builder.build(text, history, list(hits))
            active.citations = prompt.citations
            session.transition(SessionState.GENERATING)
            await self._stream(session, active, prompt, options)
            if active.cancel.cancelled:
                return await self._finish_cancelled(session, active)
            return await self._finish(session, active)
        except RagCoreError as exc:
            return await self._finish_errored(session, active, exc)
        finally:
            session.release(active)
            PipelineMetrics.active_generations.dec()
            PipelineMetrics.observe_generation(time.perf_counter() - start)

    async def _stream(
        self,
        session: ChatSession,
        active: ActiveGeneration,
        prompt: Prompt,
        options: CompletionOptions,
    ) -> None:
        provider = self._providers.get(session.provider_id)
        stream = TokenStream(
            lambda: provider.complete(prompt.prompt, prompt.messages, options),
            cancel=active.cancel,
            policy=self._policy,
            provider_id=provider.provider_id,
        )
        try:
            async for event in stream:
                if event.text:
                    active.parts.append(event.text)
                    PipelineMetrics.tokens_streamed.inc()
                    await self._notifications.publish(
                        TokenAppended(session.session_id, event.text),
                        cancel=active.cancel,
                    )
                if active.cancel.cancelled or event.done:
                    break
        finally:
            await stream.aclose()

    async def _finish(self, session: ChatSession, active: ActiveGeneration) -> GenerationResult:
        turn = Turn(
            role=TurnRole.ASSISTANT,
            content=active.content,
            created_at=active.started_at,
            citations=active.citations,
            status=TurnStatus.COMPLETE,
        )
        await self._append(session, turn)
        session.transition(SessionState.IDLE)
        await self._notifications.publish(GenerationFinished(session.session_id, turn), cancel=active.cancel)
        self._logger.info(
            "generation.complete",
            session_id=session.session_id,
            citation_count=len(turn.citations),
            length=len(turn.content),
        )
        return GenerationResult(session.session_id, GenerationOutcome.FINISHED, turn)

    async def _finish_cancelled(self, session: ChatSession, active: ActiveGeneration) -> GenerationResult:
        session.transition(SessionState.CANCELLED)
        turn: Optional[Turn] = None
        if active.keep_partial and active.parts:
            turn = Turn(
                role=TurnRole.ASSISTANT,
                content=active.content,
                created_at=active.started_at,
                citations=active.citations,
                status=TurnStatus.PARTIAL,
            )
            await self._append(session, turn)
        session.transition(SessionState.IDLE)
        await self._notifications.publish(GenerationCancelled(session.session_id, turn), cancel=active.cancel)
        self._logger.info(
            "generation.cancelled",
            session_id=session.session_id,
            kept_partial=turn is not None,
            token_count=len(active.parts),
        )
        return GenerationResult(session.session_id, GenerationOutcome.CANCELLED, turn)

    async def _finish_errored(
        self,
        session: ChatSession,
        active: ActiveGeneration,
        exc: RagCoreError,
    ) -> GenerationResult:
        if isinstance(exc, ProviderError):
            PipelineMetrics.observe_provider_error(exc.kind)
        session.transition(SessionState.ERRORED)
        turn = Turn(
            role=TurnRole.ASSISTANT,
            content=active.content,
            created_at=active.started_at,
            citations=active.citations,
            status=TurnStatus.ERROR,
            error_kind=exc.kind,
            error_message=str(exc),
        )
        await self._append(session, turn)
        await self._notifications.publish(
            GenerationError(session.session_id, exc.kind, str(exc)),
            cancel=active.cancel,
        )
        self._logger.warning(
            "generation.failed",
            session_id=session.session_id,
            kind=exc.kind,
            detail=str(exc),
        )
        return GenerationResult(
            session.session_id,
            GenerationOutcome.ERRORED,
            turn,
            error_kind=exc.kind,
            error_message=str(exc),
        )

    async def _append(self, session: ChatSession, turn: Turn) -> None:
        position = session.append(turn)
        await asyncio.to_thread(self._registry.append_turn, session.session_id, position, turn)

    @staticmethod
    async def _until_cancelled(cancel: CancellationToken, awaitable: Awaitable[T]) -> T | object:
        """Await ``awaitable`` unless ``cancel`` fires first."""
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        await asyncio.wait({work})
        return _CANCELLED

