from __future__ import annotations

import asyncio
from typing import AsyncIterator, Sequence

import pytest

from ragcore.chat.manager import ChatSessionManager
from ragcore.chat.prompt import PromptBuilder, PromptBuilderConfig
from ragcore.chat.session import ChatSession, GenerationOutcome, IllegalTransition, SessionState
from ragcore.errors import InvalidInput, ModelError, ProviderRateLimited, SessionBusy, SessionNotFound
from ragcore.models import Chunk, RetrievedChunk, Turn, TurnRole, TurnStatus
from ragcore.notifications import GenerationCancelled, GenerationError, GenerationFinished, TokenAppended
from ragcore.providers.base import CompletionOptions, ProviderCapabilities, ProviderKind, TokenEvent
from ragcore.providers.offline import OfflineProvider


class BrokenProvider:
    provider_id = "broken"
    kind = ProviderKind.CLOUD
    capabilities = ProviderCapabilities(streaming=True, embeddings=False)

    def complete(
        self,
        prompt: str,
        history: Sequence,
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[TokenEvent]:
        async def _fail():
            yield TokenEvent(text="Half an ")
            raise ModelError("model crashed", provider_id=self.provider_id)

        return _fail()

    async def embed(self, texts):
        raise ModelError("no embeddings")

    async def aclose(self) -> None:
        return None


class ThrottledProvider(OfflineProvider):
    """Rejects the first ``rejections`` completions with a rate limit."""

    def __init__(self, rejections: int) -> None:
        super().__init__(dim=32, provider_id="throttled")
        self.rejections = rejections
        self.opened = 0

    def complete(self, prompt, history, options=None):
        self.opened += 1
        if self.opened <= self.rejections:
            return self._reject()
        return super().complete(prompt, history, options)

    async def _reject(self):
        raise ProviderRateLimited("slow down", provider_id=self.provider_id, retry_after=0)
        yield  # pragma: no cover


def _hit(document_id: str, ordinal: int, text: str, score: float) -> RetrievedChunk:
    return RetrievedChunk(chunk=Chunk(document_id=document_id, ordinal=ordinal, text=text), score=score)


@pytest.mark.asyncio
async def test_message_streams_tokens_and_finishes(chat: ChatSessionManager, ingestion, hub):
    await ingestion.ingest("doc-1", text="The launch window opens in March.\n\nFuel is loaded a day before.")
    session = await chat.create_session(document_ids=["doc-1"])

    with hub.subscribe_session(session.session_id) as subscription:
        result = await chat.send_message(session.session_id, "When does the launch window open?")
        notifications = [subscription.get_nowait() for _ in range(subscription.pending())]

    assert result.outcome is GenerationOutcome.FINISHED
    assert result.turn.status is TurnStatus.COMPLETE
    assert result.turn.citations and result.turn.citations[0].document_id == "doc-1"
    assert "[1]" in result.turn.content
    tokens = [n.text_delta for n in notifications if isinstance(n, TokenAppended)]
    assert "".join(tokens) == result.turn.content
    assert isinstance(notifications[-1], GenerationFinished)
    assert [turn.role for turn in session.turns] == [TurnRole.USER, TurnRole.ASSISTANT]
    assert session.state is SessionState.IDLE



@pytest.mark.asyncio
async def test_rate_limited_twice_then_success_records_one_answer(
    chat: ChatSessionManager, providers, hub, registry
):
    throttled = ThrottledProvider(rejections=2)
    providers.register(throttled)
    session = await chat.create_session(provider_id="throttled")

    with hub.subscribe_session(session.session_id) as subscription:
        result = await chat.send_message(session.session_id, "Are you there?")
        notifications = [subscription.get_nowait() for _ in range(subscription.pending())]

    assert throttled.opened == 3
    assert result.outcome is GenerationOutcome.FINISHED
    assert [turn.role for turn in session.turns] == [TurnRole.USER, TurnRole.ASSISTANT]
    stored = registry.load_session(session.session_id).turns
    assert [(turn.role, turn.status) for turn in stored] == [
        (TurnRole.USER, TurnStatus.COMPLETE),
        (TurnRole.ASSISTANT, TurnStatus.COMPLETE),
    ]
    assert sum(isinstance(n, GenerationFinished) for n in notifications) == 1
    tokens = "".join(n.text_delta for n in notifications if isinstance(n, TokenAppended))
    assert tokens == result.turn.content

@pytest.mark.asyncio
async def test_second_message_while_generating_is_busy(chat: ChatSessionManager, providers):
    providers.register(OfflineProvider(dim=32, provider_id="slow", token_delay=0.02))
    session = await chat.create_session(provider_id="slow")

    first = asyncio.ensure_future(chat.send_message(session.session_id, "Tell me something long"))
    await asyncio.sleep(0.05)
    with pytest.raises(SessionBusy):
        await chat.send_message(session.session_id, "And another thing")

    result = await first
    assert result.outcome is GenerationOutcome.FINISHED
    assert len(session.turns) == 2


@pytest.mark.asyncio
async def test_cancel_keeps_partial_turn(chat: ChatSessionManager, providers, hub, registry):
    providers.register(OfflineProvider(dim=32, provider_id="slow", token_delay=0.02))
    session = await chat.create_session(provider_id="slow")

    with hub.subscribe_session(session.session_id) as subscription:
        generation = asyncio.ensure_future(chat.send_message(session.session_id, "Explain it slowly please"))
        received = []
        while len(received) < 3:
            notification = await asyncio.wait_for(subscription.get(), timeout=5)
            received.append(notification.text_delta)
        assert await chat.cancel_generation(session.session_id) is True
        result = await generation
        rest = [subscription.get_nowait() for _ in range(subscription.pending())]
    terminal = [n for n in rest if isinstance(n, GenerationCancelled)]

    assert result.outcome is GenerationOutcome.CANCELLED
    assert result.turn.status is TurnStatus.PARTIAL
    assert result.turn.content.startswith("".join(received))
    assert terminal and terminal[0].turn == result.turn
    assert session.state is SessionState.IDLE
    assert registry.load_session(session.session_id).turns[-1].status is TurnStatus.PARTIAL
    assert await chat.cancel_generation(session.session_id) is False


@pytest.mark.asyncio
async def test_cancel_is_not_held_up_by_stalled_subscriber(chat: ChatSessionManager, providers, hub):
    providers.register(OfflineProvider(dim=32, provider_id="slow", token_delay=0.01))
    session = await chat.create_session(provider_id="slow")

    with hub.subscribe_session(session.session_id, buffer_size=2) as stalled:
        generation = asyncio.ensure_future(chat.send_message(session.session_id, "Tell me a long story"))
        while stalled.pending() < 2:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

        assert await asyncio.wait_for(chat.cancel_generation(session.session_id), timeout=2) is True
        result = await asyncio.wait_for(generation, timeout=2)
        queued = [stalled.get_nowait() for _ in range(stalled.pending())]

    assert result.outcome is GenerationOutcome.CANCELLED
    assert result.turn.status is TurnStatus.PARTIAL
    assert isinstance(queued[-1], GenerationCancelled)
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_cancel_without_partial_drops_output(chat: ChatSessionManager, providers):
    providers.register(OfflineProvider(dim=32, provider_id="slow", token_delay=0.02))
    session = await chat.create_session(provider_id="slow")
    generation = asyncio.ensure_future(chat.send_message(session.session_id, "Say a lot"))
    await asyncio.sleep(0.08)

    await chat.cancel_generation(session.session_id, keep_partial=False)
    result = await generation

    assert result.outcome is GenerationOutcome.CANCELLED
    assert result.turn is None
    assert [turn.role for turn in session.turns] == [TurnRole.USER]


@pytest.mark.asyncio
async def test_provider_error_records_error_turn(chat: ChatSessionManager, providers, hub):
    providers.register(BrokenProvider())
    session = await chat.create_session(provider_id="broken")

    with hub.subscribe_session(session.session_id) as subscription:
        result = await chat.send_message(session.session_id, "Will this work?")
        notifications = [subscription.get_nowait() for _ in range(subscription.pending())]

    assert result.outcome is GenerationOutcome.ERRORED
    assert result.error_kind == "model_error"
    assert result.turn.status is TurnStatus.ERROR
    assert result.turn.content == "Half an "
    assert isinstance(notifications[-1], GenerationError)
    assert session.state is SessionState.ERRORED

    assert await chat.acknowledge_error(session.session_id) is True
    assert session.state is SessionState.IDLE
    assert await chat.acknowledge_error(session.session_id) is False


@pytest.mark.asyncio
async def test_sessions_reload_from_registry(chat: ChatSessionManager, registry, providers, retriever, hub):
    session = await chat.create_session("w1")
    await chat.send_message(session.session_id, "First question")

    restarted = ChatSessionManager(registry, providers, retriever, hub)
    reloaded = await restarted.get_session(session.session_id)

    assert reloaded.workspace_id == "w1"
    assert [turn.content for turn in reloaded.turns] == [turn.content for turn in session.turns]
    assert reloaded.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_delete_and_teardown(chat: ChatSessionManager):
    keep = await chat.create_session("other")
    first = await chat.create_session("w1")
    await chat.create_session("w1")

    await chat.delete_session(first.session_id)
    with pytest.raises(SessionNotFound):
        await chat.get_session(first.session_id)
    with pytest.raises(SessionNotFound):
        await chat.delete_session(first.session_id)

    assert await chat.teardown_workspace("w1") == 1
    assert chat.session_ids() == [keep.session_id]


@pytest.mark.asyncio
async def test_invalid_requests_rejected(chat: ChatSessionManager):
    with pytest.raises(InvalidInput):
        await chat.create_session(provider_id="unknown")
    session = await chat.create_session()
    with pytest.raises(InvalidInput):
        await chat.send_message(session.session_id, "   ")
    with pytest.raises(SessionNotFound):
        await chat.send_message("missing", "hello")


def test_session_state_machine_edges():
    session = ChatSession("s", "w", "offline")
    active = session.begin()
    assert session.state is SessionState.RETRIEVING
    with pytest.raises(SessionBusy):
        session.begin()
    with pytest.raises(IllegalTransition):
        session.transition(SessionState.IDLE)
    session.transition(SessionState.GENERATING)
    session.release(active)
    assert session.state is SessionState.IDLE
    assert session.active is None
    with pytest.raises(IllegalTransition):
        session.append(Turn(role=TurnRole.ASSISTANT, content="x", status=TurnStatus.STREAMING))


def test_prompt_evicts_oldest_turns_then_lowest_ranked_chunks():
    config = PromptBuilderConfig(context_window_tokens=400, reserved_output_tokens=0, instructions="Answer.")
    builder = PromptBuilder(config)
    history = [
        Turn(role=TurnRole.USER, content="old question " * 5),
        Turn(role=TurnRole.ASSISTANT, content="old answer " * 5),
        Turn(role=TurnRole.USER, content="failed", status=TurnStatus.ERROR),
        Turn(role=TurnRole.USER, content="recent question"),
    ]
    hits = [_hit("d", 0, "a" * 150, 0.9), _hit("d", 1, "b" * 150, 0.8), _hit("d", 2, "c" * 150, 0.1)]

    prompt = builder.build("Now?", history, hits)

    assert prompt.dropped_turns == 3
    assert prompt.dropped_chunks == 1
    assert [c.ordinal for c in prompt.citations] == [0, 1]
    assert prompt.messages[0]["role"] == "system"
    assert "[1] " + "a" * 150 in prompt.messages[0]["content"]
    assert "c" * 150 not in prompt.messages[0]["content"]
    assert prompt.prompt == "Now?"
