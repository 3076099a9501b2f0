"""Prompt construction with context-window truncation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence

from ragcore.ingestion.chunking import LengthFunction, char_length
from ragcore.metrics.observability import get_logger
from ragcore.models import Citation, RetrievedChunk, Turn, TurnRole, TurnStatus
from ragcore.providers.base import Message

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant. Answer the user's question using the numbered context "
    "passages below and cite them as [n]. If the context does not contain the answer, say so."
)


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    context_window_tokens: int = 4096
    reserved_output_tokens: int = 1024
    instructions: str = DEFAULT_INSTRUCTIONS
    citation_prefix: str = "["
    citation_suffix: str = "]"


@dataclass(frozen=True)
class Prompt:
    """Augmented prompt ready for a provider call."""

    prompt: str
    messages: List[Message] = field(default_factory=list)
    citations: tuple[Citation, ...] = ()
    dropped_turns: int = 0
    dropped_chunks: int = 0


class PromptBuilder:
    """Builds prompts from retrieved chunks and conversation history.

    When everything does not fit the context window, the oldest history
    turns are evicted first, then the lowest ranked context chunks.
    """

    def __init__(self, config: PromptBuilderConfig | None = None, length: LengthFunction | None = None) -> None:
        self._config = config or PromptBuilderConfig()
        self._length = length or char_length
        self._logger = get_logger("chat.prompt")

    @property
    def budget(self) -> int:
        return max(0, self._config.context_window_tokens - self._config.reserved_output_tokens)

    def build_context(self, chunks: Sequence[RetrievedChunk]) -> str:
        if not chunks:
            return ""
        lines = []
        for index, hit in enumerate(chunks, start=1):
            prefix = f"{self._config.citation_prefix}{index}{self._config.citation_suffix}"
            lines.append(f"{prefix} {hit.chunk.text.strip()}")
        return "\n\n".join(lines)

    def build(
        self,
        question: str,
        history: Sequence[Turn],
        chunks: Sequence[RetrievedChunk],
    ) -> Prompt:
        turns = [turn for turn in history if _usable(turn)]
        context = list(chunks)
        dropped_turns = 0
        dropped_chunks = 0
        while self._size(question, turns, context) > self.budget:
            if turns:
                turns.pop(0)
                dropped_turns += 1
            elif context:
                context.pop()
                dropped_chunks += 1
            else:
                self._logger.warning("prompt.over_budget", budget=self.budget)
                break
        messages: List[Message] = [{"role": TurnRole.SYSTEM.value, "content": self._system(context)}]
        messages.extend({"role": turn.role.value, "content": turn.content} for turn in turns)
        citations = tuple(
            Citation(document_id=hit.chunk.document_id, ordinal=hit.chunk.ordinal, score=hit.score) for hit in context
        )
        if dropped_turns or dropped_chunks:
            self._logger.info("prompt.truncated", dropped_turns=dropped_turns, dropped_chunks=dropped_chunks)
        return Prompt(
            prompt=question,
            messages=messages,
            citations=citations,
            dropped_turns=dropped_turns,
            dropped_chunks=dropped_chunks,
        )

    def _system(self, context: Sequence[RetrievedChunk]) -> str:
        body = self.build_context(context)
        if not body:
            return self._config.instructions
        return f"{self._config.instructions}\n\nContext:\n{body}"

    def _size(self, question: str, turns: Sequence[Turn], context: Sequence[RetrievedChunk]) -> int:
        total = self._length(self._system(context)) + self._length(question)
        return total + sum(self._length(turn.content) for turn in turns)


def _usable(turn: Turn) -> bool:
    # Errored turns carry no model output worth replaying.
    return turn.status in (TurnStatus.COMPLETE, TurnStatus.PARTIAL) and bool(turn.content)
