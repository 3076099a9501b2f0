"""Deterministic provider that works without any model runtime."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from typing import AsyncIterator, Sequence

from ragcore.providers.base import (
    CompletionOptions,
    Message,
    ProviderCapabilities,
    ProviderKind,
    TokenEvent,
)

_WORD_RE = re.compile(r"\w+", re.UNICODE)
_TOKEN_RE = re.compile(r"\S+\s*|\s+")


class OfflineProvider:
    """Feature-hashing embeddings and template answers, used for tests and offline mode."""

    kind = ProviderKind.LOCAL
    capabilities = ProviderCapabilities(streaming=True, embeddings=True)

    def __init__(self, dim: int = 384, *, provider_id: str = "offline", token_delay: float = 0.0) -> None:
        self.provider_id = provider_id
        self._dim = dim
        self._token_delay = token_delay

    def _hash_to_vector(self, text: str) -> tuple[float, ...]:
        vector = [0.0] * self._dim
        words = _WORD_RE.findall(text.lower())
        for word in words:
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % self._dim
            vector[index] += 1.0
        if not words:
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            repeat = (self._dim + len(digest) - 1) // len(digest)
            vector = [byte / 255.0 for byte in (digest * repeat)[: self._dim]]
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return tuple(value / norm for value in vector)

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        return [self._hash_to_vector(text) for text in texts]

    def complete(
        self,
        prompt: str,
        history: Sequence[Message],
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[TokenEvent]:
        return self._stream(self._render(prompt, history), options or CompletionOptions())

    async def _stream(self, text: str, options: CompletionOptions) -> AsyncIterator[TokenEvent]:
        tokens = _TOKEN_RE.findall(text)
        if options.max_tokens is not None:
            tokens = tokens[: options.max_tokens]
        emitted = ""
        for token in tokens:
            if self._token_delay:
                await asyncio.sleep(self._token_delay)
            else:
                await asyncio.sleep(0)
            emitted += token
            if any(stop in emitted for stop in options.stop):
                break
            yield TokenEvent(text=token)
        yield TokenEvent(text="", done=True, finish_reason="stop")

    @staticmethod
    def _render(prompt: str, history: Sequence[Message]) -> str:
        question = prompt.strip().splitlines()[-1] if prompt.strip() else ""
        context_lines = [
            line for msg in history if msg.get("role") == "system" for line in str(msg["content"]).splitlines()
            if line.startswith("[")
        ]
        if not context_lines:
            return f"I do not have enough relevant context to answer: {question}"
        return f"Based on the provided documents: {context_lines[0]}"

    async def aclose(self) -> None:
        return None
