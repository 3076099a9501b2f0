"""Provider interface shared by local and cloud model backends."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, replace
from typing import AsyncIterator, Mapping, Protocol, Sequence

from ragcore.errors import InvalidInput


class ProviderKind(str, enum.Enum):
    LOCAL = "local"
    CLOUD = "cloud"


@dataclass(frozen=True)
class ProviderCapabilities:
    streaming: bool = True
    embeddings: bool = True


@dataclass(frozen=True)
class CompletionOptions:
    """Generation options. They shape the output only, never the routing."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] = ()

    def merged(self, other: "CompletionOptions | None") -> "CompletionOptions":
        if other is None:
            return self
        return replace(
            self,
            model=other.model or self.model,
            temperature=self.temperature if other.temperature is None else other.temperature,
            max_tokens=self.max_tokens if other.max_tokens is None else other.max_tokens,
            stop=other.stop or self.stop,
        )


@dataclass(frozen=True)
class TokenEvent:
    """Incremental piece of a completion stream."""

    text: str
    done: bool = False
    finish_reason: str | None = None


Message = Mapping[str, str]


class ModelProvider(Protocol):
    """Uniform interface over model backends.

    ``complete`` returns an async iterator that is pulled by the consumer,
    so a provider never produces tokens ahead of a slow reader.
    """

    provider_id: str
    kind: ProviderKind
    capabilities: ProviderCapabilities

    def complete(
        self,
        prompt: str,
        history: Sequence[Message],
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[TokenEvent]:
        """Stream the completion for ``prompt`` following ``history``."""

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        """Return one vector per input text, in order."""

    async def aclose(self) -> None:
        """Release network resources held by the provider."""


def build_messages(prompt: str, history: Sequence[Message]) -> list[dict[str, str]]:
    messages = [{"role": str(msg["role"]), "content": str(msg["content"])} for msg in history]
    messages.append({"role": "user", "content": prompt})
    return messages


class ProviderRegistry:
    """Thread-safe map of configured providers.

    Providers are replaced wholesale on settings changes; sessions only keep
    a provider id, so swapping never needs session migration.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._providers: dict[str, ModelProvider] = {}
        self._active_id: str | None = None
        self._embedding_id: str | None = None

    def register(self, provider: ModelProvider, *, activate: bool = False, embeddings: bool = False) -> ModelProvider | None:
        """Add or replace a provider; returns the replaced instance, if any."""
        with self._lock:
            previous = self._providers.get(provider.provider_id)
            self._providers[provider.provider_id] = provider
            if activate or self._active_id is None:
                self._active_id = provider.provider_id
            if embeddings or (self._embedding_id is None and provider.capabilities.embeddings):
                self._embedding_id = provider.provider_id
        return previous if previous is not provider else None

    def unregister(self, provider_id: str) -> ModelProvider | None:
        with self._lock:
            provider = self._providers.pop(provider_id, None)
            if self._active_id == provider_id:
                self._active_id = next(iter(self._providers), None)
            if self._embedding_id == provider_id:
                self._embedding_id = next(
                    (pid for pid, p in self._providers.items() if p.capabilities.embeddings),
                    None,
                )
            return provider

    def select(self, provider_id: str, *, embeddings: bool = False) -> None:
        with self._lock:
            provider = self._providers.get(provider_id)
            if provider is None:
                raise InvalidInput(f"Provider is not configured: {provider_id}")
            if embeddings:
                if not provider.capabilities.embeddings:
                    raise InvalidInput(f"Provider {provider_id} does not support embeddings")
                self._embedding_id = provider_id
            else:
                self._active_id = provider_id

    def get(self, provider_id: str | None = None) -> ModelProvider:
        with self._lock:
            key = provider_id if provider_id in self._providers else self._active_id
            if key is None:
                raise InvalidInput("No model provider configured")
            return self._providers[key]

    def active(self) -> ModelProvider:
        return self.get(None)

    def embedding(self) -> ModelProvider:
        with self._lock:
            if self._embedding_id is None:
                raise InvalidInput("No embedding-capable provider configured")
            return self._providers[self._embedding_id]

    @property
    def active_id(self) -> str | None:
        with self._lock:
            return self._active_id

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._providers)

    async def aclose(self) -> None:
        with self._lock:
            providers = list(self._providers.values())
        for provider in providers:
            await provider.aclose()
