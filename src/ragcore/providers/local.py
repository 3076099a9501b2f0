"""Local model runtime provider backed by Ollama."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Sequence

import httpx
import ollama

from ragcore.errors import (
    AuthenticationFailed,
    InvalidRequest,
    ModelError,
    ProviderError,
    ProviderRateLimited,
    ProviderUnavailable,
)
from ragcore.providers.base import (
    CompletionOptions,
    Message,
    ProviderCapabilities,
    ProviderKind,
    TokenEvent,
    build_messages,
)

logger = logging.getLogger(__name__)


class OllamaProvider:
    """Ollama provider implementation.

    Talks to a local Ollama runtime, so it works fully offline once the
    models are pulled.
    """

    kind = ProviderKind.LOCAL
    capabilities = ProviderCapabilities(streaming=True, embeddings=True)

    def __init__(
        self,
        host: str,
        chat_model: str,
        embedding_model: str,
        *,
        provider_id: str = "ollama",
        client: ollama.AsyncClient | None = None,
    ) -> None:
        """Initialize the Ollama provider.

        Args:
            host: The Ollama server host URL (e.g., "http://localhost:11434")
            chat_model: Model used for completions (e.g., "llama3.1")
            embedding_model: Model used for embeddings (e.g., "nomic-embed-text")
            provider_id: Registry identifier for this provider
            client: Optional preconfigured client, mainly for tests
        """
        self.provider_id = provider_id
        self.host = host
        self.chat_model = chat_model
        self.embedding_model = embedding_model
        logger.info("Initializing OllamaProvider: host=%s, model=%s", host, chat_model)
        self.client = client or ollama.AsyncClient(host=host)

    def complete(
        self,
        prompt: str,
        history: Sequence[Message],
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[TokenEvent]:
        return self._stream(build_messages(prompt, history), options or CompletionOptions())

    async def _stream(self, messages: list[dict[str, str]], options: CompletionOptions) -> AsyncIterator[TokenEvent]:
        model = options.model or self.chat_model
        model_options: dict[str, Any] = {}
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if options.max_tokens is not None:
            model_options["num_predict"] = options.max_tokens
        if options.stop:
            model_options["stop"] = list(options.stop)
        logger.debug("Streaming chat with %s (%d messages)", model, len(messages))
        try:
            stream = await self.client.chat(
                model=model,
                messages=messages,
                stream=True,
                options=model_options or None,
            )
            async for part in stream:
                content = part["message"]["content"] or ""
                if part["done"]:
                    if content:
                        yield TokenEvent(text=content)
                    yield TokenEvent(text="", done=True, finish_reason=part.get("done_reason") or "stop")
                    return
                if content:
                    yield TokenEvent(text=content)
        except ProviderError:
            raise
        except Exception as exc:
            raise self._classify(exc) from exc
        yield TokenEvent(text="", done=True, finish_reason="stop")

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        if not texts:
            return []
        try:
            response = await self.client.embed(model=self.embedding_model, input=list(texts))
        except Exception as exc:
            raise self._classify(exc) from exc
        vectors = [tuple(float(v) for v in vector) for vector in response["embeddings"]]
        if len(vectors) != len(texts):
            raise ModelError(
                f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs",
                provider_id=self.provider_id,
            )
        logger.info("Generated %d embeddings with %s", len(vectors), self.embedding_model)
        return vectors

    def _classify(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ollama.ResponseError):
            status = exc.status_code
            message = exc.error
            if status == 429:
                return ProviderRateLimited(message, provider_id=self.provider_id)
            if status in (401, 403):
                return AuthenticationFailed(message, provider_id=self.provider_id)
            if status == 400:
                return InvalidRequest(message, provider_id=self.provider_id)
            if status in (502, 503, 504):
                return ProviderUnavailable(message, provider_id=self.provider_id)
            return ModelError(message, provider_id=self.provider_id)
        if isinstance(exc, ollama.RequestError):
            return InvalidRequest(exc.error, provider_id=self.provider_id)
        if isinstance(exc, (ConnectionError, httpx.TransportError)):
            return ProviderUnavailable(f"Ollama unreachable at {self.host}: {exc}", provider_id=self.provider_id)
        return ModelError(str(exc), provider_id=self.provider_id)

    async def aclose(self) -> None:
        client = getattr(self.client, "_client", None)
        if isinstance(client, httpx.AsyncClient):
            await client.aclose()
