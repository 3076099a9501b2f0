"""Cloud provider speaking the OpenAI-compatible chat/embeddings HTTP API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

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


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class CloudProvider:
    """Cloud completion/embedding provider.

    Credentials are supplied by the host application through settings; the
    provider itself never persists them.
    """

    kind = ProviderKind.CLOUD
    capabilities = ProviderCapabilities(streaming=True, embeddings=True)

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        chat_model: str,
        embedding_model: str,
        *,
        provider_id: str = "openai",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.chat_model = chat_model
        self.embedding_model = embedding_model
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._has_credentials = bool(api_key)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        logger.info("Initializing CloudProvider: base_url=%s, model=%s", base_url, chat_model)

    def complete(
        self,
        prompt: str,
        history: Sequence[Message],
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[TokenEvent]:
        return self._stream(build_messages(prompt, history), options or CompletionOptions())

    async def _stream(self, messages: list[dict[str, str]], options: CompletionOptions) -> AsyncIterator[TokenEvent]:
        self._require_credentials()
        payload: dict[str, Any] = {
            "model": options.model or self.chat_model,
            "messages": messages,
            "stream": True,
        }
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.stop:
            payload["stop"] = list(options.stop)
        try:
            async with self._client.stream("POST", "chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise self._error_for(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if data == "[DONE]":
                        break
                    event = self._parse_event(data)
                    if event is not None:
                        yield event
                        if event.done:
                            return
        except ProviderError:
            raise
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"Cloud provider unreachable: {exc}", provider_id=self.provider_id) from exc
        yield TokenEvent(text="", done=True, finish_reason="stop")

    def _parse_event(self, data: str) -> TokenEvent | None:
        try:
            body = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ModelError(f"Malformed stream event: {data[:80]}", provider_id=self.provider_id) from exc
        if "error" in body:
            raise ModelError(str(body["error"]), provider_id=self.provider_id)
        choices = body.get("choices") or []
        if not choices:
            return None
        choice = choices[0]
        text = (choice.get("delta") or {}).get("content") or ""
        finish_reason = choice.get("finish_reason")
        if finish_reason:
            return TokenEvent(text=text, done=True, finish_reason=finish_reason)
        if not text:
            return None
        return TokenEvent(text=text)

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        if not texts:
            return []
        self._require_credentials()
        try:
            response = await self._client.post(
                "embeddings",
                json={"model": self.embedding_model, "input": list(texts)},
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"Cloud provider unreachable: {exc}", provider_id=self.provider_id) from exc
        if response.status_code >= 400:
            raise self._error_for(response)
        data = sorted(response.json().get("data", []), key=lambda item: item.get("index", 0))
        if len(data) != len(texts):
            raise ModelError(
                f"Embedding API returned {len(data)} vectors for {len(texts)} inputs",
                provider_id=self.provider_id,
            )
        return [tuple(float(v) for v in item["embedding"]) for item in data]

    def _require_credentials(self) -> None:
        if not self._has_credentials:
            raise AuthenticationFailed("No API key configured for cloud provider", provider_id=self.provider_id)

    def _error_for(self, response: httpx.Response) -> ProviderError:
        try:
            detail = response.json().get("error", {})
            message = detail.get("message") if isinstance(detail, dict) else str(detail)
        except (json.JSONDecodeError, AttributeError, httpx.ResponseNotRead):
            message = None
        message = message or f"HTTP {response.status_code}"
        status = response.status_code
        if status == 429:
            return ProviderRateLimited(message, provider_id=self.provider_id, retry_after=_retry_after(response))
        if status in (401, 403):
            return AuthenticationFailed(message, provider_id=self.provider_id)
        if status in (400, 404, 413, 422):
            return InvalidRequest(message, provider_id=self.provider_id)
        if status in (502, 503, 504):
            return ProviderUnavailable(message, provider_id=self.provider_id)
        return ModelError(message, provider_id=self.provider_id)

    async def aclose(self) -> None:
        await self._client.aclose()
