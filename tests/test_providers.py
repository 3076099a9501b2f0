from __future__ import annotations

import asyncio
import base64
import hashlib
import json
from typing import AsyncIterator, Sequence
from unittest.mock import AsyncMock, MagicMock

import httpx
import ollama
import pytest

from ragcore.config import get_settings
from ragcore.errors import (
    AuthenticationFailed,
    InvalidInput,
    ModelError,
    ProviderRateLimited,
    ProviderUnavailable,
)
from ragcore.providers.base import CompletionOptions, ProviderRegistry, TokenEvent
from ragcore.providers.cloud import CloudProvider
from ragcore.providers.download import ChecksumMismatch, DownloadCancelled, download_model
from ragcore.providers.factory import build_registry
from ragcore.providers.local import OllamaProvider
from ragcore.providers.offline import OfflineProvider
from ragcore.providers.retry import RetryPolicy, call_with_retry
from ragcore.providers.stream import CancellationToken, TokenStream


async def _collect(stream: AsyncIterator[TokenEvent]) -> list[TokenEvent]:
    return [event async for event in stream]


def _events(*texts: str) -> AsyncIterator[TokenEvent]:
    async def _gen():
        for text in texts:
            await asyncio.sleep(0)
            yield TokenEvent(text=text)
        yield TokenEvent(text="", done=True, finish_reason="stop")

    return _gen()


@pytest.mark.asyncio
async def test_rate_limited_open_is_retried(fast_retry):
    attempts = {"count": 0}

    def opener():
        attempts["count"] += 1
        if attempts["count"] <= 2:
            async def _limited():
                raise ProviderRateLimited("slow down", retry_after=0.0)
                yield  # pragma: no cover

            return _limited()
        return _events("Hello", " world")

    stream = TokenStream(opener, cancel=CancellationToken(), policy=fast_retry)
    events = await _collect(stream)

    assert attempts["count"] == 3
    assert stream.attempts == 3
    assert "".join(event.text for event in events) == "Hello world"
    assert events[-1].done


@pytest.mark.asyncio
async def test_call_with_retry_gives_up_after_max_attempts():
    policy = RetryPolicy(max_attempts=2, initial_delay=0.0, max_delay=0.0, timeout=1.0)
    calls = []

    async def failing():
        calls.append(1)
        raise ProviderUnavailable("down")

    with pytest.raises(ProviderUnavailable):
        await call_with_retry(failing, policy)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_is_raised_once(fast_retry):
    calls = []

    async def rejected():
        calls.append(1)
        raise AuthenticationFailed("bad key")

    with pytest.raises(AuthenticationFailed):
        await call_with_retry(rejected, fast_retry)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_cancel_stops_stream_and_closes_provider_iterator(fast_retry):
    closed = asyncio.Event()

    async def endless():
        try:
            index = 0
            while True:
                await asyncio.sleep(0.01)
                yield TokenEvent(text=f"t{index} ")
                index += 1
        finally:
            closed.set()

    cancel = CancellationToken()
    stream = TokenStream(lambda: endless(), cancel=cancel, policy=fast_retry)
    received = []
    async for event in stream:
        received.append(event.text)
        if len(received) == 3:
            cancel.cancel()

    assert received == ["t0 ", "t1 ", "t2 "]
    assert stream.cancelled
    assert closed.is_set()


@pytest.mark.asyncio
async def test_silent_provider_times_out():
    policy = RetryPolicy(max_attempts=1, initial_delay=0.0, max_delay=0.0, timeout=0.05)

    async def silent():
        await asyncio.sleep(10)
        yield TokenEvent(text="never")

    stream = TokenStream(lambda: silent(), cancel=CancellationToken(), policy=policy)
    with pytest.raises(ProviderUnavailable):
        await _collect(stream)


@pytest.mark.asyncio
async def test_offline_provider_streams_and_embeds():
    provider = OfflineProvider(dim=16)
    history = [{"role": "system", "content": "Context:\n[1] Paris is the capital of France."}]
    events = await _collect(provider.complete("What is the capital?", history))
    text = "".join(event.text for event in events)
    assert "[1] Paris is the capital of France." in text
    assert events[-1].done

    first, second = await provider.embed(["alpha beta", "alpha beta"])
    assert first == second
    assert len(first) == 16


@pytest.mark.asyncio
async def test_offline_provider_honours_max_tokens():
    provider = OfflineProvider(dim=8)
    events = await _collect(provider.complete("question", [], CompletionOptions(max_tokens=2)))
    assert len([event for event in events if event.text]) == 2


def _sse(*chunks: dict) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


@pytest.mark.asyncio
async def test_cloud_provider_streams_deltas():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            {"choices": [{"delta": {}, "finish_reason": "stop"}]},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    provider = CloudProvider(
        "https://api.example.test/v1",
        "sk-test",
        "chat-model",
        "embed-model",
        transport=httpx.MockTransport(handler),
    )
    events = await _collect(provider.complete("hi", [], CompletionOptions(temperature=0.1, stop=("END",))))
    await provider.aclose()

    assert "".join(event.text for event in events) == "Hello"
    assert events[-1].done and events[-1].finish_reason == "stop"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["stream"] is True
    assert seen["body"]["stop"] == ["END"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, headers, expected",
    [
        (429, {"retry-after": "3"}, ProviderRateLimited),
        (401, {}, AuthenticationFailed),
        (503, {}, ProviderUnavailable),
        (500, {}, ModelError),
    ],
)
async def test_cloud_provider_classifies_http_errors(status, headers, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": "nope"}}, headers=headers)

    provider = CloudProvider("https://api.example.test/v1", "sk", "c", "e", transport=httpx.MockTransport(handler))
    with pytest.raises(expected) as excinfo:
        await provider.embed(["x"])
    await provider.aclose()
    if expected is ProviderRateLimited:
        assert excinfo.value.retry_after == 3.0


@pytest.mark.asyncio
async def test_cloud_provider_without_key_fails_authentication():
    provider = CloudProvider("https://api.example.test/v1", None, "c", "e", transport=httpx.MockTransport(lambda r: None))
    with pytest.raises(AuthenticationFailed):
        await provider.embed(["x"])
    await provider.aclose()


@pytest.mark.asyncio
async def test_cloud_embeddings_are_ordered_by_index():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    provider = CloudProvider("https://api.example.test/v1", "sk", "c", "e", transport=httpx.MockTransport(handler))
    vectors = await provider.embed(["first", "second"])
    await provider.aclose()
    assert vectors == [(1.0, 0.0), (0.0, 1.0)]


def _ollama_client(parts: Sequence[dict] = (), embeddings: Sequence[Sequence[float]] = ()) -> MagicMock:
    async def _stream():
        for part in parts:
            yield part

    client = MagicMock()
    client.chat = AsyncMock(return_value=_stream())
    client.embed = AsyncMock(return_value={"embeddings": [list(vector) for vector in embeddings]})
    return client


@pytest.mark.asyncio
async def test_ollama_provider_streams_chat_parts():
    client = _ollama_client(
        parts=[
            {"message": {"content": "Bon"}, "done": False},
            {"message": {"content": "jour"}, "done": True, "done_reason": "stop"},
        ]
    )
    provider = OllamaProvider("http://localhost:11434", "llama3.1", "nomic-embed-text", client=client)
    events = await _collect(provider.complete("hi", [], CompletionOptions(max_tokens=5)))

    assert "".join(event.text for event in events) == "Bonjour"
    assert events[-1].done
    kwargs = client.chat.await_args.kwargs
    assert kwargs["options"] == {"num_predict": 5}
    assert kwargs["messages"][-1] == {"role": "user", "content": "hi"}


@pytest.mark.asyncio
async def test_ollama_provider_maps_response_errors():
    client = _ollama_client()
    client.embed = AsyncMock(side_effect=ollama.ResponseError("busy", 429))
    provider = OllamaProvider("http://localhost:11434", "llama3.1", "nomic-embed-text", client=client)
    with pytest.raises(ProviderRateLimited):
        await provider.embed(["x"])

    client.embed = AsyncMock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(ProviderUnavailable):
        await provider.embed(["x"])


@pytest.mark.asyncio
async def test_ollama_embed_count_mismatch_is_model_error():
    client = _ollama_client(embeddings=[[0.1, 0.2]])
    provider = OllamaProvider("http://localhost:11434", "llama3.1", "nomic-embed-text", client=client)
    with pytest.raises(ModelError):
        await provider.embed(["a", "b"])


def test_registry_selection_and_replacement():
    registry = ProviderRegistry()
    first = OfflineProvider(dim=8, provider_id="one")
    second = OfflineProvider(dim=8, provider_id="two")
    registry.register(first)
    registry.register(second)

    assert registry.active_id == "one"
    assert registry.embedding() is first
    registry.select("two")
    assert registry.active() is second
    # unknown ids fall back to the active provider
    assert registry.get("gone") is second

    replacement = OfflineProvider(dim=8, provider_id="two")
    assert registry.register(replacement) is second
    assert registry.unregister("one") is first
    assert registry.embedding() is replacement

    with pytest.raises(InvalidInput):
        registry.select("missing")


def test_build_registry_from_settings():
    settings = get_settings({"provider": "offline", "embedding_dim": 12})
    registry = build_registry(settings)
    assert registry.ids() == ["offline"]
    assert registry.embedding().provider_id == "offline"


def test_build_registry_rejects_disabled_local_runtime():
    settings = get_settings({"provider": "ollama", "local_ai_enabled": False})
    with pytest.raises(InvalidInput):
        build_registry(settings)


def _download_client(payload: bytes, digest: bytes | None = None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        headers = {}
        if digest is not None:
            headers["SHA256"] = base64.b64encode(digest).decode("ascii")
        return httpx.Response(200, content=payload, headers=headers)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_download_verifies_checksum(tmp_path):
    payload = b"model-weights" * 100
    progress = []
    async with _download_client(payload, hashlib.sha256(payload).digest()) as client:
        path = await download_model(
            "https://models.example.test/m.gguf",
            tmp_path,
            "m.gguf",
            progress=lambda done, total: progress.append((done, total)),
            client=client,
        )
    assert path.read_bytes() == payload
    assert progress[-1] == (len(payload), len(payload))
    assert not (tmp_path / "m.gguf.part").exists()


@pytest.mark.asyncio
async def test_download_checksum_mismatch_leaves_no_files(tmp_path):
    async with _download_client(b"tampered", hashlib.sha256(b"original").digest()) as client:
        with pytest.raises(ChecksumMismatch):
            await download_model("https://models.example.test/m.gguf", tmp_path, "m.gguf", client=client)
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_cancelled_download_removes_part_file(tmp_path):
    cancel = CancellationToken()
    cancel.cancel()
    async with _download_client(b"weights") as client:
        with pytest.raises(DownloadCancelled):
            await download_model(
                "https://models.example.test/m.gguf",
                tmp_path,
                "m.gguf",
                cancel=cancel,
                client=client,
            )
    assert not (tmp_path / "m.gguf.part").exists()
    assert not (tmp_path / "m.gguf").exists()
