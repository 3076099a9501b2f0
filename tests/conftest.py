from __future__ import annotations

from pathlib import Path
from uuid import uuid4

import chromadb
import pytest

from ragcore.chat.manager import ChatSessionManager
from ragcore.ingestion.chunking import Chunker, ChunkerConfig
from ragcore.ingestion.embedding import EmbeddingPipeline
from ragcore.ingestion.service import IngestionService
from ragcore.notifications import NotificationHub
from ragcore.providers.base import ProviderRegistry
from ragcore.providers.offline import OfflineProvider
from ragcore.providers.retry import RetryPolicy
from ragcore.retrieval.service import Retriever
from ragcore.store.database import Registry
from ragcore.store.vector import VectorStore

FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, rate_limit_default_delay=0.0, timeout=5.0)


@pytest.fixture()
def fast_retry() -> RetryPolicy:
    return FAST_RETRY


@pytest.fixture()
def registry(tmp_path: Path) -> Registry:
    registry = Registry(f"sqlite:///{(tmp_path / 'ragcore.db').as_posix()}")
    yield registry
    registry.dispose()


@pytest.fixture(scope="session")
def chroma_client():
    return chromadb.EphemeralClient()


@pytest.fixture()
def collection_name() -> str:
    return f"test-{uuid4().hex[:12]}"


@pytest.fixture()
def store(registry: Registry, chroma_client, collection_name: str) -> VectorStore:
    return VectorStore(registry, collection_name, client=chroma_client)


@pytest.fixture()
def offline() -> OfflineProvider:
    return OfflineProvider(dim=32)


@pytest.fixture()
def providers(offline: OfflineProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(offline, activate=True, embeddings=True)
    return registry


@pytest.fixture()
def embedder(providers: ProviderRegistry) -> EmbeddingPipeline:
    return EmbeddingPipeline(providers.embedding, batch_size=4, policy=FAST_RETRY)


@pytest.fixture()
def hub() -> NotificationHub:
    return NotificationHub(buffer_size=256)


@pytest.fixture()
def ingestion(registry, store, embedder, hub) -> IngestionService:
    chunker = Chunker(ChunkerConfig(max_chunk_size=120, overlap=0))
    return IngestionService(registry, store, embedder, chunker, hub)


@pytest.fixture()
def retriever(embedder, store) -> Retriever:
    return Retriever(embedder, store)


@pytest.fixture()
def chat(registry, providers, retriever, hub) -> ChatSessionManager:
    return ChatSessionManager(registry, providers, retriever, hub, policy=FAST_RETRY)
