"""Coordinating context that owns every long-lived component."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import List, Optional

from chromadb.api import ClientAPI

from ragcore.chat.manager import ChatSessionManager
from ragcore.chat.prompt import PromptBuilder, PromptBuilderConfig
from ragcore.config import Settings, get_settings
from ragcore.ingestion.chunking import Chunker, ChunkerConfig, length_function_for
from ragcore.ingestion.embedding import EmbeddingPipeline
from ragcore.ingestion.service import IngestionService
from ragcore.ingestion.watcher import DocumentChanged, DocumentWatcher
from ragcore.metrics.observability import configure_logging, get_logger
from ragcore.notifications import NotificationHub
from ragcore.providers.base import CompletionOptions, ModelProvider, ProviderRegistry
from ragcore.providers.factory import build_provider, build_registry
from ragcore.providers.retry import RetryPolicy
from ragcore.retrieval.service import RetrievalConfig, Retriever
from ragcore.router.service import RequestRouter
from ragcore.store.database import Registry
from ragcore.store.vector import VectorStore

logger = get_logger("context")


def completion_options(settings: Settings) -> CompletionOptions:
    return CompletionOptions(
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        stop=tuple(settings.stop_sequences),
    )


@dataclass
class AppContext:
    """Single owner of providers, stores, sessions and background tasks."""

    settings: Settings
    registry: Registry
    providers: ProviderRegistry
    store: VectorStore
    embedder: EmbeddingPipeline
    chunker: Chunker
    retriever: Retriever
    notifications: NotificationHub
    watcher: DocumentWatcher
    ingestion: IngestionService
    chat: ChatSessionManager
    router: RequestRouter
    changes: "asyncio.Queue[DocumentChanged]"
    _tasks: List[asyncio.Task] = field(default_factory=list)
    _retired_providers: List[ModelProvider] = field(default_factory=list)
    _stop: Optional[asyncio.Event] = None

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        providers: ProviderRegistry | None = None,
        chroma_client: ClientAPI | None = None,
    ) -> "AppContext":
        settings = settings or get_settings()
        configure_logging()
        providers = providers or build_registry(settings)
        policy = RetryPolicy.from_settings(settings)
        length = length_function_for(settings.length_unit, settings.tiktoken_encoding)

        registry = Registry(settings.resolved_database_url)
        store = VectorStore(
            registry,
            settings.chroma_collection,
            client=chroma_client,
            persist_directory=None if chroma_client else settings.chroma_persist_dir,
            exact_search_threshold=settings.exact_search_threshold,
        )
        embedder = EmbeddingPipeline(
            providers.embedding,
            batch_size=settings.embedding_batch_size,
            policy=policy,
            dim=store.dimension,
        )
        chunker = Chunker(
            ChunkerConfig(max_chunk_size=settings.chunk_size, overlap=settings.chunk_overlap),
            length,
        )
        retriever = Retriever(
            embedder,
            store,
            RetrievalConfig(top_k=settings.retrieval_top_k, min_score=settings.min_retrieval_score),
        )
        notifications = NotificationHub(settings.notification_buffer_size)
        changes: asyncio.Queue[DocumentChanged] = asyncio.Queue()
        watcher = DocumentWatcher(
            changes,
            debounce_seconds=settings.watch_debounce_seconds,
            poll_interval_seconds=settings.watch_poll_interval_seconds,
        )
        ingestion = IngestionService(registry, store, embedder, chunker, notifications, watcher=watcher)
        watcher.on_failure = ingestion.handle_watch_failure
        chat = ChatSessionManager(
            registry,
            providers,
            retriever,
            notifications,
            PromptBuilder(
                PromptBuilderConfig(
                    context_window_tokens=settings.context_window_tokens,
                    reserved_output_tokens=min(settings.max_tokens or 0, settings.context_window_tokens // 2),
                ),
                length,
            ),
            options=completion_options(settings),
            policy=policy,
        )
        router = RequestRouter(chat, ingestion, retriever)
        return cls(
            settings=settings,
            registry=registry,
            providers=providers,
            store=store,
            embedder=embedder,
            chunker=chunker,
            retriever=retriever,
            notifications=notifications,
            watcher=watcher,
            ingestion=ingestion,
            chat=chat,
            router=router,
            changes=changes,
        )

    async def start(self, *, watch: bool = True) -> None:
        """Recover interrupted state and start the background ingestion tasks."""
        await self.ingestion.recover()
        loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        self._tasks.append(loop.create_task(self.ingestion.run_worker(self.changes)))
        if watch:
            self._tasks.append(loop.create_task(self.watcher.run(self._stop)))
        logger.info("context.started", watch=watch, providers=self.providers.ids())

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        await self.chat.shutdown()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        await self.ingestion.wait_for_repairs()
        await self.store.flush()
        await self.providers.aclose()
        for provider in self._retired_providers:
            await provider.aclose()
        self._retired_providers.clear()
        self.registry.dispose()
        logger.info("context.stopped")

    def apply_settings(self, settings: Settings) -> None:
        """Swap in providers built from ``settings``; sessions keep only provider ids."""
        chat_name = settings.provider
        embedding_name = settings.resolved_embedding_provider
        replaced = [self.providers.register(build_provider(chat_name, settings), activate=True)]
        if embedding_name != chat_name:
            replaced.append(self.providers.register(build_provider(embedding_name, settings), embeddings=True))
        else:
            self.providers.select(chat_name, embeddings=True)
        if not settings.local_ai_enabled and "ollama" in self.providers.ids():
            replaced.append(self.providers.unregister("ollama"))
        self._retired_providers.extend(provider for provider in replaced if provider is not None)
        self.chat.set_options(completion_options(settings))
        self.settings = settings
        logger.info("context.settings_applied", provider=chat_name, embedding_provider=embedding_name)
