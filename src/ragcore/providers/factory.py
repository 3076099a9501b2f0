"""Factory functions for creating provider instances from settings."""

from __future__ import annotations

import logging

from ragcore.config import Settings
from ragcore.errors import InvalidInput
from ragcore.providers.base import ModelProvider, ProviderRegistry
from ragcore.providers.cloud import CloudProvider
from ragcore.providers.local import OllamaProvider
from ragcore.providers.offline import OfflineProvider

logger = logging.getLogger(__name__)


def build_provider(name: str, settings: Settings) -> ModelProvider:
    """Create the provider called ``name``.

    Args:
        name: One of ``ollama``, ``openai`` or ``offline``.
        settings: Active settings supplying endpoints, credentials and models.

    Returns:
        ModelProvider: An instance implementing the provider interface.
    """
    if name == "ollama":
        if not settings.local_ai_enabled:
            raise InvalidInput("Local AI is disabled; select a cloud provider")
        return OllamaProvider(
            host=settings.ollama_host,
            chat_model=settings.ollama_chat_model,
            embedding_model=settings.ollama_embedding_model,
        )

    if name == "openai":
        api_key = settings.cloud_api_key.get_secret_value() if settings.cloud_api_key else None
        return CloudProvider(
            base_url=settings.cloud_base_url,
            api_key=api_key,
            chat_model=settings.cloud_chat_model,
            embedding_model=settings.cloud_embedding_model,
            timeout=settings.provider_timeout_seconds,
        )

    if name == "offline":
        return OfflineProvider(dim=settings.embedding_dim)

    raise InvalidInput(f"Unsupported provider: {name}")


def build_registry(settings: Settings) -> ProviderRegistry:
    """Register the chat and embedding providers selected in ``settings``."""
    registry = ProviderRegistry()
    chat_name = settings.provider
    embedding_name = settings.resolved_embedding_provider
    registry.register(build_provider(chat_name, settings), activate=True)
    if embedding_name != chat_name:
        registry.register(build_provider(embedding_name, settings), embeddings=True)
    else:
        registry.select(chat_name, embeddings=True)
    logger.info("Configured providers: chat=%s, embeddings=%s", chat_name, embedding_name)
    return registry
