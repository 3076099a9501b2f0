"""Runtime configuration consumed from the host application."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["ollama", "openai", "offline"]
LengthUnit = Literal["tokens", "words", "chars"]


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragcore_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    data_dir: Path = Path("./data")

    # Provider selection
    provider: ProviderName = "ollama"
    embedding_provider: ProviderName | None = None
    local_ai_enabled: bool = True

    # Local runtime
    ollama_host: str = "http://localhost:11434"
    ollama_chat_model: str = "llama3.1"
    ollama_embedding_model: str = "nomic-embed-text"

    # Cloud API (OpenAI-compatible)
    cloud_base_url: str = "https://api.openai.com/v1"
    cloud_api_key: SecretStr | None = None
    cloud_chat_model: str = "gpt-4o-mini"
    cloud_embedding_model: str = "text-embedding-3-small"

    # Generation
    temperature: float = 0.3
    max_tokens: int | None = 1024
    stop_sequences: tuple[str, ...] = ()
    context_window_tokens: int = 4096
    retrieval_top_k: int = 5
    min_retrieval_score: float = 0.0

    # Embedding & chunking
    embedding_dim: int = 384
    chunk_size: int = 256
    chunk_overlap: int = 32
    length_unit: LengthUnit = "tokens"
    tiktoken_encoding: str = "cl100k_base"
    embedding_batch_size: int = 16

    # Persistence
    database_url: str | None = None
    chroma_persist_dir: Path | None = Path("./.chroma")
    chroma_collection: str = "ragcore-chunks"
    exact_search_threshold: int = 2000

    # Resilience
    provider_timeout_seconds: float = 60.0
    retry_max_attempts: int = 4
    retry_initial_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0
    rate_limit_default_delay_seconds: float = 2.0

    # Streaming & watching
    notification_buffer_size: int = 64
    watch_poll_interval_seconds: float = 1.0
    watch_debounce_seconds: float = 2.0

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def resolved_embedding_provider(self) -> ProviderName:
        return self.embedding_provider or self.provider

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{(self.data_dir / 'ragcore.db').as_posix()}"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
