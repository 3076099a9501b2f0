"""Model provider adapters."""

from .base import (
    CompletionOptions,
    ModelProvider,
    ProviderCapabilities,
    ProviderKind,
    ProviderRegistry,
    TokenEvent,
)
from .cloud import CloudProvider
from .local import OllamaProvider
from .offline import OfflineProvider
from .retry import RetryPolicy, call_with_retry
from .stream import CancellationToken, TokenStream

__all__ = [
    "CancellationToken",
    "CloudProvider",
    "CompletionOptions",
    "ModelProvider",
    "OfflineProvider",
    "OllamaProvider",
    "ProviderCapabilities",
    "ProviderKind",
    "ProviderRegistry",
    "RetryPolicy",
    "TokenEvent",
    "TokenStream",
    "call_with_retry",
]
