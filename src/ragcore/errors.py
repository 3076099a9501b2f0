"""Error taxonomy shared by every ragcore component.

Each error carries a stable ``kind`` so the host UI can pick the matching
recovery action (retry, re-authenticate, change provider) without parsing
messages.
"""

from __future__ import annotations

from typing import Sequence


class RagCoreError(RuntimeError):
    """Base class for all ragcore errors."""

    kind = "internal"
    retryable = False


class ProviderError(RagCoreError):
    """Raised when a model provider call fails."""

    kind = "provider_error"

    def __init__(self, message: str, *, provider_id: str | None = None) -> None:
        super().__init__(message)
        self.provider_id = provider_id


class ProviderUnavailable(ProviderError):
    """Provider could not be reached or did not answer in time."""

    kind = "unavailable"
    retryable = True


class ProviderRateLimited(ProviderError):
    """Provider asked us to slow down."""

    kind = "rate_limited"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider_id=provider_id)
        self.retry_after = retry_after


class InvalidRequest(ProviderError):
    """Provider rejected the request as malformed."""

    kind = "invalid_request"


class AuthenticationFailed(InvalidRequest):
    """Provider rejected the supplied credentials."""

    kind = "unauthenticated"


class ModelError(ProviderError):
    """Provider accepted the request but the model failed."""

    kind = "model_error"


class InvalidInput(RagCoreError):
    """Raised for inputs that can never succeed, no retry."""

    kind = "invalid_input"


class UnsupportedSourceType(InvalidInput):
    """Raised when a document source has no matching reader."""


class EmptyDocument(InvalidInput):
    """Raised when a document has no indexable text."""


class EmbeddingDimensionMismatch(InvalidInput):
    """Raised when vectors do not match the store's fixed dimensionality."""


class IndexCorruption(RagCoreError):
    """Index rows for a single document are unreadable or incomplete."""

    kind = "index_corruption"

    def __init__(self, document_id: str, message: str) -> None:
        super().__init__(f"{document_id}: {message}")
        self.document_id = document_id


class SessionBusy(RagCoreError):
    """A generation is already running for the session."""

    kind = "busy"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} already has an active generation")
        self.session_id = session_id


class SessionNotFound(RagCoreError):
    kind = "not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class DocumentNotFound(RagCoreError):
    kind = "not_found"

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Unknown document: {document_id}")
        self.document_id = document_id


class EmbeddingFailed(RagCoreError):
    """Raised when some chunk ranges could not be embedded after retries."""

    def __init__(self, message: str, *, failed_ranges: Sequence[tuple[int, int]], cause: RagCoreError | None = None) -> None:
        super().__init__(message)
        self.failed_ranges = list(failed_ranges)
        self.cause = cause
        if cause is not None:
            self.kind = cause.kind
            self.retryable = cause.retryable


__all__ = [
    "AuthenticationFailed",
    "DocumentNotFound",
    "EmbeddingDimensionMismatch",
    "EmbeddingFailed",
    "EmptyDocument",
    "IndexCorruption",
    "InvalidInput",
    "InvalidRequest",
    "ModelError",
    "ProviderError",
    "ProviderRateLimited",
    "ProviderUnavailable",
    "RagCoreError",
    "SessionBusy",
    "SessionNotFound",
    "UnsupportedSourceType",
]
