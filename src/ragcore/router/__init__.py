"""Inbound request routing."""

from .dedup import InFlightRequests, fingerprint
from .service import (
    CancelGeneration,
    CreateSession,
    DeleteDocument,
    DeleteSession,
    GetDocument,
    IngestDocument,
    Operation,
    QuerySimilar,
    RequestRouter,
    SendMessage,
)

__all__ = [
    "CancelGeneration",
    "CreateSession",
    "DeleteDocument",
    "DeleteSession",
    "GetDocument",
    "InFlightRequests",
    "IngestDocument",
    "Operation",
    "QuerySimilar",
    "RequestRouter",
    "SendMessage",
    "fingerprint",
]
