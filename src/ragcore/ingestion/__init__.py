"""Document ingestion pipeline."""

from .chunking import Chunker, ChunkerConfig, ChunkSequence, chunk, reconstruct
from .embedding import EmbeddingPipeline, EmbeddingReport, FailedRange
from .readers import content_hash, read_source
from .service import IngestionService
from .watcher import DocumentChanged, DocumentWatcher

__all__ = [
    "ChunkSequence",
    "Chunker",
    "ChunkerConfig",
    "DocumentChanged",
    "DocumentWatcher",
    "EmbeddingPipeline",
    "EmbeddingReport",
    "FailedRange",
    "IngestionService",
    "chunk",
    "content_hash",
    "read_source",
    "reconstruct",
]
