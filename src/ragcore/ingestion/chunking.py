"""Structure-aware chunking of document text into bounded, overlapping spans."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Iterator

from ragcore.errors import InvalidInput
from ragcore.models import ChunkSpan

LengthFunction = Callable[[str], int]

# Separators stay attached to the piece they terminate, so pieces tile the text.
_PARAGRAPH_RE = re.compile(r"\n[ \t]*\n\s*")
_LINE_RE = re.compile(r"\n\s*")
_SENTENCE_RE = re.compile(r"(?<=[.!?。！？])[\"'\)\]]*\s+")
_WORD_RE = re.compile(r"\s+")
_LEVELS = (_PARAGRAPH_RE, _LINE_RE, _SENTENCE_RE, _WORD_RE)
_OVERLAP_LEVELS = (_SENTENCE_RE, _WORD_RE)


def char_length(text: str) -> int:
    return len(text)


def word_length(text: str) -> int:
    return len(text.split())


@lru_cache(maxsize=8)
def tiktoken_length(encoding_name: str = "cl100k_base") -> LengthFunction:
    """Token counter matching the embedding model's tokenizer family."""
    import tiktoken

    encoding = tiktoken.get_encoding(encoding_name)

    def _length(text: str) -> int:
        return len(encoding.encode(text, disallowed_special=()))

    return _length


def length_function_for(unit: str, encoding_name: str = "cl100k_base") -> LengthFunction:
    if unit == "tokens":
        return tiktoken_length(encoding_name)
    if unit == "words":
        return word_length
    if unit == "chars":
        return char_length
    raise InvalidInput(f"Unknown length unit: {unit}")


def _split_at(text: str, start: int, end: int, pattern: re.Pattern[str]) -> Iterator[tuple[int, int]]:
    position = start
    for match in pattern.finditer(text, start, end):
        cut = match.end()
        if cut <= position or cut >= end:
            continue
        yield position, cut
        position = cut
    if position < end:
        yield position, end


@dataclass(frozen=True)
class ChunkerConfig:
    max_chunk_size: int = 256
    overlap: int = 32

    def __post_init__(self) -> None:
        if self.max_chunk_size < 1:
            raise InvalidInput("max_chunk_size must be positive")
        if self.overlap < 0 or self.overlap >= self.max_chunk_size:
            raise InvalidInput("overlap must be in [0, max_chunk_size)")


class ChunkSequence:
    """Lazy, restartable sequence of chunk spans.

    Iterating twice yields identical spans for identical input.
    """

    def __init__(self, text: str, config: ChunkerConfig, length: LengthFunction) -> None:
        self._text = text
        self._config = config
        self._length = length

    def __iter__(self) -> Iterator[ChunkSpan]:
        return _ChunkWalk(self._text, self._config, self._length).spans()


class _ChunkWalk:
    def __init__(self, text: str, config: ChunkerConfig, length: LengthFunction) -> None:
        self.text = text
        self.max_size = config.max_chunk_size
        self.overlap = config.overlap
        self.length = length

    def size(self, start: int, end: int) -> int:
        return self.length(self.text[start:end])

    def fits(self, start: int, end: int) -> bool:
        return self.size(start, end) <= self.max_size

    def segments(self, start: int, end: int, level: int = 0) -> Iterator[tuple[int, int]]:
        """Yield contiguous pieces that each fit, splitting at the coarsest boundary possible."""
        if self.fits(start, end):
            yield start, end
            return
        if level >= len(_LEVELS):
            yield from self.hard_split(start, end)
            return
        for piece_start, piece_end in _split_at(self.text, start, end, _LEVELS[level]):
            yield from self.segments(piece_start, piece_end, level + 1)

    def hard_split(self, start: int, end: int) -> Iterator[tuple[int, int]]:
        while start < end:
            low, high = start + 1, end
            while low < high:
                mid = (low + high + 1) // 2
                if self.fits(start, mid):
                    low = mid
                else:
                    high = mid - 1
            yield start, low
            start = low

    def overlap_start(self, chunk_start: int, chunk_end: int, next_end: int) -> int:
        """Earliest boundary whose tail fits the overlap budget and leaves room for the next piece."""
        if self.overlap <= 0:
            return chunk_end
        for pattern in _OVERLAP_LEVELS:
            for _, boundary in _split_at(self.text, chunk_start, chunk_end, pattern):
                if boundary <= chunk_start or boundary >= chunk_end:
                    continue
                if self.size(boundary, chunk_end) <= self.overlap and self.fits(boundary, next_end):
                    return boundary
        return chunk_end

    def spans(self) -> Iterator[ChunkSpan]:
        pieces = self.segments(0, len(self.text))
        upcoming = next(pieces, None)
        start = 0
        ordinal = 0
        while upcoming is not None:
            end = start
            while upcoming is not None and self.fits(start, upcoming[1]):
                end = upcoming[1]
                upcoming = next(pieces, None)
            if end == start:
                if upcoming is None:
                    return
                raise InvalidInput(
                    f"max_chunk_size {self.max_size} is smaller than the text at offset {upcoming[0]}"
                )
            yield ChunkSpan(ordinal=ordinal, start=start, end=end, text=self.text[start:end])
            ordinal += 1
            if upcoming is None:
                return
            start = self.overlap_start(start, end, upcoming[1])


class Chunker:
    """Splits text into spans no larger than ``max_chunk_size`` length units."""

    def __init__(self, config: ChunkerConfig | None = None, length: LengthFunction | None = None) -> None:
        self._config = config or ChunkerConfig()
        self._length = length or char_length

    @property
    def config(self) -> ChunkerConfig:
        return self._config

    def chunk(self, text: str) -> ChunkSequence:
        return ChunkSequence(text, self._config, self._length)


def chunk(
    document_text: str,
    max_chunk_size: int,
    overlap: int = 0,
    length: LengthFunction | None = None,
) -> ChunkSequence:
    """Convenience helper mirroring :meth:`Chunker.chunk`."""
    return Chunker(ChunkerConfig(max_chunk_size=max_chunk_size, overlap=overlap), length).chunk(document_text)


def reconstruct(spans) -> str:
    """Join spans back into the source text, dropping overlapping prefixes."""
    parts: list[str] = []
    covered = 0
    for span in spans:
        if span.end <= covered:
            continue
        parts.append(span.text[max(0, covered - span.start) :])
        covered = span.end
    return "".join(parts)
