"""Load plain text from document sources."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Mapping

from langchain_community.document_loaders import BSHTMLLoader, Docx2txtLoader, PyPDFLoader
from langchain_community.document_loaders.base import BaseLoader

from ragcore.errors import EmptyDocument, InvalidInput, UnsupportedSourceType

TEXT_SUFFIXES = frozenset({".txt", ".md", ".markdown", ".rst", ".text", ""})

_LOADERS: Mapping[str, type[BaseLoader]] = {
    ".pdf": PyPDFLoader,
    ".docx": Docx2txtLoader,
    ".html": BSHTMLLoader,
    ".htm": BSHTMLLoader,
}


def supported_suffixes() -> frozenset[str]:
    return TEXT_SUFFIXES | frozenset(_LOADERS)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def read_source(source: str | Path, *, encoding: str = "utf-8") -> str:
    """Return the text of ``source``; raises ``InvalidInput`` subclasses for unusable input."""
    path = Path(source)
    suffix = path.suffix.lower()
    if suffix not in TEXT_SUFFIXES and suffix not in _LOADERS:
        raise UnsupportedSourceType(f"Unsupported document type: {suffix or '<none>'}")
    if not path.is_file():
        raise InvalidInput(f"Document source not found: {path}")
    if suffix in TEXT_SUFFIXES:
        try:
            text = path.read_text(encoding=encoding)
        except UnicodeDecodeError as exc:
            raise InvalidInput(f"{path} is not valid {encoding} text") from exc
    else:
        try:
            documents = _LOADERS[suffix](str(path)).load()
        except Exception as exc:  # pragma: no cover - loader specific errors
            raise InvalidInput(f"Failed to load {path}: {exc}") from exc
        text = "\n\n".join(document.page_content for document in documents)
    return require_text(text, str(path))


def require_text(text: str, label: str) -> str:
    if not text.strip():
        raise EmptyDocument(f"Document has no text: {label}")
    return text
