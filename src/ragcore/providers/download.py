"""Download local model files with progress, cancellation and checksum checks."""

from __future__ import annotations

import base64
import binascii
import hashlib
import time
from pathlib import Path
from typing import Callable

import httpx

from ragcore.errors import InvalidInput, ProviderUnavailable
from ragcore.metrics.observability import get_logger
from ragcore.providers.stream import CancellationToken

ProgressCallback = Callable[[int, int], None]

_logger = get_logger("providers.download")


class DownloadCancelled(RuntimeError):
    """Raised when a model download is cancelled by the caller."""


class ChecksumMismatch(InvalidInput):
    """Raised when the downloaded bytes do not match the advertised SHA256."""


async def download_model(
    url: str,
    model_dir: Path,
    filename: str,
    *,
    progress: ProgressCallback | None = None,
    cancel: CancellationToken | None = None,
    client: httpx.AsyncClient | None = None,
    debounce_seconds: float = 0.1,
) -> Path:
    """Stream ``url`` into ``model_dir/filename``.

    Bytes land in ``<filename>.part`` first; the part file is only renamed
    into place once the optional base64 ``SHA256`` response header has been
    verified. A cancelled or failed download leaves no part file behind.
    """
    model_dir.mkdir(parents=True, exist_ok=True)
    part_path = model_dir / f"{filename}.part"
    final_path = model_dir / filename
    owns_client = client is None
    http = client or httpx.AsyncClient(follow_redirects=True, timeout=None)
    hasher = hashlib.sha256()
    downloaded = 0
    last_update = time.monotonic() - debounce_seconds
    try:
        async with http.stream("GET", url) as response:
            if response.status_code >= 400:
                await response.aread()
                raise ProviderUnavailable(f"Model download failed with HTTP {response.status_code}: {url}")
            total = int(response.headers.get("content-length") or 0)
            expected = _expected_digest(response.headers.get("SHA256"))
            with part_path.open("wb") as part_file:
                async for block in response.aiter_bytes():
                    if cancel is not None and cancel.cancelled:
                        raise DownloadCancelled(f"Download cancelled: {url}")
                    part_file.write(block)
                    hasher.update(block)
                    downloaded += len(block)
                    now = time.monotonic()
                    if progress is not None and now - last_update >= debounce_seconds:
                        progress(downloaded, total)
                        last_update = now
            if expected is not None and hasher.digest() != expected:
                raise ChecksumMismatch(
                    f"SHA256 mismatch for {filename}: expected {expected.hex()}, got {hasher.hexdigest()}"
                )
    except httpx.TransportError as exc:
        part_path.unlink(missing_ok=True)
        raise ProviderUnavailable(f"Model download interrupted: {exc}") from exc
    except BaseException:
        part_path.unlink(missing_ok=True)
        raise
    finally:
        if owns_client:
            await http.aclose()
    part_path.replace(final_path)
    if progress is not None:
        progress(downloaded, total or downloaded)
    _logger.info("model.downloaded", path=str(final_path), bytes=downloaded)
    return final_path


def _expected_digest(header: str | None) -> bytes | None:
    if not header:
        return None
    try:
        return base64.b64decode(header, validate=True)
    except (binascii.Error, ValueError):
        _logger.warning("model.download.bad_checksum_header", header=header)
        return None
