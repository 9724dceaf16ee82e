"""Streaming HTTP download helper shared by the release and kernel-source fetchers.

This module handles:
- Chunked download to a local path with SHA-256 computation
- Mapping httpx failures to DownloadError (transient or terminal)
- Honouring the run deadline between chunks
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from unraid_kmod.errors import DownloadError
from unraid_kmod.types import RunDeadline

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass
class DownloadResult:
    """Result of a single download."""

    path: Path
    url: str
    checksum: str
    size_bytes: int


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    deadline: RunDeadline | None = None,
) -> DownloadResult:
    """Download a file, streaming it to dest_path.

    The destination is truncated on entry; on any failure the partial file
    is removed before the error propagates.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.
        deadline: Optional run deadline checked between chunks.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
        PipelineCancelledError: If the run deadline expires mid-transfer.
    """
    if deadline is not None:
        deadline.check(f"download of {url}")
        timeout = deadline.remaining(timeout) or timeout

    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    if deadline is not None:
                        deadline.check(f"download of {url}")
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

            computed_checksum = sha256.hexdigest()

            logger.info(
                "Downloaded %s (%d bytes, checksum: %s)",
                dest_path.name,
                total_bytes,
                computed_checksum[:16] + "...",
            )

            return DownloadResult(
                path=dest_path,
                url=url,
                checksum=computed_checksum,
                size_bytes=total_bytes,
            )

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        status = e.response.status_code
        raise DownloadError(
            f"HTTP error downloading {url}: {status} {e.response.reason_phrase}",
            code="http_error",
            transient=status >= 500,
            status_code=status,
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
            transient=True,
        ) from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
            transient=True,
        ) from e
    except BaseException:
        dest_path.unlink(missing_ok=True)
        raise


def create_client() -> httpx.Client:
    """Create the HTTP client used for all downloads."""
    return httpx.Client(follow_redirects=True)


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "DownloadResult",
    "compute_file_sha256",
    "create_client",
    "download_file",
]
