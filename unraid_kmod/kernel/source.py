"""Kernel source provisioning.

This module handles:
- Building matched-source and kernel.org tarball URLs for a kernel version
- Fetching source tarballs into the cache ('source:' and 'upstream:' keys)
- Reading the embedded .config out of a source tarball
- Unpacking a source tarball into a directory
"""

from __future__ import annotations

import logging
import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import httpx

from unraid_kmod.cache.store import CacheStore, validate_tarball
from unraid_kmod.errors import DownloadError, FormatError
from unraid_kmod.fetch import DOWNLOAD_TIMEOUT, download_file
from unraid_kmod.types import CacheKind, KernelVersion, RunDeadline

logger = logging.getLogger(__name__)

KERNEL_ORG_BASE = "https://cdn.kernel.org/pub/linux/kernel"


class SourceUnpackError(FormatError):
    """Raised when a kernel source tarball cannot be unpacked."""

    def __init__(self, message: str, code: str = "source_unpack_error") -> None:
        super().__init__(message, code=code)


@dataclass
class SourceTarball:
    """A kernel source tarball held in the cache."""

    key: str
    path: Path
    url: str | None
    from_cache: bool


def matched_source_url(version: KernelVersion, template: str) -> str:
    """Format the matched-source URL template for a kernel version.

    The template may use {kernel_version}, {base_version} and {major_version}.
    """
    return template.format(
        kernel_version=version.version,
        base_version=version.base_version,
        major_version=version.major_version,
    )


def upstream_source_url(version: KernelVersion, base_url: str = KERNEL_ORG_BASE) -> str:
    """Return the kernel.org tarball URL for a kernel version's base release."""
    return (
        f"{base_url.rstrip('/')}/v{version.major_version}.x/"
        f"linux-{version.base_version}.tar.xz"
    )


def matched_source_key(version: KernelVersion) -> str:
    return f"source:{version.version}"


def upstream_source_key(version: KernelVersion) -> str:
    return f"upstream:{version.base_version}"


def fetch_source_tarball(
    client: httpx.Client,
    url: str,
    key: str,
    store: CacheStore,
    deadline: RunDeadline | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    lock_timeout: float | None = None,
) -> SourceTarball:
    """Ensure a validated source tarball for key is in the cache.

    Transient network failures and a tarball that fails validation are each
    retried once.

    Args:
        client: HTTPX client instance.
        url: Tarball URL.
        key: Cache key ('source:<kver>' or 'upstream:<base>').
        store: Artifact cache.
        deadline: Optional run deadline.
        timeout: Download timeout in seconds.
        lock_timeout: Timeout waiting for the cache key lock.

    Returns:
        SourceTarball pointing at the cached file.

    Raises:
        DownloadError: If the download fails (status_code is set for HTTP errors).
        SourceUnpackError: If the tarball fails validation twice.
    """
    filename = PurePosixPath(httpx.URL(url).path).name

    with store.lock(key, timeout=lock_timeout):
        entry = store.get(key)
        if entry is not None:
            if store.validate(key):
                logger.info("Using cached kernel source %s", entry.path)
                return SourceTarball(key=key, path=Path(entry.path), url=url, from_cache=True)
            logger.warning("Cached kernel source %s is corrupt, purging", entry.path)
            store.purge(key)

        tmp_path = store.staging_dir(key) / f"{filename}.part"
        for attempt in (1, 2):
            try:
                download_file(client, url, tmp_path, timeout=timeout, deadline=deadline)
            except DownloadError as e:
                if e.transient and attempt == 1:
                    logger.warning("Transient failure fetching %s, retrying: %s", url, e)
                    continue
                raise

            if validate_tarball(tmp_path):
                entry = store.put(
                    key,
                    CacheKind.SOURCE_TARBALL,
                    tmp_path,
                    filename=filename,
                    details={"url": url},
                )
                return SourceTarball(key=key, path=Path(entry.path), url=url, from_cache=False)

            logger.warning("Kernel source %s from %s is corrupt (attempt %d)", filename, url, attempt)
            tmp_path.unlink(missing_ok=True)

    raise SourceUnpackError(
        f"Kernel source tarball from {url} failed validation twice",
        code="source_corrupt",
    )


def _is_root_config(name: str) -> bool:
    parts = PurePosixPath(name).parts
    return parts[-1:] == (".config",) and len(parts) <= 2


def read_embedded_config(tarball: Path, dest: Path, deadline: RunDeadline | None = None) -> Path | None:
    """Copy the .config at the root of a source tarball to dest.

    Args:
        tarball: Kernel source tarball.
        dest: Destination file.
        deadline: Optional run deadline checked per member.

    Returns:
        dest, or None if the tarball has no top-level .config.

    Raises:
        SourceUnpackError: If the tarball cannot be read.
    """
    try:
        with tarfile.open(tarball) as tar:
            for member in tar:
                if deadline is not None:
                    deadline.check(f"scanning {tarball.name}")
                if not (member.isfile() and _is_root_config(member.name)):
                    continue
                src = tar.extractfile(member)
                if src is None:
                    return None
                dest.parent.mkdir(parents=True, exist_ok=True)
                with src, dest.open("wb") as out:
                    shutil.copyfileobj(src, out)
                logger.info("Found embedded configuration %s in %s", member.name, tarball.name)
                return dest
    except (tarfile.TarError, OSError, EOFError) as e:
        raise SourceUnpackError(f"Failed to read {tarball}: {e}") from e
    return None


def unpack_source(tarball: Path, dest_dir: Path, deadline: RunDeadline | None = None) -> Path:
    """Unpack a kernel source tarball and return the tree root.

    Args:
        tarball: Kernel source tarball.
        dest_dir: Empty directory to unpack into.
        deadline: Optional run deadline checked per member.

    Returns:
        The single top-level directory, or dest_dir if members are not
        nested under one.

    Raises:
        SourceUnpackError: If the tarball is corrupt or contains unsafe members.
    """
    logger.info("Unpacking %s to %s", tarball.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(tarball) as tar:
            for member in tar:
                if deadline is not None:
                    deadline.check(f"unpacking {tarball.name}")
                tar.extract(member, dest_dir, filter="data")
    except tarfile.FilterError as e:
        raise SourceUnpackError(
            f"Refusing to unpack {tarball}: {e}", code="path_traversal"
        ) from e
    except (tarfile.TarError, OSError, EOFError) as e:
        raise SourceUnpackError(f"Failed to unpack {tarball}: {e}") from e

    entries = list(dest_dir.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest_dir


__all__ = [
    "KERNEL_ORG_BASE",
    "SourceTarball",
    "SourceUnpackError",
    "fetch_source_tarball",
    "matched_source_key",
    "matched_source_url",
    "read_embedded_config",
    "unpack_source",
    "upstream_source_key",
    "upstream_source_url",
]
