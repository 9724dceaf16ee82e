"""Release Acquirer.

This module handles:
- Resolving download URLs for a target version (override -> table -> error)
- Fetching the release zip to a staging file
- Verifying the zip container before promoting it into the cache
- One retry for corrupt downloads and transient network failures
"""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from unraid_kmod.cache.store import CacheStore, validate_zip_archive
from unraid_kmod.errors import DownloadError, FormatError, ResolutionError
from unraid_kmod.fetch import DOWNLOAD_TIMEOUT, DownloadResult, download_file
from unraid_kmod.release.table import ReleaseTable
from unraid_kmod.types import CacheKind, ReleaseArchive, RunDeadline, TargetVersion

logger = logging.getLogger(__name__)

# Initial fetch plus one retry
MAX_FETCH_ATTEMPTS = 2


class ReleaseNotFoundError(ResolutionError):
    """Raised when no download URL is known for a target version."""

    def __init__(self, version: str, code: str = "release_not_found") -> None:
        super().__init__(
            f"No download URL known for Unraid {version}",
            code=code,
            remediation=(
                f"Add '{version}' to the release table (data/releases.yaml, or the "
                "file named by UNRAID_KMOD_RELEASE_TABLE), or pass an explicit "
                "download URL with --url."
            ),
        )
        self.version = version


class ArchiveIntegrityError(FormatError):
    """Raised when a downloaded release archive is not a valid zip container."""

    def __init__(self, path: str, attempts: int, code: str = "archive_corrupt") -> None:
        super().__init__(
            f"Release archive {path} failed integrity validation "
            f"after {attempts} download attempt(s)",
            code=code,
            remediation="Check the mirror or pass a different --url.",
        )
        self.path = path
        self.attempts = attempts


def release_cache_key(target: TargetVersion) -> str:
    """Return the cache key for a target's release archive."""
    return f"release:{target.version}"


def release_filename(target: TargetVersion) -> str:
    """Return the canonical archive filename for a target version."""
    return f"unRAIDServer-{target.version}-x86_64.zip"


def resolve_release_urls(
    target: TargetVersion,
    table: ReleaseTable,
    allow_templates: bool = False,
) -> list[str]:
    """Resolve mirror URLs for a target version.

    Priority: explicit override, then the lookup table.

    Args:
        target: Requested target version.
        table: Effective release table.
        allow_templates: Derive URLs from table templates for unknown versions.

    Returns:
        Ordered, non-empty list of URLs.

    Raises:
        ReleaseNotFoundError: If neither source yields a URL.
    """
    if target.url_override:
        logger.info("Using explicit release URL %s", target.url_override)
        return [target.url_override]

    urls = table.urls_for(target.version, allow_templates=allow_templates)
    if not urls:
        raise ReleaseNotFoundError(target.version)
    return urls


def _download_from_mirrors(
    client: httpx.Client,
    urls: list[str],
    dest_path: Path,
    timeout: float,
    deadline: RunDeadline | None,
) -> DownloadResult:
    """Try each mirror in order until one download completes."""
    failures: list[DownloadError] = []
    for url in urls:
        try:
            return download_file(client, url, dest_path, timeout=timeout, deadline=deadline)
        except DownloadError as e:
            logger.warning("Mirror failed: %s", e)
            failures.append(e)

    summary = "; ".join(str(e) for e in failures)
    raise DownloadError(
        f"All {len(urls)} release mirror(s) failed: {summary}",
        code=failures[-1].code,
        transient=any(e.transient for e in failures),
        status_code=failures[-1].status_code,
    )


def acquire_release(
    client: httpx.Client,
    target: TargetVersion,
    store: CacheStore,
    table: ReleaseTable,
    deadline: RunDeadline | None = None,
    allow_templates: bool = False,
    timeout: float = DOWNLOAD_TIMEOUT,
    lock_timeout: float | None = None,
) -> ReleaseArchive:
    """Ensure a validated release archive for the target is in the cache.

    Args:
        client: HTTPX client instance.
        target: Requested target version.
        store: Artifact cache.
        table: Effective release table.
        deadline: Optional run deadline.
        allow_templates: Allow URL templates for versions missing from the table.
        timeout: Per-download timeout in seconds.
        lock_timeout: Timeout waiting for another run holding the cache key.

    Returns:
        ReleaseArchive pointing at the cached, validated archive.

    Raises:
        ReleaseNotFoundError: If no URL is known (no network access attempted).
        DownloadError: If every mirror fails after the allowed retry.
        ArchiveIntegrityError: If the archive fails validation twice.
    """
    urls = resolve_release_urls(target, table, allow_templates=allow_templates)
    key = release_cache_key(target)
    filename = release_filename(target)

    with store.lock(key, timeout=lock_timeout):
        entry = store.get(key)
        if entry is not None:
            if store.validate(key):
                logger.info("Using cached release archive %s", entry.path)
                details = entry.details or {}
                return ReleaseArchive(
                    target=target,
                    path=Path(entry.path),
                    size_bytes=entry.size_bytes,
                    sha256=entry.sha256,
                    validated=True,
                    from_cache=True,
                    url=str(details.get("url")) if details.get("url") else None,
                )
            logger.warning("Cached release archive for %s is corrupt, purging", target.version)
            store.purge(key)

        tmp_path = store.staging_dir(key) / f"{filename}.part"

        for attempt in range(1, MAX_FETCH_ATTEMPTS + 1):
            try:
                result = _download_from_mirrors(client, urls, tmp_path, timeout, deadline)
            except DownloadError as e:
                if e.transient and attempt < MAX_FETCH_ATTEMPTS:
                    logger.warning(
                        "Transient download failure (attempt %d/%d), retrying",
                        attempt,
                        MAX_FETCH_ATTEMPTS,
                    )
                    continue
                raise

            if validate_zip_archive(tmp_path):
                entry = store.put(
                    key,
                    CacheKind.RELEASE_ARCHIVE,
                    tmp_path,
                    filename=filename,
                    details={"url": result.url},
                )
                return ReleaseArchive(
                    target=target,
                    path=Path(entry.path),
                    size_bytes=entry.size_bytes,
                    sha256=entry.sha256,
                    validated=True,
                    from_cache=False,
                    url=result.url,
                )

            logger.warning(
                "Downloaded archive %s from %s is not a valid zip (attempt %d/%d)",
                tmp_path,
                result.url,
                attempt,
                MAX_FETCH_ATTEMPTS,
            )
            tmp_path.unlink(missing_ok=True)

        raise ArchiveIntegrityError(str(tmp_path), MAX_FETCH_ATTEMPTS)


__all__ = [
    "MAX_FETCH_ATTEMPTS",
    "ArchiveIntegrityError",
    "ReleaseNotFoundError",
    "acquire_release",
    "release_cache_key",
    "release_filename",
    "resolve_release_urls",
]
