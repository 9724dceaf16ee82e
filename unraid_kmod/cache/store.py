"""Keyed artifact cache with integrity validation.

This module provides the CacheStore used by every artifact-producing stage:
- get(): look up a valid entry by key
- put(): promote a fully written temporary artifact into the cache
- validate(): re-check integrity of a stored artifact (not just presence)
- lock(): per-key file lock serializing writers across processes

Entries are never overwritten once valid and never partial: an artifact is
moved into place under a 'pending' index row, validated, and only then
marked 'valid'. There is no eviction; the cache is operator-managed.
"""

from __future__ import annotations

import fcntl
import logging
import lzma
import os
import shutil
import tarfile
import time
import zipfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from unraid_kmod.cache.models import CacheEntry
from unraid_kmod.db import get_session, open_index
from unraid_kmod.errors import ConfigurationError, FormatError
from unraid_kmod.fetch import compute_file_sha256
from unraid_kmod.types import CacheEntryState, CacheKind

if TYPE_CHECKING:
    from unraid_kmod.config import Settings

logger = logging.getLogger(__name__)

# Written into a kernel tree once `make modules_prepare` has succeeded
PREPARED_MARKER = ".unraid-kmod-prepared"

Validator = Callable[[Path], bool]


class CacheValidationError(FormatError):
    """Raised when an artifact fails validation while being stored."""

    def __init__(self, key: str, path: Path, code: str = "cache_validation_failed") -> None:
        super().__init__(
            f"Cache artifact for {key} failed integrity validation: {path}",
            code=code,
        )
        self.key = key
        self.path = path


class CacheUnavailableError(ConfigurationError):
    """Raised when the cache directory or its index database cannot be opened."""

    def __init__(self, root: Path, reason: str, code: str = "cache_unavailable") -> None:
        super().__init__(
            f"Cannot open cache at {root}: {reason}",
            code=code,
            remediation="Point UNRAID_KMOD_CACHE_DIR (or --cache-dir) at a writable directory.",
        )
        self.root = root


def validate_zip_archive(path: Path) -> bool:
    """Check that a file is a zip container whose members all pass CRC.

    Args:
        path: Path to the archive.

    Returns:
        True if the archive is well formed.
    """
    if not path.is_file():
        return False
    try:
        if not zipfile.is_zipfile(path):
            return False
        with zipfile.ZipFile(path) as zf:
            bad = zf.testzip()
    except (zipfile.BadZipFile, OSError, EOFError) as e:
        logger.warning("Zip validation failed for %s: %s", path, e)
        return False
    if bad is not None:
        logger.warning("Corrupt member %s in %s", bad, path)
        return False
    return True


def validate_tarball(path: Path) -> bool:
    """Check that a (possibly compressed) tar archive reads end to end.

    Args:
        path: Path to the tarball.

    Returns:
        True if every member header could be read.
    """
    if not path.is_file():
        return False
    try:
        with tarfile.open(path) as tar:
            for _ in tar:
                pass
    except (tarfile.TarError, OSError, EOFError, lzma.LZMAError) as e:
        logger.warning("Tarball validation failed for %s: %s", path, e)
        return False
    return True


def validate_kernel_tree(path: Path) -> bool:
    """Check that a directory is a prepared kernel source tree.

    Args:
        path: Kernel source directory.

    Returns:
        True if Makefile, .config and the prepared marker are present.
    """
    return (
        path.is_dir()
        and (path / "Makefile").is_file()
        and (path / ".config").is_file()
        and (path / PREPARED_MARKER).is_file()
    )


DEFAULT_VALIDATORS: dict[str, Validator] = {
    CacheKind.RELEASE_ARCHIVE.value: validate_zip_archive,
    CacheKind.SOURCE_TARBALL.value: validate_tarball,
    CacheKind.KERNEL_TREE.value: validate_kernel_tree,
}


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


class CacheStore:
    """Keyed, append-only artifact cache backed by an SQL index.

    Args:
        root: Cache root directory.
        session_factory: Session factory for the index database.
        validators: Per-kind integrity validators (defaults cover all kinds).
    """

    def __init__(
        self,
        root: Path,
        session_factory: sessionmaker[Session],
        validators: dict[str, Validator] | None = None,
    ) -> None:
        self.root = root
        self.session_factory = session_factory
        self.validators = dict(DEFAULT_VALIDATORS)
        if validators:
            self.validators.update(validators)
        self.root.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheStore:
        """Open the cache described by settings, creating the index if needed.

        Raises:
            CacheUnavailableError: If the directory or index cannot be opened.
        """
        try:
            return cls(settings.cache_dir, open_index(settings.effective_db_url))
        except (OSError, SQLAlchemyError) as e:
            raise CacheUnavailableError(settings.cache_dir, str(e)) from e

    # Paths

    def slot(self, key: str, filename: str) -> Path:
        """Return the final storage path for an artifact of the given key."""
        namespace, _, name = key.partition(":")
        return self.root / namespace / name / filename

    def staging_dir(self, key: str) -> Path:
        """Return a per-key scratch directory on the cache filesystem.

        Artifacts written here can be promoted with an atomic rename.
        """
        namespace, _, name = key.partition(":")
        path = self.root / ".staging" / f"{namespace}_{name}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    # Locking

    @contextmanager
    def lock(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """Acquire an exclusive lock for a cache key.

        Uses a file-based lock so concurrent runs for the same key serialize
        their writes; runs for different keys do not contend.

        Args:
            key: Cache key to lock.
            timeout: Lock acquisition timeout in seconds (None = blocking).

        Yields:
            None when lock is acquired.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout.
        """
        lock_dir = self.root / ".locks"
        lock_dir.mkdir(parents=True, exist_ok=True)
        lock_file = lock_dir / (key.replace(":", "_").replace("/", "_") + ".lock")

        logger.debug("Acquiring cache lock for %s", key)

        fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
        lock_acquired = False
        try:
            if timeout is not None:
                start = time.monotonic()
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        lock_acquired = True
                        break
                    except BlockingIOError:
                        if time.monotonic() - start >= timeout:
                            raise TimeoutError(
                                f"Timeout waiting for cache lock on {key}"
                            ) from None
                        time.sleep(0.1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
                lock_acquired = True

            logger.debug("Cache lock acquired for %s", key)
            yield
        finally:
            if lock_acquired:
                fcntl.flock(fd, fcntl.LOCK_UN)
                logger.debug("Cache lock released for %s", key)
            os.close(fd)

    # Index access

    def _find(self, session: Session, key: str) -> CacheEntry | None:
        stmt = select(CacheEntry).where(CacheEntry.key == key)
        return session.execute(stmt).scalars().first()

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for key if it is valid and its artifact exists.

        This is a cheap presence check; call validate() before trusting the
        artifact's contents.
        """
        with get_session(self.session_factory) as session:
            entry = self._find(session, key)
            if entry is None or not entry.is_valid():
                return None
            if not Path(entry.path).exists():
                logger.warning("Cache entry %s points at missing %s", key, entry.path)
                return None
            return entry

    def put(
        self,
        key: str,
        kind: CacheKind,
        source: Path,
        filename: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> CacheEntry:
        """Promote a fully written artifact into the cache.

        The caller must hold lock(key). If a valid entry already exists the
        new artifact is discarded and the existing entry returned.

        Args:
            key: Cache key.
            kind: Artifact kind (selects the validator).
            source: Temporary file or directory to move into place.
            filename: Final file/directory name (defaults to source name).
            details: Metadata stored alongside the entry.

        Returns:
            The valid CacheEntry.

        Raises:
            CacheValidationError: If the artifact fails validation; it is
                deleted and the entry marked broken.
        """
        validator = self.validators[kind.value]
        dest = self.slot(key, filename or source.name)

        with get_session(self.session_factory) as session:
            entry = self._find(session, key)
            if entry is not None and entry.is_valid() and Path(entry.path).exists():
                logger.info("Cache entry %s already valid, discarding new artifact", key)
                _remove_path(source)
                return entry

            if dest.exists():
                _remove_path(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(dest))

            if entry is None:
                entry = CacheEntry(key=key, kind=kind.value, path=str(dest))
                session.add(entry)
            entry.kind = kind.value
            entry.path = str(dest)
            entry.state = CacheEntryState.PENDING.value
            entry.details = details
            session.flush()

            if not validator(dest):
                _remove_path(dest)
                entry.mark_broken()
                session.commit()
                raise CacheValidationError(key, dest)

            if dest.is_file():
                entry.size_bytes = dest.stat().st_size
                entry.sha256 = compute_file_sha256(dest)
            else:
                entry.size_bytes = 0
                entry.sha256 = None
            entry.mark_valid()
            logger.info("Cached %s at %s", key, dest)
            return entry

    def validate(self, key: str) -> bool:
        """Re-check the integrity of a stored artifact.

        A failing entry is marked broken so later get() calls miss.

        Args:
            key: Cache key.

        Returns:
            True if the entry exists and its artifact passes validation.
        """
        with get_session(self.session_factory) as session:
            entry = self._find(session, key)
            if entry is None:
                return False
            validator = self.validators.get(entry.kind)
            path = Path(entry.path)
            ok = validator is not None and validator(path)
            if ok:
                entry.mark_valid()
            else:
                logger.warning("Cache entry %s failed validation (%s)", key, path)
                entry.mark_broken()
            return ok

    def purge(self, key: str) -> bool:
        """Remove an entry and its artifact.

        Returns:
            True if an entry was removed.
        """
        with get_session(self.session_factory) as session:
            entry = self._find(session, key)
            if entry is None:
                return False
            path = Path(entry.path)
            if path.exists():
                logger.info("Purging cache artifact %s", path)
                _remove_path(path)
            session.delete(entry)
            return True

    def list_entries(self, kind: CacheKind | None = None) -> list[CacheEntry]:
        """List index entries, optionally filtered by kind."""
        stmt = select(CacheEntry)
        if kind is not None:
            stmt = stmt.where(CacheEntry.kind == kind.value)
        stmt = stmt.order_by(CacheEntry.key)
        with get_session(self.session_factory) as session:
            return list(session.execute(stmt).scalars().all())

    def verify_all(self) -> dict[str, bool]:
        """Validate every entry in the index.

        Returns:
            Mapping of cache key to validation result.
        """
        return {entry.key: self.validate(entry.key) for entry in self.list_entries()}


__all__ = [
    "DEFAULT_VALIDATORS",
    "PREPARED_MARKER",
    "CacheStore",
    "CacheUnavailableError",
    "CacheValidationError",
    "validate_kernel_tree",
    "validate_tarball",
    "validate_zip_archive",
]
