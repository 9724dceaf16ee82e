"""Artifact cache module.

This module handles:
- Indexing downloaded archives and prepared kernel trees by version key
- Integrity validation before a cache hit is trusted
- Per-key locking so concurrent runs never publish a partial entry
"""

from unraid_kmod.cache.models import CacheEntry
from unraid_kmod.cache.store import (
    PREPARED_MARKER,
    CacheStore,
    CacheUnavailableError,
    CacheValidationError,
    validate_kernel_tree,
    validate_tarball,
    validate_zip_archive,
)

__all__ = [
    "PREPARED_MARKER",
    "CacheEntry",
    "CacheStore",
    "CacheUnavailableError",
    "CacheValidationError",
    "validate_kernel_tree",
    "validate_tarball",
    "validate_zip_archive",
]
