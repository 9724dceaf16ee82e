"""Release acquisition module.

This module handles:
- The version -> mirror URL lookup table
- Downloading and verifying Unraid release archives into the cache
"""

from unraid_kmod.release.acquire import (
    ArchiveIntegrityError,
    ReleaseNotFoundError,
    acquire_release,
    resolve_release_urls,
)
from unraid_kmod.release.table import ReleaseTable, ReleaseTableError, load_release_table

__all__ = [
    "ArchiveIntegrityError",
    "ReleaseNotFoundError",
    "ReleaseTable",
    "ReleaseTableError",
    "acquire_release",
    "load_release_table",
    "resolve_release_urls",
]
