"""CacheEntry ORM model.

Each row indexes one artifact stored under the cache directory: a release
archive, a kernel source tarball, or a prepared kernel source tree.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from unraid_kmod.db import Base
from unraid_kmod.types import CacheEntryState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheEntry(Base):
    """ORM model for an indexed cache artifact.

    Attributes:
        id: Primary key.
        key: Cache key (e.g. 'release:7.2.4', 'tree:6.12.54-Unraid').
        kind: Artifact kind (see CacheKind).
        path: Absolute path of the stored file or directory.
        size_bytes: Size of the file (0 for directories).
        sha256: SHA-256 of the file (None for directories).
        state: pending, valid or broken.
        details: Free-form metadata (source URL, config tier, ...).
        created_at: When the entry was first written.
        validated_at: When integrity was last confirmed.
    """

    __tablename__ = "cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    path: Mapped[str] = mapped_column(String(1000), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CacheEntryState.PENDING.value
    )
    details: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=_utcnow
    )
    validated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of CacheEntry."""
        return f"<CacheEntry(key='{self.key}', kind='{self.kind}', state='{self.state}')>"

    def mark_valid(self) -> None:
        """Mark this entry as validated and usable."""
        self.state = CacheEntryState.VALID.value
        self.validated_at = _utcnow()

    def mark_broken(self) -> None:
        """Mark this entry as failing validation."""
        self.state = CacheEntryState.BROKEN.value

    def is_valid(self) -> bool:
        """Check if this entry is in valid state."""
        return self.state == CacheEntryState.VALID.value


__all__ = ["CacheEntry"]
