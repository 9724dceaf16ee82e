"""Shared type definitions for unraid_kmod.

This module contains dataclasses, enums, and the run deadline shared across
subpackages to avoid circular imports.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from unraid_kmod.errors import PipelineCancelledError

# Kernel release directory names start with digits followed by a dot
KERNEL_VERSION_PATTERN = re.compile(r"^\d+\.")


class CacheEntryState(str, Enum):
    """State of a cache index entry."""

    PENDING = "pending"
    VALID = "valid"
    BROKEN = "broken"


class CacheKind(str, Enum):
    """Kind of artifact held by a cache entry."""

    RELEASE_ARCHIVE = "release-archive"
    SOURCE_TARBALL = "source-tarball"
    KERNEL_TREE = "kernel-tree"


class ArtifactKind(str, Enum):
    """Kind of container extracted from a release archive."""

    MODULE_TREE = "module-tree"
    BOOT_IMAGE = "boot-image"


class ContainerFormat(str, Enum):
    """Container encodings recognised by magic-byte inspection."""

    SQUASHFS = "squashfs"
    GZIP = "gzip"
    XZ = "xz"
    LZMA = "lzma"
    BZIP2 = "bzip2"
    ZSTD = "zstd"
    CPIO = "cpio"
    ZIP = "zip"
    UNKNOWN = "unknown"


class ConfigTier(str, Enum):
    """Source tier of a kernel build configuration, in preference order."""

    MATCHED_SOURCE = "matched-source"
    EXTRACTED = "extracted"
    DEFAULT = "default"


class PipelineStage(str, Enum):
    """Stages of the build pipeline, in execution order."""

    ACQUIRE = "acquire-release"
    EXTRACT = "extract-archive"
    RESOLVE = "resolve-version"
    LOCATE = "locate-config"
    PREPARE = "prepare-kernel"
    COMPILE_MODULE = "compile-module"
    COMPILE_TOOLS = "compile-tools"
    PACKAGE = "package"


@dataclass(frozen=True)
class TargetVersion:
    """The Unraid release requested by the caller."""

    version: str
    url_override: str | None = None

    def __post_init__(self) -> None:
        """Validate the version string."""
        if not self.version or not self.version.strip():
            raise ValueError("target version must be provided")
        if "/" in self.version:
            raise ValueError(f"Invalid target version: {self.version!r}")


@dataclass(frozen=True)
class KernelVersion:
    """Canonical kernel release string, e.g. '6.12.54-Unraid'.

    Attributes:
        version: The exact module directory name on the target.
        layout: Name of the module-tree layout it was found in.
    """

    version: str
    layout: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        """Validate the version string."""
        if not KERNEL_VERSION_PATTERN.match(self.version):
            raise ValueError(f"Not a kernel version: {self.version!r}")

    @property
    def base_version(self) -> str:
        """Numeric upstream version ('6.12.54')."""
        return self.version.split("-", 1)[0]

    @property
    def major_version(self) -> str:
        """Leading major numeral ('6')."""
        return self.version.split(".", 1)[0]

    @property
    def local_version(self) -> str:
        """Local version suffix including its hyphen ('-Unraid'), or ''."""
        _, sep, rest = self.version.partition("-")
        return f"{sep}{rest}" if sep else ""

    def __str__(self) -> str:
        return self.version


@dataclass
class ReleaseArchive:
    """A downloaded and validated Unraid release archive."""

    target: TargetVersion
    path: Path
    size_bytes: int
    sha256: str | None = None
    validated: bool = False
    from_cache: bool = False
    url: str | None = None


@dataclass
class ExtractedArtifact:
    """One container extracted from a release archive."""

    kind: ArtifactKind
    path: Path
    container_format: ContainerFormat
    member_name: str
    layout: str


@dataclass
class BuildConfiguration:
    """Kernel .config to apply to the source tree."""

    tier: ConfigTier
    path: Path
    source_description: str = ""
    # Kernel source tarball the tree is unpacked from
    source_tarball: Path | None = None

    @property
    def may_be_incompatible(self) -> bool:
        """True when the module built from this config may fail to load."""
        return self.tier is ConfigTier.DEFAULT


@dataclass
class KernelSourceTree:
    """A kernel source directory prepared for out-of-tree module builds."""

    path: Path
    kernel_version: KernelVersion
    configuration: BuildConfiguration
    prepared: bool = False
    from_cache: bool = False


@dataclass
class ModuleArtifact:
    """The compiled out-of-tree kernel module."""

    path: Path
    compressed: bool = False


@dataclass
class PackageArchive:
    """The final distributable package."""

    name: str
    path: Path
    size_bytes: int
    sha256: str
    manifest_path: Path | None = None


@dataclass
class CompatibilityWarning:
    """A non-fatal condition that risks a module which will not load."""

    stage: str
    message: str


@dataclass
class OperationResult:
    """Result of an operation for CLI/JSON reporting."""

    success: bool
    message: str
    code: str | None = None
    log_path: str | None = None
    details: dict[str, object] = field(default_factory=dict)


class RunDeadline:
    """Overall timeout and cancellation signal for one pipeline run.

    Blocking operations ask for the remaining time before starting and call
    check() between units of work so a stuck download or decompression can
    be aborted.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout
        self._expires_at = time.monotonic() + timeout if timeout is not None else None
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Request cancellation of the run."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def expired(self) -> bool:
        if self._expires_at is None:
            return False
        return time.monotonic() >= self._expires_at

    def remaining(self, cap: float | None = None) -> float | None:
        """Return seconds left, bounded by cap; None when unbounded."""
        if self._expires_at is None:
            return cap
        left = max(0.0, self._expires_at - time.monotonic())
        return left if cap is None else min(left, cap)

    def check(self, what: str) -> None:
        """Raise PipelineCancelledError if the run must stop.

        Args:
            what: Description of the operation about to run or in progress.
        """
        if self.cancelled:
            raise PipelineCancelledError(f"Run cancelled during {what}")
        if self.expired():
            raise PipelineCancelledError(
                f"Run timeout of {self.timeout:.0f}s exceeded during {what}",
                code="timeout",
            )


__all__ = [
    "KERNEL_VERSION_PATTERN",
    "ArtifactKind",
    "BuildConfiguration",
    "CacheEntryState",
    "CacheKind",
    "CompatibilityWarning",
    "ConfigTier",
    "ContainerFormat",
    "ExtractedArtifact",
    "KernelSourceTree",
    "KernelVersion",
    "ModuleArtifact",
    "OperationResult",
    "PackageArchive",
    "PipelineStage",
    "ReleaseArchive",
    "RunDeadline",
    "TargetVersion",
]
