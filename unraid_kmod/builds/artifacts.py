"""Package content listing and manifest generation.

This module handles:
- Listing the files placed in the package tree with size, mode and checksum
- Generating the JSON manifest written beside each package
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from unraid_kmod.fetch import compute_file_sha256
from unraid_kmod.types import CompatibilityWarning, PackageArchive

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".manifest.json"


@dataclass
class PackageFileInfo:
    """One regular file inside the package tree."""

    relative_path: str
    size_bytes: int
    mode: str
    sha256: str


def list_package_files(stage_dir: Path) -> list[PackageFileInfo]:
    """List regular files in an assembled package tree.

    Args:
        stage_dir: Package tree root.

    Returns:
        Files sorted by relative path.
    """
    files: list[PackageFileInfo] = []
    for path in sorted(stage_dir.rglob("*")):
        if path.is_symlink() or not path.is_file():
            continue
        files.append(
            PackageFileInfo(
                relative_path=path.relative_to(stage_dir).as_posix(),
                size_bytes=path.stat().st_size,
                mode=oct(path.stat().st_mode & 0o7777),
                sha256=compute_file_sha256(path),
            )
        )
    logger.debug("Package tree %s holds %d files", stage_dir, len(files))
    return files


def generate_manifest(
    package: PackageArchive,
    files: list[PackageFileInfo],
    build_inputs: dict[str, Any] | None = None,
    warnings: list[CompatibilityWarning] | None = None,
) -> dict[str, Any]:
    """Generate a package manifest.

    The manifest contains:
    - Package identification (name, filename, size, checksum)
    - The build inputs (target version, kernel version, configuration tier)
    - Compatibility warnings raised during the build
    - The files inside the package

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "package": {
            "name": package.name,
            "filename": package.path.name,
            "size_bytes": package.size_bytes,
            "sha256": package.sha256,
        },
        "files": [asdict(f) for f in files],
        "warnings": [asdict(w) for w in warnings or []],
    }
    if build_inputs:
        manifest["build_inputs"] = build_inputs

    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


def manifest_path_for(package: PackageArchive) -> Path:
    return package.path.with_name(f"{package.name}{MANIFEST_SUFFIX}")


__all__ = [
    "MANIFEST_SUFFIX",
    "PackageFileInfo",
    "generate_manifest",
    "list_package_files",
    "manifest_path_for",
    "write_manifest",
]
