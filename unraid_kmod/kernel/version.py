"""Version Resolver.

Determines the exact kernel release string from an unpacked module tree.
Module directories are probed under each layout in LAYOUTS order; the first
layout holding any directory named like a kernel release wins. Within a
layout, candidates are sorted lexicographically and the first is taken, so
the result does not depend on filesystem listing order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from unraid_kmod.errors import ResolutionError
from unraid_kmod.types import KERNEL_VERSION_PATTERN, KernelVersion

logger = logging.getLogger(__name__)


class KernelVersionNotFoundError(ResolutionError):
    """Raised when no kernel module directory is found in the module tree."""

    def __init__(self, root: Path, probed: list[Path], code: str = "kernel_version_not_found") -> None:
        paths = ", ".join(str(p) for p in probed)
        super().__init__(
            f"Could not determine kernel version from {root}; probed: {paths}",
            code=code,
            remediation="Check that bzmodules in the release archive holds a kernel module tree.",
        )
        self.root = root
        self.probed = probed


@dataclass(frozen=True)
class ModuleTreeLayout:
    """Where per-version module directories live inside a module tree."""

    name: str
    modules_dir: str

    def candidates(self, root: Path) -> list[str]:
        base = root / self.modules_dir
        if not base.is_dir():
            return []
        return sorted(
            entry.name
            for entry in base.iterdir()
            if entry.is_dir() and KERNEL_VERSION_PATTERN.match(entry.name)
        )


LAYOUTS: tuple[ModuleTreeLayout, ...] = (
    ModuleTreeLayout(name="library", modules_dir="lib/modules"),
    ModuleTreeLayout(name="flat", modules_dir="modules"),
)


def resolve_kernel_version(module_tree: Path) -> KernelVersion:
    """Resolve the kernel release string from an unpacked module tree.

    Args:
        module_tree: Root of the unpacked bzmodules filesystem.

    Returns:
        KernelVersion equal to the module directory name.

    Raises:
        KernelVersionNotFoundError: If no layout holds a matching directory.
    """
    probed: list[Path] = []
    for layout in LAYOUTS:
        probed.append(module_tree / layout.modules_dir)
        names = layout.candidates(module_tree)
        if not names:
            continue
        if len(names) > 1:
            logger.warning(
                "Multiple kernel versions under %s: %s; using %s",
                layout.modules_dir,
                ", ".join(names),
                names[0],
            )
        version = KernelVersion(version=names[0], layout=layout.name)
        logger.info("Resolved kernel version %s (layout %s)", version, layout.name)
        return version

    raise KernelVersionNotFoundError(module_tree, probed)


__all__ = [
    "LAYOUTS",
    "KernelVersionNotFoundError",
    "ModuleTreeLayout",
    "resolve_kernel_version",
]
