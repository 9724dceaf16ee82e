"""Package assembly.

This module handles:
- The fixed description of the packaged component (module, tools, template)
- Assembling the install tree from the template plus built binaries
- Writing the xz-compressed tar package with root:root ownership
"""

from __future__ import annotations

import logging
import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path

from unraid_kmod.errors import BuildError
from unraid_kmod.fetch import compute_file_sha256
from unraid_kmod.types import KernelVersion, ModuleArtifact, PackageArchive

logger = logging.getLogger(__name__)

PACKAGE_SUFFIX = ".txz"


class PackageAssemblyError(BuildError):
    """Raised when the install tree or package archive cannot be produced."""

    def __init__(self, message: str, code: str = "package_assembly_error") -> None:
        super().__init__(message, code=code)


@dataclass(frozen=True)
class BinarySpec:
    """A single-file static userspace tool."""

    name: str
    source: str
    extra_flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class ComponentSpec:
    """What gets built and where it lands in the package.

    Paths are relative to the source root (module_source_dir, template_dir)
    or to the package root (bin_dir, executable_globs).
    """

    name: str = "wireview-hwmon"
    module_name: str = "wireview_hwmon"
    module_source_dir: str = "upstream"
    template_dir: str = "src"
    bin_dir: str = "usr/local/bin"
    binaries: tuple[BinarySpec, ...] = (
        BinarySpec("wireviewd", "wireviewd.c", ("-Wno-format-truncation",)),
        BinarySpec("wireviewctl", "wireviewctl.c"),
    )
    executable_globs: tuple[str, ...] = field(
        default=(
            "etc/rc.d/rc.wireviewd",
            "usr/local/emhttp/plugins/wireview-hwmon/scripts/*.sh",
            "usr/local/emhttp/plugins/wireview-hwmon/include/*.php",
        )
    )

    def module_install_dir(self, kernel_version: KernelVersion) -> str:
        return f"lib/modules/{kernel_version.version}/extra"


DEFAULT_COMPONENT = ComponentSpec()


def package_name(
    component: str,
    plugin_version: str,
    arch: str,
    kernel_version: KernelVersion,
) -> str:
    """Return the package name (without the .txz suffix)."""
    return f"{component}-{plugin_version}-{arch}-{kernel_version.version}"


def assemble_tree(
    spec: ComponentSpec,
    template_dir: Path,
    stage_dir: Path,
    kernel_version: KernelVersion,
    module: ModuleArtifact,
    binaries: dict[str, Path],
) -> Path:
    """Lay out the package contents in stage_dir.

    Args:
        spec: Component description.
        template_dir: Template tree copied verbatim (rc script, udev rule, GUI).
        stage_dir: Directory to assemble into; replaced if it exists.
        kernel_version: Target kernel version (module directory name).
        module: Compiled module.
        binaries: Tool name to built binary.

    Returns:
        stage_dir.

    Raises:
        PackageAssemblyError: If the template or a built file is missing.
    """
    if not template_dir.is_dir():
        raise PackageAssemblyError(
            f"Package template directory not found: {template_dir}", code="template_missing"
        )

    if stage_dir.exists():
        shutil.rmtree(stage_dir)

    try:
        shutil.copytree(template_dir, stage_dir, symlinks=True)

        bin_dir = stage_dir / spec.bin_dir
        bin_dir.mkdir(parents=True, exist_ok=True)
        for binary in spec.binaries:
            built = binaries.get(binary.name)
            if built is None or not built.is_file():
                raise PackageAssemblyError(
                    f"Built binary {binary.name} missing: {built}", code="binary_missing"
                )
            dest = bin_dir / binary.name
            shutil.copyfile(built, dest)
            dest.chmod(0o755)

        for pattern in spec.executable_globs:
            for path in stage_dir.glob(pattern):
                if path.is_file():
                    path.chmod(0o755)

        module_dir = stage_dir / spec.module_install_dir(kernel_version)
        module_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(module.path, module_dir / module.path.name)
        (module_dir / module.path.name).chmod(0o644)
    except OSError as e:
        raise PackageAssemblyError(f"Failed to assemble package tree in {stage_dir}: {e}") from e

    logger.info("Assembled package tree in %s", stage_dir)
    return stage_dir


def _root_owned(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = 0
    info.gid = 0
    info.uname = "root"
    info.gname = "root"
    return info


def create_txz(stage_dir: Path, dest: Path) -> Path:
    """Write stage_dir as an xz-compressed tar rooted at './'.

    The archive is written beside dest under a temporary name and renamed
    into place, so dest never holds a partial package.

    Raises:
        PackageAssemblyError: If the archive cannot be written.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(dest.name + ".tmp")
    try:
        with tarfile.open(tmp, "w:xz") as tar:
            tar.add(stage_dir, arcname=".", filter=_root_owned)
        tmp.replace(dest)
    except (tarfile.TarError, OSError) as e:
        tmp.unlink(missing_ok=True)
        raise PackageAssemblyError(f"Failed to write package {dest}: {e}") from e
    return dest


def build_package(
    spec: ComponentSpec,
    template_dir: Path,
    stage_dir: Path,
    output_dir: Path,
    plugin_version: str,
    arch: str,
    kernel_version: KernelVersion,
    module: ModuleArtifact,
    binaries: dict[str, Path],
) -> PackageArchive:
    """Assemble the install tree and write the package.

    Returns:
        PackageArchive with size and SHA-256 of the written file.
    """
    assemble_tree(spec, template_dir, stage_dir, kernel_version, module, binaries)

    name = package_name(spec.name, plugin_version, arch, kernel_version)
    path = create_txz(stage_dir, output_dir / f"{name}{PACKAGE_SUFFIX}")
    size = path.stat().st_size
    sha256 = compute_file_sha256(path)
    logger.info("Created package %s (%d bytes)", path, size)
    return PackageArchive(name=name, path=path, size_bytes=size, sha256=sha256)


__all__ = [
    "DEFAULT_COMPONENT",
    "PACKAGE_SUFFIX",
    "BinarySpec",
    "ComponentSpec",
    "PackageAssemblyError",
    "assemble_tree",
    "build_package",
    "create_txz",
    "package_name",
]
