"""Kernel tree preparation and compilation steps.

This module handles:
- Unpacking a kernel source tree into the cache and preparing it for
  out-of-tree builds (config edits, olddefconfig, modules_prepare)
- Building the out-of-tree module against a prepared tree
- Building the static userspace tools
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from unraid_kmod.builds.package import ComponentSpec
from unraid_kmod.builds.runner import compose_compile_command, compose_make_command, run_command
from unraid_kmod.cache.store import PREPARED_MARKER, CacheStore
from unraid_kmod.errors import BuildError
from unraid_kmod.kernel.kconfig import disable_module_signing, force_local_version, read_string_option
from unraid_kmod.kernel.source import unpack_source
from unraid_kmod.types import (
    BuildConfiguration,
    CacheKind,
    ConfigTier,
    KernelSourceTree,
    KernelVersion,
    ModuleArtifact,
    RunDeadline,
)

logger = logging.getLogger(__name__)

# Checked in this order; kbuild may compress modules on install-style builds
MODULE_SUFFIXES = (".ko", ".ko.xz", ".ko.zst", ".ko.gz")

TREE_DIRNAME = "linux"


class ModuleArtifactMissingError(BuildError):
    """Raised when the module build succeeds but produces no module file."""

    def __init__(self, build_dir: Path, names: list[str], code: str = "module_missing") -> None:
        super().__init__(
            f"No module file ({', '.join(names)}) found under {build_dir}",
            code=code,
        )
        self.build_dir = build_dir
        self.names = names


class KernelReleaseMismatchError(BuildError):
    """Raised when the prepared tree reports a different kernel release."""

    def __init__(self, expected: str, actual: str, code: str = "kernelrelease_mismatch") -> None:
        super().__init__(
            f"Prepared kernel tree reports release {actual!r}, expected {expected!r}",
            code=code,
        )


def tree_cache_key(kernel_version: KernelVersion) -> str:
    return f"tree:{kernel_version.version}"


def cached_kernel_tree(store: CacheStore, kernel_version: KernelVersion) -> KernelSourceTree | None:
    """Return the prepared tree for a kernel version if the cache holds a valid one."""
    key = tree_cache_key(kernel_version)
    entry = store.get(key)
    if entry is None or not store.validate(key):
        return None

    details = entry.details or {}
    path = Path(entry.path)
    configuration = BuildConfiguration(
        tier=ConfigTier(str(details.get("tier", ConfigTier.DEFAULT.value))),
        path=path / ".config",
        source_description=str(details.get("source", "")),
    )
    logger.info("Using cached kernel tree %s (%s configuration)", path, configuration.tier.value)
    return KernelSourceTree(
        path=path,
        kernel_version=kernel_version,
        configuration=configuration,
        prepared=True,
        from_cache=True,
    )


def _check_kernel_release(tree: Path, kernel_version: KernelVersion) -> None:
    release_file = tree / "include" / "config" / "kernel.release"
    if release_file.is_file():
        actual = release_file.read_text(encoding="utf-8").strip()
    else:
        # No kernel.release; compare the pinned suffix instead
        logger.debug("No %s, checking CONFIG_LOCALVERSION instead", release_file)
        local_version = read_string_option(tree / ".config", "LOCALVERSION") or ""
        actual = f"{kernel_version.base_version}{local_version}"
    if actual != kernel_version.version:
        raise KernelReleaseMismatchError(kernel_version.version, actual)


def prepare_kernel_tree(
    kernel_version: KernelVersion,
    configuration: BuildConfiguration,
    store: CacheStore,
    log_dir: Path,
    deadline: RunDeadline | None = None,
    jobs: int | None = None,
    timeout: float | None = None,
    lock_timeout: float | None = None,
) -> KernelSourceTree:
    """Unpack, configure and prepare a kernel tree, caching it as 'tree:<kver>'.

    Args:
        kernel_version: Resolved kernel version.
        configuration: Located configuration with its source tarball.
        store: Artifact cache.
        log_dir: Directory for make logs.
        deadline: Optional run deadline.
        jobs: Parallel make jobs.
        timeout: Per-make timeout in seconds.
        lock_timeout: Timeout waiting for the cache key lock.

    Returns:
        KernelSourceTree pointing at the cached, prepared tree.

    Raises:
        BuildExecutionError: If olddefconfig or modules_prepare fails.
        KernelReleaseMismatchError: If the prepared tree has the wrong release.
        SourceUnpackError: If the source tarball cannot be unpacked.
    """
    if configuration.source_tarball is None:
        raise BuildError(
            f"No kernel source tarball recorded for {configuration.tier.value} configuration",
            code="source_missing",
        )

    key = tree_cache_key(kernel_version)
    with store.lock(key, timeout=lock_timeout):
        cached = cached_kernel_tree(store, kernel_version)
        if cached is not None:
            return cached

        staging = store.staging_dir(key)
        shutil.rmtree(staging)
        try:
            tree = unpack_source(configuration.source_tarball, staging / "src", deadline=deadline)

            config_path = tree / ".config"
            if configuration.path.resolve() != config_path.resolve():
                shutil.copyfile(configuration.path, config_path)
            force_local_version(config_path, kernel_version.local_version)
            disable_module_signing(config_path)

            for target in ("olddefconfig", "modules_prepare"):
                run_command(
                    compose_make_command(tree, [target], jobs=jobs),
                    cwd=tree,
                    log_path=log_dir / f"make-{target}.log",
                    timeout=timeout,
                    deadline=deadline,
                )
            _check_kernel_release(tree, kernel_version)
            (tree / PREPARED_MARKER).write_text(f"{kernel_version.version}\n", encoding="utf-8")

            entry = store.put(
                key,
                CacheKind.KERNEL_TREE,
                tree,
                filename=TREE_DIRNAME,
                details={
                    "tier": configuration.tier.value,
                    "source": configuration.source_description,
                    "tarball": str(configuration.source_tarball),
                },
            )
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    path = Path(entry.path)
    logger.info("Prepared kernel tree %s for %s", path, kernel_version)
    return KernelSourceTree(
        path=path,
        kernel_version=kernel_version,
        configuration=BuildConfiguration(
            tier=configuration.tier,
            path=path / ".config",
            source_description=configuration.source_description,
            source_tarball=configuration.source_tarball,
        ),
        prepared=True,
        from_cache=False,
    )


def find_module(build_dir: Path, module_name: str) -> ModuleArtifact:
    """Locate the built module file.

    Raises:
        ModuleArtifactMissingError: If no candidate file exists.
    """
    names = [f"{module_name}{suffix}" for suffix in MODULE_SUFFIXES]
    for name in names:
        hits = sorted(build_dir.rglob(name))
        if hits:
            return ModuleArtifact(path=hits[0], compressed=name != names[0])
    raise ModuleArtifactMissingError(build_dir, names)


def build_module(
    tree: KernelSourceTree,
    spec: ComponentSpec,
    source_root: Path,
    work_dir: Path,
    deadline: RunDeadline | None = None,
    jobs: int | None = None,
    timeout: float | None = None,
) -> ModuleArtifact:
    """Compile the out-of-tree module against a prepared tree.

    The module sources are copied to a writable directory first because
    kbuild writes its objects next to them.

    Raises:
        BuildExecutionError: If make fails (full output attached).
        ModuleArtifactMissingError: If make succeeds without producing the module.
    """
    source = source_root / spec.module_source_dir
    if not source.is_dir():
        raise BuildError(f"Module source directory not found: {source}", code="module_source_missing")

    build_dir = work_dir / "module"
    if build_dir.exists():
        shutil.rmtree(build_dir)
    shutil.copytree(source, build_dir, symlinks=True)

    run_command(
        compose_make_command(
            tree.path,
            ["modules"],
            jobs=jobs,
            variables={"M": str(build_dir), "KBUILD_MODPOST_WARN": "1"},
        ),
        cwd=build_dir,
        log_path=work_dir / "logs" / "make-modules.log",
        timeout=timeout,
        deadline=deadline,
    )

    module = find_module(build_dir, spec.module_name)
    logger.info("Built module %s", module.path)
    return module


def build_tools(
    spec: ComponentSpec,
    source_root: Path,
    work_dir: Path,
    deadline: RunDeadline | None = None,
    timeout: float | None = None,
) -> dict[str, Path]:
    """Compile each userspace tool statically.

    Returns:
        Tool name to built binary path.
    """
    source_dir = source_root / spec.module_source_dir
    out_dir = work_dir / "bin"
    out_dir.mkdir(parents=True, exist_ok=True)

    built: dict[str, Path] = {}
    for binary in spec.binaries:
        output = out_dir / binary.name
        run_command(
            compose_compile_command(source_dir / binary.source, output, binary.extra_flags),
            cwd=source_dir,
            log_path=work_dir / "logs" / f"gcc-{binary.name}.log",
            timeout=timeout,
            deadline=deadline,
        )
        built[binary.name] = output
    logger.info("Built tools: %s", ", ".join(built))
    return built


__all__ = [
    "MODULE_SUFFIXES",
    "KernelReleaseMismatchError",
    "ModuleArtifactMissingError",
    "build_module",
    "build_tools",
    "cached_kernel_tree",
    "find_module",
    "prepare_kernel_tree",
    "tree_cache_key",
]
