"""Configuration Locator.

Finds the kernel .config to build against, trying each tier in order and
stopping at the first that produces one:

1. matched-source: a source tarball published for the exact kernel version,
   whose embedded .config is the one the platform kernel was built with.
2. extracted: a configuration shipped inside the boot image or module tree,
   applied to the upstream kernel.org source.
3. default: `make defconfig` on the upstream source. The module may not load
   on the target, so this tier always records a CompatibilityWarning.

Each strategy raises ConfigUnavailableError when its tier cannot produce a
configuration; the reasons are collected for diagnostics.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from unraid_kmod.builds.runner import compose_make_command, run_command
from unraid_kmod.cache.store import CacheStore
from unraid_kmod.errors import DownloadError, FormatError, ResolutionError, ToolNotFoundError
from unraid_kmod.extract.archive import extract_boot_image, is_under_dir
from unraid_kmod.kernel.kconfig import InvalidConfigError, install_config, validate_config
from unraid_kmod.kernel.source import (
    KERNEL_ORG_BASE,
    SourceTarball,
    fetch_source_tarball,
    matched_source_key,
    matched_source_url,
    read_embedded_config,
    unpack_source,
    upstream_source_key,
    upstream_source_url,
)
from unraid_kmod.types import (
    BuildConfiguration,
    CompatibilityWarning,
    ConfigTier,
    KernelVersion,
    PipelineStage,
    ReleaseArchive,
    RunDeadline,
)

logger = logging.getLogger(__name__)

HTTP_NOT_FOUND = 404


class ConfigUnavailableError(ResolutionError):
    """Raised when a tier (or every tier) cannot produce a configuration."""

    def __init__(
        self,
        message: str,
        attempts: list[tuple[ConfigTier, str]] | None = None,
        code: str = "config_unavailable",
    ) -> None:
        super().__init__(message, code=code)
        self.attempts = attempts or []


@dataclass
class LocatorContext:
    """Inputs shared by every configuration strategy.

    Attributes:
        kernel_version: Resolved kernel version.
        release: Release archive (source of the boot image).
        module_tree: Unpacked module tree root.
        work_dir: Per-run scratch directory.
        store: Artifact cache for source tarballs.
        client: HTTP client.
        matched_source_url_template: URL template for matched sources.
        kernel_org_base: Base URL for upstream tarballs.
    """

    kernel_version: KernelVersion
    release: ReleaseArchive
    module_tree: Path
    work_dir: Path
    store: CacheStore
    client: httpx.Client
    matched_source_url_template: str
    kernel_org_base: str = KERNEL_ORG_BASE
    deadline: RunDeadline | None = None
    download_timeout: float = 3600
    build_timeout: float | None = None
    lock_timeout: float | None = None
    jobs: int | None = None

    @property
    def config_dir(self) -> Path:
        return self.work_dir / "config"

    def fetch(self, url: str, key: str) -> SourceTarball:
        return fetch_source_tarball(
            self.client,
            url,
            key,
            self.store,
            deadline=self.deadline,
            timeout=self.download_timeout,
            lock_timeout=self.lock_timeout,
        )

    def fetch_upstream(self) -> SourceTarball:
        url = upstream_source_url(self.kernel_version, self.kernel_org_base)
        return self.fetch(url, upstream_source_key(self.kernel_version))


@dataclass
class ConfigResolution:
    """Outcome of locating a configuration."""

    configuration: BuildConfiguration
    attempts: list[tuple[ConfigTier, str]] = field(default_factory=list)
    warnings: list[CompatibilityWarning] = field(default_factory=list)


Strategy = Callable[[LocatorContext], BuildConfiguration]


def from_matched_source(ctx: LocatorContext) -> BuildConfiguration:
    """Tier 1: use the .config embedded in a version-matched source tarball."""
    url = matched_source_url(ctx.kernel_version, ctx.matched_source_url_template)
    try:
        tarball = ctx.fetch(url, matched_source_key(ctx.kernel_version))
    except DownloadError as e:
        if e.status_code == HTTP_NOT_FOUND:
            raise ConfigUnavailableError(f"no matched source published at {url}") from e
        raise ConfigUnavailableError(f"matched source download failed: {e}") from e
    except FormatError as e:
        raise ConfigUnavailableError(f"matched source unusable: {e}") from e

    dest = ctx.config_dir / "matched-source.config"
    try:
        found = read_embedded_config(tarball.path, dest, deadline=ctx.deadline)
        if found is None:
            raise ConfigUnavailableError(f"{tarball.path.name} has no embedded .config")
        validate_config(found)
    except FormatError as e:
        raise ConfigUnavailableError(f"matched source configuration unusable: {e}") from e

    return BuildConfiguration(
        tier=ConfigTier.MATCHED_SOURCE,
        path=dest,
        source_description=url,
        source_tarball=tarball.path,
    )


def extracted_config_candidates(
    kernel_version: KernelVersion,
    boot_root: Path,
    module_tree: Path,
) -> list[Path]:
    """Ordered configuration candidates for the extracted tier."""
    kver = kernel_version.version
    return [
        boot_root / "boot" / f"config-{kver}",
        boot_root / "boot" / "config",
        module_tree / "lib" / "modules" / kver / "build" / ".config",
        module_tree / "modules" / kver / "build" / ".config",
        boot_root / "proc" / "config.gz",
    ]


def _escapes_root(candidate: Path, roots: tuple[Path, ...]) -> bool:
    """Whether a candidate's symlinks lead outside the tree it was found in."""
    root = next(r for r in roots if candidate.is_relative_to(r))
    return not is_under_dir(root, candidate)


def from_extracted(ctx: LocatorContext) -> BuildConfiguration:
    """Tier 2: use a configuration shipped in the boot image or module tree."""
    try:
        boot = extract_boot_image(ctx.release, ctx.work_dir, deadline=ctx.deadline)
        boot_root = boot.path
    except (ResolutionError, FormatError, ToolNotFoundError) as e:
        # The module tree may still carry build/.config
        logger.warning("Boot image unavailable: %s", e)
        boot_root = ctx.work_dir / "initramfs"

    roots = (boot_root, ctx.module_tree)
    dest = ctx.config_dir / "extracted.config"
    rejected: list[str] = []
    for candidate in extracted_config_candidates(ctx.kernel_version, boot_root, ctx.module_tree):
        if not candidate.is_file():
            continue
        if _escapes_root(candidate, roots):
            logger.warning(
                "Skipping configuration candidate %s: resolves to %s outside the release",
                candidate,
                candidate.resolve(),
            )
            rejected.append(f"{candidate} (outside the release)")
            continue
        try:
            install_config(candidate, dest)
        except InvalidConfigError as e:
            logger.warning("Skipping configuration candidate: %s", e)
            rejected.append(str(candidate))
            continue
        logger.info("Using extracted configuration %s", candidate)
        tarball = ctx.fetch_upstream()
        return BuildConfiguration(
            tier=ConfigTier.EXTRACTED,
            path=dest,
            source_description=str(candidate),
            source_tarball=tarball.path,
        )

    reason = f"no configuration found in boot image or module tree for {ctx.kernel_version}"
    if rejected:
        reason += f" (rejected: {', '.join(rejected)})"
    raise ConfigUnavailableError(reason)


def from_defconfig(ctx: LocatorContext) -> BuildConfiguration:
    """Tier 3: generate a generic configuration with `make defconfig`."""
    tarball = ctx.fetch_upstream()
    scratch = ctx.work_dir / "defconfig"
    if scratch.exists():
        shutil.rmtree(scratch)
    try:
        tree = unpack_source(tarball.path, scratch, deadline=ctx.deadline)
        run_command(
            compose_make_command(tree, ["defconfig"], jobs=ctx.jobs),
            cwd=tree,
            log_path=ctx.work_dir / "logs" / "make-defconfig.log",
            timeout=ctx.build_timeout,
            deadline=ctx.deadline,
        )
        dest = install_config(tree / ".config", ctx.config_dir / "default.config")
    finally:
        shutil.rmtree(scratch, ignore_errors=True)

    return BuildConfiguration(
        tier=ConfigTier.DEFAULT,
        path=dest,
        source_description=f"make defconfig (linux-{ctx.kernel_version.base_version})",
        source_tarball=tarball.path,
    )


STRATEGIES: tuple[tuple[ConfigTier, Strategy], ...] = (
    (ConfigTier.MATCHED_SOURCE, from_matched_source),
    (ConfigTier.EXTRACTED, from_extracted),
    (ConfigTier.DEFAULT, from_defconfig),
)


def compatibility_warning(configuration: BuildConfiguration) -> CompatibilityWarning:
    """Build the warning recorded whenever the default tier is used."""
    return CompatibilityWarning(
        stage=PipelineStage.LOCATE.value,
        message=(
            "No matching kernel configuration was found; built against a generic "
            f"default configuration ({configuration.source_description}). The module "
            "may fail to load on the target system."
        ),
    )


def locate_build_configuration(
    ctx: LocatorContext,
    strategies: tuple[tuple[ConfigTier, Strategy], ...] = STRATEGIES,
) -> ConfigResolution:
    """Try each tier in order and return the first configuration found.

    Args:
        ctx: Locator inputs.
        strategies: Ordered (tier, strategy) pairs.

    Returns:
        ConfigResolution with the configuration, the failed attempts and any
        compatibility warnings.

    Raises:
        ConfigUnavailableError: If every tier fails (lists each reason).
        DownloadError: If the upstream source cannot be fetched.
        BuildExecutionError: If `make defconfig` fails.
    """
    attempts: list[tuple[ConfigTier, str]] = []
    for tier, strategy in strategies:
        logger.info("Trying %s configuration", tier.value)
        try:
            configuration = strategy(ctx)
        except ConfigUnavailableError as e:
            logger.info("%s configuration unavailable: %s", tier.value, e)
            attempts.append((tier, str(e)))
            continue

        resolution = ConfigResolution(configuration=configuration, attempts=attempts)
        if configuration.may_be_incompatible:
            warning = compatibility_warning(configuration)
            logger.warning("%s", warning.message)
            resolution.warnings.append(warning)
        return resolution

    summary = "; ".join(f"{tier.value}: {reason}" for tier, reason in attempts)
    raise ConfigUnavailableError(
        f"No kernel configuration available for {ctx.kernel_version}: {summary}",
        attempts=attempts,
    )


__all__ = [
    "STRATEGIES",
    "ConfigResolution",
    "ConfigUnavailableError",
    "LocatorContext",
    "compatibility_warning",
    "extracted_config_candidates",
    "from_defconfig",
    "from_extracted",
    "from_matched_source",
    "locate_build_configuration",
]
