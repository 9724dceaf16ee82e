"""Build pipeline.

This module provides the high-level API:
- run_pipeline(): target version in, package archive out
- resolve_only(): acquire the release and report its kernel version

Every stage receives what it needs through PipelineContext and returns a
typed result recorded on PipelineResult; nothing is handed between stages
through the environment or shared directories. Errors raised by a stage
carry the stage name in their ``stage`` attribute.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from unraid_kmod.builds.artifacts import (
    generate_manifest,
    list_package_files,
    manifest_path_for,
    write_manifest,
)
from unraid_kmod.builds.compile import (
    build_module,
    build_tools,
    cached_kernel_tree,
    prepare_kernel_tree,
)
from unraid_kmod.builds.package import DEFAULT_COMPONENT, ComponentSpec, build_package
from unraid_kmod.builds.runner import default_jobs
from unraid_kmod.cache.store import CacheStore
from unraid_kmod.config import Settings
from unraid_kmod.errors import ConfigurationError, FilesystemError, PipelineError
from unraid_kmod.extract.archive import extract_module_tree
from unraid_kmod.fetch import create_client
from unraid_kmod.kernel.locator import LocatorContext, compatibility_warning, locate_build_configuration
from unraid_kmod.kernel.version import resolve_kernel_version
from unraid_kmod.release.acquire import acquire_release
from unraid_kmod.release.table import ReleaseTable, load_release_table
from unraid_kmod.types import (
    BuildConfiguration,
    CompatibilityWarning,
    ConfigTier,
    ExtractedArtifact,
    KernelSourceTree,
    KernelVersion,
    ModuleArtifact,
    PackageArchive,
    PipelineStage,
    ReleaseArchive,
    RunDeadline,
    TargetVersion,
)

logger = logging.getLogger(__name__)

# Stage name carried by errors raised before the first pipeline stage
CONFIGURATION_STAGE = "configuration"


@dataclass
class BuildRequest:
    """What to build.

    Attributes:
        target: Unraid release to build against.
        plugin_version: Version string embedded in the package name.
        source_root: Directory holding the module sources and package template.
        output_dir: Where the package is written.
    """

    target: TargetVersion
    plugin_version: str
    source_root: Path
    output_dir: Path


@dataclass
class PipelineContext:
    """Collaborators and limits shared by every stage of one run."""

    settings: Settings
    store: CacheStore
    client: httpx.Client
    table: ReleaseTable
    deadline: RunDeadline
    component: ComponentSpec = DEFAULT_COMPONENT

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: httpx.Client | None = None,
        store: CacheStore | None = None,
        table: ReleaseTable | None = None,
        deadline: RunDeadline | None = None,
    ) -> PipelineContext:
        """Create a context from settings, opening anything not supplied.

        Raises:
            ConfigurationError: If the cache or the release table cannot be
                opened; ``stage`` is set to "configuration".
        """
        try:
            store = store or CacheStore.from_settings(settings)
            table = table or load_release_table(settings.release_table)
        except ConfigurationError as e:
            e.stage = e.stage or CONFIGURATION_STAGE
            raise
        return cls(
            settings=settings,
            store=store,
            client=client or create_client(),
            table=table,
            deadline=deadline or RunDeadline(settings.run_timeout),
            component=ComponentSpec(name=settings.component),
        )

    @property
    def jobs(self) -> int:
        return default_jobs(self.settings.make_jobs)


@dataclass
class PipelineResult:
    """Typed outputs of each completed stage."""

    target: TargetVersion
    completed: list[PipelineStage] = field(default_factory=list)
    release: ReleaseArchive | None = None
    module_tree: ExtractedArtifact | None = None
    kernel_version: KernelVersion | None = None
    configuration: BuildConfiguration | None = None
    config_attempts: list[tuple[ConfigTier, str]] = field(default_factory=list)
    kernel_tree: KernelSourceTree | None = None
    module: ModuleArtifact | None = None
    binaries: dict[str, Path] = field(default_factory=dict)
    package: PackageArchive | None = None
    warnings: list[CompatibilityWarning] = field(default_factory=list)
    work_dir: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        """Summarize the run for JSON output."""
        return {
            "target_version": self.target.version,
            "completed_stages": [s.value for s in self.completed],
            "release_archive": str(self.release.path) if self.release else None,
            "release_from_cache": self.release.from_cache if self.release else None,
            "module_tree_member": self.module_tree.member_name if self.module_tree else None,
            "module_tree_layout": self.module_tree.layout if self.module_tree else None,
            "kernel_version": self.kernel_version.version if self.kernel_version else None,
            "config_tier": self.configuration.tier.value if self.configuration else None,
            "config_source": self.configuration.source_description if self.configuration else None,
            "may_be_incompatible": (
                self.configuration.may_be_incompatible if self.configuration else None
            ),
            "config_attempts": [
                {"tier": tier.value, "reason": reason} for tier, reason in self.config_attempts
            ],
            "kernel_tree_from_cache": self.kernel_tree.from_cache if self.kernel_tree else None,
            "package": (
                {
                    "name": self.package.name,
                    "path": str(self.package.path),
                    "size_bytes": self.package.size_bytes,
                    "sha256": self.package.sha256,
                    "manifest": str(self.package.manifest_path)
                    if self.package.manifest_path
                    else None,
                }
                if self.package
                else None
            ),
            "warnings": [{"stage": w.stage, "message": w.message} for w in self.warnings],
        }


@contextmanager
def _stage(result: PipelineResult, stage: PipelineStage) -> Iterator[None]:
    """Tag errors with the stage they came from and record completion."""
    logger.info("Stage %s", stage.value)
    try:
        yield
    except PipelineError as e:
        if e.stage is None:
            e.stage = stage.value
        raise
    except TimeoutError as e:
        err = PipelineError(str(e), code="lock_timeout")
        err.stage = stage.value
        raise err from e
    except OSError as e:
        err = FilesystemError(e)
        err.stage = stage.value
        raise err from e
    result.completed.append(stage)


def _new_work_dir(settings: Settings, target: TargetVersion) -> Path:
    try:
        settings.work_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{target.version}-", dir=settings.work_dir))
    except OSError as e:
        err = FilesystemError(e)
        err.stage = CONFIGURATION_STAGE
        raise err from e


def _acquire_and_resolve(
    target: TargetVersion,
    ctx: PipelineContext,
    result: PipelineResult,
    work_dir: Path,
) -> KernelVersion:
    settings = ctx.settings

    with _stage(result, PipelineStage.ACQUIRE):
        result.release = acquire_release(
            ctx.client,
            target,
            ctx.store,
            ctx.table,
            deadline=ctx.deadline,
            allow_templates=settings.allow_url_templates,
            timeout=settings.download_timeout,
            lock_timeout=settings.lock_timeout,
        )

    with _stage(result, PipelineStage.EXTRACT):
        result.module_tree = extract_module_tree(
            result.release,
            work_dir,
            deadline=ctx.deadline,
            timeout=settings.build_timeout,
        )

    with _stage(result, PipelineStage.RESOLVE):
        result.kernel_version = resolve_kernel_version(result.module_tree.path)

    return result.kernel_version


def resolve_only(target: TargetVersion, ctx: PipelineContext) -> PipelineResult:
    """Acquire the release archive and resolve its kernel version.

    Raises:
        PipelineError: Any stage failure, with ``stage`` set.
    """
    result = PipelineResult(target=target)
    work_dir = _new_work_dir(ctx.settings, target)
    result.work_dir = work_dir
    try:
        _acquire_and_resolve(target, ctx, result, work_dir)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)
    return result


def run_pipeline(request: BuildRequest, ctx: PipelineContext) -> PipelineResult:
    """Run every stage and write the package.

    The per-run work directory is removed on success and kept on failure so
    the tool logs under <work_dir>/logs can be inspected.

    Args:
        request: What to build.
        ctx: Shared collaborators and limits.

    Returns:
        PipelineResult with the package and any compatibility warnings.

    Raises:
        PipelineError: Any stage failure, with ``stage`` set.
    """
    settings = ctx.settings
    target = request.target
    result = PipelineResult(target=target)
    work_dir = _new_work_dir(settings, target)
    result.work_dir = work_dir
    logger.info("Building %s for Unraid %s in %s", ctx.component.name, target.version, work_dir)

    kernel_version = _acquire_and_resolve(target, ctx, result, work_dir)

    with _stage(result, PipelineStage.LOCATE):
        tree = cached_kernel_tree(ctx.store, kernel_version)
        if tree is not None:
            result.kernel_tree = tree
            result.configuration = tree.configuration
            if tree.configuration.may_be_incompatible:
                warning = compatibility_warning(tree.configuration)
                logger.warning("%s", warning.message)
                result.warnings.append(warning)
        else:
            resolution = locate_build_configuration(
                LocatorContext(
                    kernel_version=kernel_version,
                    release=result.release,
                    module_tree=result.module_tree.path,
                    work_dir=work_dir,
                    store=ctx.store,
                    client=ctx.client,
                    matched_source_url_template=settings.matched_source_url_template,
                    kernel_org_base=settings.kernel_org_base,
                    deadline=ctx.deadline,
                    download_timeout=settings.download_timeout,
                    build_timeout=settings.build_timeout,
                    lock_timeout=settings.lock_timeout,
                    jobs=ctx.jobs,
                )
            )
            result.configuration = resolution.configuration
            result.config_attempts = resolution.attempts
            result.warnings.extend(resolution.warnings)

    with _stage(result, PipelineStage.PREPARE):
        if result.kernel_tree is None:
            result.kernel_tree = prepare_kernel_tree(
                kernel_version,
                result.configuration,
                ctx.store,
                log_dir=work_dir / "logs",
                deadline=ctx.deadline,
                jobs=ctx.jobs,
                timeout=settings.build_timeout,
                lock_timeout=settings.lock_timeout,
            )

    with _stage(result, PipelineStage.COMPILE_MODULE):
        result.module = build_module(
            result.kernel_tree,
            ctx.component,
            request.source_root,
            work_dir,
            deadline=ctx.deadline,
            jobs=ctx.jobs,
            timeout=settings.build_timeout,
        )

    with _stage(result, PipelineStage.COMPILE_TOOLS):
        result.binaries = build_tools(
            ctx.component,
            request.source_root,
            work_dir,
            deadline=ctx.deadline,
            timeout=settings.build_timeout,
        )

    with _stage(result, PipelineStage.PACKAGE):
        stage_dir = work_dir / "pkg"
        package = build_package(
            ctx.component,
            request.source_root / ctx.component.template_dir,
            stage_dir,
            request.output_dir,
            plugin_version=request.plugin_version,
            arch=settings.arch,
            kernel_version=kernel_version,
            module=result.module,
            binaries=result.binaries,
        )
        manifest = generate_manifest(
            package,
            list_package_files(stage_dir),
            build_inputs={
                "target_version": target.version,
                "release_url": result.release.url,
                "release_sha256": result.release.sha256,
                "kernel_version": kernel_version.version,
                "config_tier": result.configuration.tier.value,
                "config_source": result.configuration.source_description,
                "plugin_version": request.plugin_version,
                "arch": settings.arch,
            },
            warnings=result.warnings,
        )
        package.manifest_path = write_manifest(manifest, manifest_path_for(package))
        result.package = package

    shutil.rmtree(work_dir, ignore_errors=True)
    logger.info("Package written: %s (%d bytes)", package.path, package.size_bytes)
    return result


__all__ = [
    "CONFIGURATION_STAGE",
    "BuildRequest",
    "PipelineContext",
    "PipelineResult",
    "resolve_only",
    "run_pipeline",
]
