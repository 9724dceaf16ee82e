"""End-to-end tests for the build pipeline.

HTTP is mocked with respx. External programs (unsquashfs, cpio, make, gcc) are
replaced by a fake subprocess.run that produces the files each would.
"""

import gzip
import tarfile
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx

from conftest import DIR_MODE, FILE_MODE, KVER, SQUASHFS_IMAGE, fake_cpio_run
from unraid_kmod.builds.runner import BuildExecutionError
from unraid_kmod.cache.store import CacheStore
from unraid_kmod.config import Settings
from unraid_kmod.errors import ConfigurationError, FilesystemError, ResolutionError
from unraid_kmod.pipeline import (
    CONFIGURATION_STAGE,
    BuildRequest,
    PipelineContext,
    resolve_only,
    run_pipeline,
)
from unraid_kmod.release.table import ReleaseTable
from unraid_kmod.types import ConfigTier, PipelineStage, RunDeadline, TargetVersion

RELEASE_URL = "https://releases.example.com/unRAIDServer-7.2.4-x86_64.zip"
TEMPLATE = "https://src.example.com/linux-{kernel_version}.tar.xz"
MATCHED = f"https://src.example.com/linux-{KVER}.tar.xz"
UPSTREAM = "https://cdn.kernel.org/pub/linux/kernel/v6.x/linux-6.12.54.tar.xz"
PACKAGE_NAME = f"wireview-hwmon-2026.02.27-x86_64-{KVER}.txz"


class FakeToolchain:
    """Stand-in for subprocess.run that mimics unsquashfs, cpio, make and gcc."""

    def __init__(self, fail_target=None):
        self.fail_target = fail_target
        self.commands = []

    def __call__(self, cmd, cwd=None, stdout=None, **kwargs):
        self.commands.append(cmd)
        program = cmd[0]
        if program == "unsquashfs":
            dest = cmd[cmd.index("-d") + 1]
            (cwd / dest / "lib" / "modules" / KVER / "kernel").mkdir(parents=True)
        elif program == "make":
            target = cmd[-1]
            if target == self.fail_target:
                stdout.write(f"make: *** [{target}] Error 2\n")
                return MagicMock(returncode=2)
            if target == "defconfig":
                (cwd / ".config").write_text("CONFIG_64BIT=y\n")
            elif target == "modules_prepare":
                release = cwd / "include" / "config" / "kernel.release"
                release.parent.mkdir(parents=True, exist_ok=True)
                release.write_text(f"{KVER}\n")
            elif target == "modules":
                module_dir = next(a for a in cmd if a.startswith("M=")).removeprefix("M=")
                (cwd / module_dir / "wireview_hwmon.ko").write_bytes(b"\x7fELF module")
        elif program == "cpio":
            return fake_cpio_run(cmd, cwd=cwd)
        elif program == "gcc":
            (cwd / cmd[cmd.index("-o") + 1]).write_bytes(b"\x7fELF tool")
        return MagicMock(returncode=0)

    def targets(self):
        return [c[-1] for c in self.commands if c[0] == "make"]


@pytest.fixture
def toolchain():
    fake = FakeToolchain()
    with (
        patch("unraid_kmod.builds.runner.shutil.which", return_value="/usr/bin/tool"),
        patch("unraid_kmod.builds.runner.subprocess.run", side_effect=fake),
    ):
        yield fake


@pytest.fixture
def source_root(tmp_path):
    root = tmp_path / "repo"
    upstream = root / "upstream"
    upstream.mkdir(parents=True)
    for name in ("Makefile", "wireview_hwmon.c", "wireviewd.c", "wireviewctl.c"):
        (upstream / name).write_text("/* source */\n")
    rc = root / "src" / "etc" / "rc.d"
    rc.mkdir(parents=True)
    (rc / "rc.wireviewd").write_text("#!/bin/sh\n")
    return root


@pytest.fixture
def settings(tmp_path, source_root):
    return Settings(
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "out",
        source_root=source_root,
        matched_source_url_template=TEMPLATE,
        make_jobs=2,
    )


@pytest.fixture
def make_context(settings):
    store = CacheStore.from_settings(settings)
    table = ReleaseTable(releases={"7.2.4": [RELEASE_URL]})

    def _make(client):
        return PipelineContext.from_settings(
            settings, client=client, store=store, table=table, deadline=RunDeadline()
        )

    return _make


@pytest.fixture
def request_for(settings):
    def _request(version="7.2.4"):
        return BuildRequest(
            target=TargetVersion(version),
            plugin_version="2026.02.27",
            source_root=settings.source_root,
            output_dir=settings.output_dir,
        )

    return _request


@pytest.fixture
def matched_bytes(tmp_path, tarball_builder):
    return tarball_builder(
        tmp_path / "matched.tar.xz",
        f"linux-{KVER}",
        {"Makefile": b"all:\n", ".config": b"CONFIG_64BIT=y\nCONFIG_MODULES=y\n"},
    ).read_bytes()


@pytest.fixture
def bare_release_bytes(tmp_path, cpio_builder, zip_builder):
    boot = cpio_builder([("etc", DIR_MODE, b""), ("etc/hostname", FILE_MODE, b"tower\n")])
    return zip_builder(
        tmp_path / "bare.zip", {"bzmodules": SQUASHFS_IMAGE, "bzroot": gzip.compress(boot)}
    ).read_bytes()


class TestRunPipeline:
    """Tests for run_pipeline."""

    @respx.mock
    def test_matched_source_build(
        self, make_context, request_for, toolchain, release_zip_bytes, matched_bytes, settings
    ):
        """Release in the table plus a matched source yields the package."""
        respx.get(RELEASE_URL).mock(return_value=httpx.Response(200, content=release_zip_bytes))
        respx.get(MATCHED).mock(return_value=httpx.Response(200, content=matched_bytes))

        with httpx.Client() as client:
            result = run_pipeline(request_for(), make_context(client))

        assert result.kernel_version.version == KVER
        assert result.configuration.tier is ConfigTier.MATCHED_SOURCE
        assert result.warnings == []
        assert result.completed == list(PipelineStage)
        assert result.package.path == settings.output_dir / PACKAGE_NAME
        assert result.package.manifest_path.exists()
        assert not result.work_dir.exists()
        assert toolchain.targets() == ["olddefconfig", "modules_prepare", "modules"]

        with tarfile.open(result.package.path) as tar:
            names = set(tar.getnames())
        assert f"./lib/modules/{KVER}/extra/wireview_hwmon.ko" in names
        assert "./usr/local/bin/wireviewd" in names
        assert "./usr/local/bin/wireviewctl" in names

    @respx.mock
    def test_second_run_reuses_cache(
        self, make_context, request_for, toolchain, release_zip_bytes, matched_bytes
    ):
        """A repeated build downloads nothing and skips kernel preparation."""
        release = respx.get(RELEASE_URL).mock(
            return_value=httpx.Response(200, content=release_zip_bytes)
        )
        matched = respx.get(MATCHED).mock(return_value=httpx.Response(200, content=matched_bytes))

        with httpx.Client() as client:
            first = run_pipeline(request_for(), make_context(client))
            second = run_pipeline(request_for(), make_context(client))

        assert release.call_count == 1
        assert matched.call_count == 1
        assert second.release.from_cache is True
        assert second.kernel_tree.from_cache is True
        assert second.configuration.tier is ConfigTier.MATCHED_SOURCE
        assert toolchain.targets().count("modules_prepare") == 1
        assert second.package.path == first.package.path

    @respx.mock(assert_all_called=False)
    def test_unknown_version_fails_before_network(self, make_context, request_for, toolchain):
        with httpx.Client() as client, pytest.raises(ResolutionError) as exc_info:
            run_pipeline(request_for("99.0.0"), make_context(client))

        error = exc_info.value
        assert error.stage == PipelineStage.ACQUIRE.value
        assert "--url" in error.remediation
        assert "release table" in error.remediation
        assert toolchain.commands == []

    @respx.mock
    def test_default_config_warns_every_run(
        self, make_context, request_for, toolchain, bare_release_bytes, tarball_builder, tmp_path
    ):
        """The default tier warns on the first build and again when its tree is reused."""
        upstream = tarball_builder(
            tmp_path / "upstream.tar.xz", "linux-6.12.54", {"Makefile": b"all:\n"}
        )
        respx.get(RELEASE_URL).mock(return_value=httpx.Response(200, content=bare_release_bytes))
        respx.get(MATCHED).mock(return_value=httpx.Response(404))
        respx.get(UPSTREAM).mock(return_value=httpx.Response(200, content=upstream.read_bytes()))

        with httpx.Client() as client:
            first = run_pipeline(request_for(), make_context(client))
            second = run_pipeline(request_for(), make_context(client))

        assert first.configuration.tier is ConfigTier.DEFAULT
        assert len(first.warnings) == 1
        assert first.package.path.exists()
        assert [t for t, _ in first.config_attempts] == [
            ConfigTier.MATCHED_SOURCE,
            ConfigTier.EXTRACTED,
        ]
        assert second.kernel_tree.from_cache is True
        assert len(second.warnings) == 1

    @respx.mock
    def test_build_failure_tagged_and_work_dir_kept(
        self, make_context, request_for, release_zip_bytes, matched_bytes
    ):
        respx.get(RELEASE_URL).mock(return_value=httpx.Response(200, content=release_zip_bytes))
        respx.get(MATCHED).mock(return_value=httpx.Response(200, content=matched_bytes))
        fake = FakeToolchain(fail_target="modules")

        with (
            patch("unraid_kmod.builds.runner.shutil.which", return_value="/usr/bin/tool"),
            patch("unraid_kmod.builds.runner.subprocess.run", side_effect=fake),
            httpx.Client() as client,
            pytest.raises(BuildExecutionError) as exc_info,
        ):
            run_pipeline(request_for(), make_context(client))

        error = exc_info.value
        assert error.stage == PipelineStage.COMPILE_MODULE.value
        assert "Error 2" in error.output
        assert error.log_path.exists()
        assert error.log_path.name == "make-modules.log"

    @respx.mock
    def test_filesystem_error_tagged_with_stage(
        self, make_context, request_for, toolchain, release_zip_bytes, matched_bytes
    ):
        """An OSError inside a stage surfaces as a diagnosed FilesystemError."""
        respx.get(RELEASE_URL).mock(return_value=httpx.Response(200, content=release_zip_bytes))
        respx.get(MATCHED).mock(return_value=httpx.Response(200, content=matched_bytes))
        full = OSError(28, "No space left on device", "/out/pkg.manifest.json")

        with (
            patch("unraid_kmod.pipeline.write_manifest", side_effect=full),
            httpx.Client() as client,
            pytest.raises(FilesystemError) as exc_info,
        ):
            run_pipeline(request_for(), make_context(client))

        error = exc_info.value
        assert error.stage == PipelineStage.PACKAGE.value
        assert error.code == "filesystem_error"
        assert "No space left on device" in str(error)
        assert error.path == "/out/pkg.manifest.json"
        assert error.remediation


class TestPipelineContext:
    """Tests for PipelineContext.from_settings."""

    def test_missing_release_table(self, settings, tmp_path):
        settings.release_table = tmp_path / "missing.yaml"

        with pytest.raises(ConfigurationError) as exc_info:
            PipelineContext.from_settings(settings, client=MagicMock())

        assert exc_info.value.stage == CONFIGURATION_STAGE
        assert exc_info.value.code == "release_table_invalid"

    def test_invalid_release_table_url(self, settings, tmp_path):
        table = tmp_path / "releases.yaml"
        table.write_text('releases:\n  "7.2.4": ftp://nope/7.2.4.zip\n')
        settings.release_table = table

        with pytest.raises(ConfigurationError) as exc_info:
            PipelineContext.from_settings(settings, client=MagicMock())

        assert exc_info.value.stage == CONFIGURATION_STAGE
        assert "not an http(s) URL" in str(exc_info.value)

    def test_unusable_cache_dir(self, settings, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        settings.cache_dir = blocker

        with pytest.raises(ConfigurationError) as exc_info:
            PipelineContext.from_settings(settings, client=MagicMock())

        assert exc_info.value.stage == CONFIGURATION_STAGE
        assert exc_info.value.code == "cache_unavailable"


class TestResolveOnly:
    """Tests for resolve_only."""

    @respx.mock
    def test_resolve(self, make_context, toolchain, release_zip_bytes):
        respx.get(RELEASE_URL).mock(return_value=httpx.Response(200, content=release_zip_bytes))

        with httpx.Client() as client:
            result = resolve_only(TargetVersion("7.2.4"), make_context(client))

        assert result.kernel_version.version == KVER
        assert result.module_tree.layout == "nested"
        assert result.completed == [
            PipelineStage.ACQUIRE,
            PipelineStage.EXTRACT,
            PipelineStage.RESOLVE,
        ]
        assert not result.work_dir.exists()
        assert result.to_dict()["kernel_version"] == KVER
