"""Tests for kernel tree preparation and compilation.

make and gcc are mocked via run_command.
"""

from unittest.mock import patch

import pytest

from conftest import KVER
from unraid_kmod.builds.compile import (
    KernelReleaseMismatchError,
    ModuleArtifactMissingError,
    build_module,
    build_tools,
    cached_kernel_tree,
    find_module,
    prepare_kernel_tree,
)
from unraid_kmod.builds.package import ComponentSpec
from unraid_kmod.cache.store import PREPARED_MARKER
from unraid_kmod.errors import BuildError
from unraid_kmod.kernel.kconfig import read_options, read_string_option, set_options
from unraid_kmod.types import (
    BuildConfiguration,
    ConfigTier,
    KernelSourceTree,
    KernelVersion,
)

KV = KernelVersion(KVER)


def fake_make(release=KVER):
    """Return a run_command stand-in that mimics kbuild's prepare targets.

    With release=None no kernel.release file is written.
    """

    def _run(cmd, cwd, **kwargs):
        if cmd[-1] == "modules_prepare" and release is not None:
            release_file = cwd / "include" / "config" / "kernel.release"
            release_file.parent.mkdir(parents=True, exist_ok=True)
            release_file.write_text(f"{release}\n")

    return _run


@pytest.fixture
def configuration(tmp_path, tarball_builder):
    tarball = tarball_builder(
        tmp_path / "linux-6.12.54.tar.xz", "linux-6.12.54", {"Makefile": b"all:\n"}
    )
    config = tmp_path / "extracted.config"
    config.write_text('CONFIG_64BIT=y\nCONFIG_LOCALVERSION=""\nCONFIG_MODULE_SIG=y\n')
    return BuildConfiguration(
        tier=ConfigTier.EXTRACTED,
        path=config,
        source_description="boot/config",
        source_tarball=tarball,
    )


class TestPrepareKernelTree:
    """Tests for prepare_kernel_tree."""

    def test_prepares_and_caches(self, tmp_path, store, configuration):
        with patch("unraid_kmod.builds.compile.run_command", side_effect=fake_make()) as mock_run:
            tree = prepare_kernel_tree(KV, configuration, store, tmp_path / "logs", jobs=4)

        targets = [call.args[0][-1] for call in mock_run.call_args_list]
        assert targets == ["olddefconfig", "modules_prepare"]
        assert "-j4" in mock_run.call_args_list[0].args[0]

        assert tree.prepared is True
        assert tree.from_cache is False
        assert (tree.path / PREPARED_MARKER).read_text() == f"{KVER}\n"
        config = tree.path / ".config"
        assert read_string_option(config, "LOCALVERSION") == "-Unraid"
        assert read_options(config)["MODULE_SIG"] is None
        assert store.get("tree:6.12.54-Unraid") is not None

    def test_second_call_uses_cache(self, tmp_path, store, configuration):
        with patch("unraid_kmod.builds.compile.run_command", side_effect=fake_make()):
            first = prepare_kernel_tree(KV, configuration, store, tmp_path / "logs")

        with patch("unraid_kmod.builds.compile.run_command") as mock_run:
            second = prepare_kernel_tree(KV, configuration, store, tmp_path / "logs")

        mock_run.assert_not_called()
        assert second.from_cache is True
        assert second.path == first.path
        assert second.configuration.tier is ConfigTier.EXTRACTED

    def test_release_mismatch(self, tmp_path, store, configuration):
        with (
            patch(
                "unraid_kmod.builds.compile.run_command",
                side_effect=fake_make("6.12.54-Unraid-dirty"),
            ),
            pytest.raises(KernelReleaseMismatchError),
        ):
            prepare_kernel_tree(KV, configuration, store, tmp_path / "logs")

        assert store.get("tree:6.12.54-Unraid") is None

    def test_release_checked_from_config_without_release_file(
        self, tmp_path, store, configuration
    ):
        with patch("unraid_kmod.builds.compile.run_command", side_effect=fake_make(None)):
            tree = prepare_kernel_tree(KV, configuration, store, tmp_path / "logs")

        assert not (tree.path / "include" / "config" / "kernel.release").exists()
        assert tree.prepared is True

    def test_local_version_rewritten_by_olddefconfig(self, tmp_path, store, configuration):
        def rewriting_make(cmd, cwd, **kwargs):
            if cmd[-1] == "olddefconfig":
                set_options(cwd / ".config", {"LOCALVERSION": "-custom"})

        with (
            patch("unraid_kmod.builds.compile.run_command", side_effect=rewriting_make),
            pytest.raises(KernelReleaseMismatchError) as exc_info,
        ):
            prepare_kernel_tree(KV, configuration, store, tmp_path / "logs")

        assert "6.12.54-custom" in str(exc_info.value)

    def test_missing_tarball(self, tmp_path, store, configuration):
        configuration.source_tarball = None
        with pytest.raises(BuildError) as exc_info:
            prepare_kernel_tree(KV, configuration, store, tmp_path / "logs")
        assert exc_info.value.code == "source_missing"


class TestCachedKernelTree:
    """Tests for cached_kernel_tree."""

    def test_miss(self, store):
        assert cached_kernel_tree(store, KV) is None

    def test_records_default_tier(self, tmp_path, store, configuration):
        configuration.tier = ConfigTier.DEFAULT
        with patch("unraid_kmod.builds.compile.run_command", side_effect=fake_make()):
            prepare_kernel_tree(KV, configuration, store, tmp_path / "logs")

        cached = cached_kernel_tree(store, KV)
        assert cached is not None
        assert cached.configuration.may_be_incompatible is True


class TestFindModule:
    """Tests for find_module."""

    def test_plain_module(self, tmp_path):
        (tmp_path / "wireview_hwmon.ko").write_bytes(b"\x7fELF")
        module = find_module(tmp_path, "wireview_hwmon")
        assert module.path.name == "wireview_hwmon.ko"
        assert module.compressed is False

    def test_compressed_module(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "wireview_hwmon.ko.xz").write_bytes(b"\xfd7zXZ\x00")
        module = find_module(tmp_path, "wireview_hwmon")
        assert module.path.name == "wireview_hwmon.ko.xz"
        assert module.compressed is True

    def test_missing(self, tmp_path):
        with pytest.raises(ModuleArtifactMissingError) as exc_info:
            find_module(tmp_path, "wireview_hwmon")
        assert "wireview_hwmon.ko" in exc_info.value.names


class TestBuildModule:
    """Tests for build_module and build_tools."""

    @pytest.fixture
    def source_root(self, tmp_path):
        root = tmp_path / "source"
        upstream = root / "upstream"
        upstream.mkdir(parents=True)
        (upstream / "Makefile").write_text("obj-m += wireview_hwmon.o\n")
        (upstream / "wireview_hwmon.c").write_text("/* module */\n")
        return root

    @pytest.fixture
    def tree(self, tmp_path, configuration):
        return KernelSourceTree(
            path=tmp_path / "linux", kernel_version=KV, configuration=configuration, prepared=True
        )

    def test_build_module(self, tmp_path, source_root, tree):
        work = tmp_path / "work"

        def fake_modules(cmd, cwd, **kwargs):
            (cwd / "wireview_hwmon.ko").write_bytes(b"\x7fELF")

        with patch(
            "unraid_kmod.builds.compile.run_command", side_effect=fake_modules
        ) as mock_run:
            module = build_module(tree, ComponentSpec(), source_root, work)

        cmd = mock_run.call_args.args[0]
        assert f"M={work / 'module'}" in cmd
        assert "KBUILD_MODPOST_WARN=1" in cmd
        assert str(tree.path) in cmd
        assert module.path == work / "module" / "wireview_hwmon.ko"
        assert (source_root / "upstream" / "wireview_hwmon.ko").exists() is False

    def test_build_module_missing_output(self, tmp_path, source_root, tree):
        with (
            patch("unraid_kmod.builds.compile.run_command"),
            pytest.raises(ModuleArtifactMissingError),
        ):
            build_module(tree, ComponentSpec(), source_root, tmp_path / "work")

    def test_build_module_missing_source(self, tmp_path, tree):
        with pytest.raises(BuildError) as exc_info:
            build_module(tree, ComponentSpec(), tmp_path / "nowhere", tmp_path / "work")
        assert exc_info.value.code == "module_source_missing"

    def test_build_tools(self, tmp_path, source_root):
        work = tmp_path / "work"
        with patch("unraid_kmod.builds.compile.run_command") as mock_run:
            built = build_tools(ComponentSpec(), source_root, work)

        assert built == {
            "wireviewd": work / "bin" / "wireviewd",
            "wireviewctl": work / "bin" / "wireviewctl",
        }
        first_cmd = mock_run.call_args_list[0].args[0]
        assert "-Wno-format-truncation" in first_cmd
        assert mock_run.call_args_list[1].kwargs["log_path"] == work / "logs" / "gcc-wireviewctl.log"
