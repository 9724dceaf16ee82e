"""Tests for package manifest generation."""

import json

from unraid_kmod.builds.artifacts import (
    generate_manifest,
    list_package_files,
    manifest_path_for,
    write_manifest,
)
from unraid_kmod.types import CompatibilityWarning, PackageArchive


def _package(tmp_path):
    path = tmp_path / "wireview-hwmon-1.0.0-x86_64-6.12.54-Unraid.txz"
    path.write_bytes(b"package")
    return PackageArchive(
        name="wireview-hwmon-1.0.0-x86_64-6.12.54-Unraid",
        path=path,
        size_bytes=7,
        sha256="ab" * 32,
    )


class TestListPackageFiles:
    """Tests for list_package_files function."""

    def test_lists_regular_files_sorted(self, tmp_path):
        stage = tmp_path / "stage"
        (stage / "usr" / "local" / "bin").mkdir(parents=True)
        (stage / "usr" / "local" / "bin" / "wireviewd").write_bytes(b"bin")
        (stage / "usr" / "local" / "bin" / "wireviewd").chmod(0o755)
        (stage / "etc").mkdir()
        (stage / "etc" / "motd").write_text("hi")
        (stage / "etc" / "link").symlink_to("motd")

        files = list_package_files(stage)

        assert [f.relative_path for f in files] == ["etc/motd", "usr/local/bin/wireviewd"]
        assert files[1].mode == "0o755"
        assert files[1].size_bytes == 3
        assert len(files[0].sha256) == 64


class TestGenerateManifest:
    """Tests for generate_manifest function."""

    def test_basic_manifest(self, tmp_path):
        """Should generate manifest with package, files and warnings."""
        package = _package(tmp_path)
        warning = CompatibilityWarning(stage="locate-config", message="generic config")

        manifest = generate_manifest(
            package,
            [],
            build_inputs={"kernel_version": "6.12.54-Unraid", "config_tier": "default"},
            warnings=[warning],
        )

        assert manifest["version"] == "1.0"
        assert "generated_at" in manifest
        assert manifest["package"]["filename"] == package.path.name
        assert manifest["package"]["sha256"] == "ab" * 32
        assert manifest["warnings"] == [{"stage": "locate-config", "message": "generic config"}]
        assert manifest["build_inputs"]["config_tier"] == "default"

    def test_no_build_inputs(self, tmp_path):
        manifest = generate_manifest(_package(tmp_path), [])
        assert "build_inputs" not in manifest
        assert manifest["warnings"] == []


class TestWriteManifest:
    """Tests for write_manifest function."""

    def test_write_manifest(self, tmp_path):
        """Should write manifest beside the package."""
        package = _package(tmp_path)
        path = write_manifest(generate_manifest(package, []), manifest_path_for(package))

        assert path.name == "wireview-hwmon-1.0.0-x86_64-6.12.54-Unraid.manifest.json"
        assert json.loads(path.read_text())["package"]["name"] == package.name
