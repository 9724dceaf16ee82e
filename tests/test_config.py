"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from unraid_kmod.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.cache_dir == Path.home() / ".cache" / "unraid-kmod"
        assert settings.db_url is None
        assert settings.allow_url_templates is False
        assert settings.component == "wireview-hwmon"
        assert settings.arch == "x86_64"
        assert settings.log_level == "INFO"
        assert settings.run_timeout is None
        assert "{kernel_version}" in settings.matched_source_url_template

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "UNRAID_KMOD_ALLOW_URL_TEMPLATES": "true",
                "UNRAID_KMOD_LOG_LEVEL": "DEBUG",
                "UNRAID_KMOD_MAKE_JOBS": "4",
                "UNRAID_KMOD_RUN_TIMEOUT": "7200",
            },
        ):
            settings = Settings()
            assert settings.allow_url_templates is True
            assert settings.log_level == "DEBUG"
            assert settings.make_jobs == 4
            assert settings.run_timeout == 7200

    def test_cache_dir_from_env(self) -> None:
        """Cache dir should be configurable via env."""
        with patch.dict(os.environ, {"UNRAID_KMOD_CACHE_DIR": "/tmp/test-cache"}):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")

    def test_init_arguments_override_env(self) -> None:
        """Explicit arguments (CLI flags) should win over env vars."""
        with patch.dict(os.environ, {"UNRAID_KMOD_OUTPUT_DIR": "/tmp/from-env"}):
            settings = Settings(output_dir=Path("/tmp/from-flag"))
            assert settings.output_dir == Path("/tmp/from-flag")

    def test_effective_db_url_defaults_into_cache_dir(self) -> None:
        """Without db_url the index should live inside the cache dir."""
        settings = Settings(cache_dir=Path("/tmp/kmod-cache"))
        assert settings.effective_db_url == "sqlite:////tmp/kmod-cache/index.sqlite"

    def test_explicit_db_url(self) -> None:
        """An explicit db_url should be used as-is."""
        settings = Settings(db_url="sqlite:///:memory:")
        assert settings.effective_db_url == "sqlite:///:memory:"

    def test_rejects_short_run_timeout(self) -> None:
        """Run timeouts under a minute should be rejected."""
        with pytest.raises(ValidationError):
            Settings(run_timeout=5)


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        assert "cache_dir" in parsed
        assert "output_dir" in parsed
        assert "release_table" in parsed
        assert "matched_source_url_template" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "cache_dir" in parsed
