"""Configuration settings for unraid_kmod.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "unraid-kmod"


def _default_output_dir() -> Path:
    """Return the default package output directory."""
    return Path.cwd() / "output"


def _default_work_dir() -> Path:
    """Return the default scratch directory for a single run."""
    return Path.home() / ".local" / "share" / "unraid-kmod" / "work"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the UNRAID_KMOD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="UNRAID_KMOD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for downloaded archives and kernel trees",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Directory where finished packages are written",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Scratch directory for extraction and compilation",
    )
    db_url: str | None = Field(
        default=None,
        description="Cache index database URL (defaults to SQLite in cache_dir)",
    )
    source_root: Path = Field(
        default_factory=Path.cwd,
        description="Repository root holding upstream/ (module sources) and src/ (package template)",
    )

    # Release lookup
    release_table: Path | None = Field(
        default=None,
        description="Operator release table (YAML) merged over the bundled one",
    )
    allow_url_templates: bool = Field(
        default=False,
        description="Derive release URLs from templates for versions missing from the table",
    )

    # Kernel sources
    matched_source_url_template: str = Field(
        default="https://releases.unraid.net/kernel/linux-{kernel_version}.tar.xz",
        description="URL template for kernel sources published per Unraid kernel version",
    )
    kernel_org_base: str = Field(
        default="https://cdn.kernel.org/pub/linux/kernel",
        description="Base URL for upstream kernel source tarballs",
    )

    # Package identity
    component: str = Field(default="wireview-hwmon", description="Package component name")
    arch: str = Field(default="x86_64", description="Package architecture")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Build
    make_jobs: int = Field(
        default=0,
        ge=0,
        description="Parallel make jobs (0 = number of CPUs)",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single download",
    )
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single compiler/make invocation",
    )
    run_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Overall timeout for one pipeline run (None = unbounded)",
    )
    lock_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout waiting for a cache entry lock held by another run",
    )

    @property
    def effective_db_url(self) -> str:
        """Return the cache index URL, defaulting to SQLite under cache_dir."""
        if self.db_url:
            return self.db_url
        return f"sqlite:///{self.cache_dir / 'index.sqlite'}"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
