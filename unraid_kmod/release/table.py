"""Release lookup table.

Maps Unraid versions to ordered lists of download mirrors. The table ships
with the package (data/releases.yaml) and can be extended by an operator
file whose entries take precedence.
"""

from __future__ import annotations

import logging
import re
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from unraid_kmod.errors import ConfigurationError

logger = logging.getLogger(__name__)

VERSION_KEY_PATTERN = re.compile(r"^[0-9A-Za-z._\-]+$")


class ReleaseTableError(ConfigurationError):
    """Raised when the operator release table cannot be read or validated."""

    def __init__(self, path: Path, reason: str, code: str = "release_table_invalid") -> None:
        super().__init__(
            f"Release table {path} is unusable: {reason}",
            code=code,
            remediation=(
                "Fix the file named by UNRAID_KMOD_RELEASE_TABLE (a YAML mapping with "
                "'releases' of version -> http(s) URLs), or unset the variable to use "
                "the bundled table."
            ),
        )
        self.path = path


class ReleaseTable(BaseModel):
    """Schema for a release lookup table file.

    Attributes:
        releases: Version -> ordered mirror URLs.
        url_templates: Templates with a '{version}' placeholder, used only
            when explicitly enabled.
    """

    model_config = ConfigDict(extra="forbid")

    releases: dict[str, list[str]] = Field(default_factory=dict)
    url_templates: list[str] = Field(default_factory=list)

    @field_validator("releases", mode="before")
    @classmethod
    def normalize_releases(cls, v: Any) -> Any:
        """Accept a bare URL string as a single-mirror entry."""
        if isinstance(v, dict):
            return {str(k): [u] if isinstance(u, str) else u for k, u in v.items()}
        return v

    @field_validator("releases")
    @classmethod
    def validate_releases(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        """Validate version keys and mirror URLs."""
        for version, urls in v.items():
            if not VERSION_KEY_PATTERN.match(version):
                raise ValueError(f"invalid release version key: {version!r}")
            if not urls:
                raise ValueError(f"release {version} has no URLs")
            for url in urls:
                if not url.startswith(("http://", "https://")):
                    raise ValueError(f"release {version}: not an http(s) URL: {url}")
        return v

    @field_validator("url_templates")
    @classmethod
    def validate_templates(cls, v: list[str]) -> list[str]:
        """Templates must contain the version placeholder."""
        for template in v:
            if "{version}" not in template:
                raise ValueError(f"URL template lacks '{{version}}': {template}")
        return v

    def merged_with(self, override: ReleaseTable) -> ReleaseTable:
        """Return a new table where override entries win."""
        releases = dict(self.releases)
        releases.update(override.releases)
        templates = override.url_templates or self.url_templates
        return ReleaseTable(releases=releases, url_templates=templates)

    def urls_for(self, version: str, allow_templates: bool = False) -> list[str]:
        """Return mirror URLs for a version, or an empty list if unknown."""
        if version in self.releases:
            return list(self.releases[version])
        if allow_templates:
            return [t.format(version=version) for t in self.url_templates]
        return []


def load_table_file(path: Path) -> ReleaseTable:
    """Load and validate a release table YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If the content does not match the schema.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return ReleaseTable.model_validate(data)


def load_bundled_table() -> ReleaseTable:
    """Load the release table shipped with the package."""
    text = resources.files("unraid_kmod").joinpath("data/releases.yaml").read_text(
        encoding="utf-8"
    )
    return ReleaseTable.model_validate(yaml.safe_load(text) or {})


def load_release_table(override_path: Path | None = None) -> ReleaseTable:
    """Load the effective release table.

    Args:
        override_path: Optional operator table merged over the bundled one.

    Returns:
        The merged ReleaseTable.

    Raises:
        ReleaseTableError: If the operator file is missing or invalid.
    """
    table = load_bundled_table()
    if override_path is not None:
        logger.debug("Merging release table %s", override_path)
        try:
            override = load_table_file(override_path)
        except OSError as e:
            raise ReleaseTableError(override_path, e.strerror or str(e)) from e
        except (yaml.YAMLError, ValueError) as e:
            raise ReleaseTableError(override_path, str(e)) from e
        table = table.merged_with(override)
    return table


__all__ = [
    "ReleaseTable",
    "ReleaseTableError",
    "load_bundled_table",
    "load_release_table",
    "load_table_file",
]
