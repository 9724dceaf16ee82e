"""Error taxonomy for the build pipeline.

Every error carries a stable ``code`` for programmatic handling and, once it
has passed through the pipeline, the ``stage`` it was raised in. Errors are
grouped by how an operator recovers from them:

- ResolutionError: nothing is known for the requested version; fixed by
  operator action (lookup table entry, URL override).
- FormatError: an archive or container failed an integrity/format check.
- BuildError: a compiler or packaging step failed; never retried.
- DownloadError: the network failed after the allowed retry.
- PipelineCancelledError: the run deadline expired or the run was cancelled.
- ConfigurationError: settings, the release table or the cache index are
  unusable; raised before any stage runs.
- FilesystemError: a local file operation failed inside a stage.
"""

from __future__ import annotations

# Error code constants
RESOLUTION_ERROR = "resolution_error"
FORMAT_ERROR = "format_error"
BUILD_ERROR = "build_failed"
DOWNLOAD_ERROR = "download_error"
CANCELLED = "cancelled"
CONFIGURATION_ERROR = "configuration_error"
FILESYSTEM_ERROR = "filesystem_error"


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    default_code = "pipeline_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize PipelineError.

        Args:
            message: Error description naming the file, path or version involved.
            code: Error code for structured error handling.
            remediation: Optional hint telling the operator how to fix it.
        """
        super().__init__(message)
        self.code = code or self.default_code
        self.remediation = remediation
        self.stage: str | None = None


class ResolutionError(PipelineError):
    """Raised when no URL, container or configuration is known for a version."""

    default_code = RESOLUTION_ERROR


class FormatError(PipelineError):
    """Raised when an archive or container fails integrity/format checks."""

    default_code = FORMAT_ERROR


class BuildError(PipelineError):
    """Raised when a compile, prepare or packaging step fails."""

    default_code = BUILD_ERROR


class DownloadError(PipelineError):
    """Raised when a download fails.

    Attributes:
        transient: Whether a retry could plausibly succeed (timeouts,
            connection errors, 5xx responses).
        status_code: HTTP status code when the server answered.
    """

    default_code = DOWNLOAD_ERROR

    def __init__(
        self,
        message: str,
        code: str | None = None,
        transient: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.transient = transient
        self.status_code = status_code


class ToolNotFoundError(PipelineError):
    """Raised when a required external program is not installed."""

    default_code = "tool_not_found"

    def __init__(self, tool: str) -> None:
        super().__init__(
            f"Required program not found on PATH: {tool}",
            remediation=f"Install {tool} (see the build container's package list).",
        )
        self.tool = tool


class PipelineCancelledError(PipelineError):
    """Raised when the run deadline expires or the run is cancelled."""

    default_code = CANCELLED


class ConfigurationError(PipelineError):
    """Raised when settings, the release table or the cache index are unusable."""

    default_code = CONFIGURATION_ERROR


class FilesystemError(PipelineError):
    """Raised when reading or writing a local file or directory fails."""

    default_code = FILESYSTEM_ERROR

    def __init__(self, error: OSError) -> None:
        path = error.filename or "(unknown path)"
        super().__init__(
            f"{error.strerror or error}: {path}",
            remediation=(
                "Check free space and permissions of the cache, work and output "
                "directories."
            ),
        )
        self.path = error.filename


__all__ = [
    "BUILD_ERROR",
    "CANCELLED",
    "CONFIGURATION_ERROR",
    "DOWNLOAD_ERROR",
    "FILESYSTEM_ERROR",
    "FORMAT_ERROR",
    "RESOLUTION_ERROR",
    "BuildError",
    "ConfigurationError",
    "DownloadError",
    "FilesystemError",
    "FormatError",
    "PipelineCancelledError",
    "PipelineError",
    "ResolutionError",
    "ToolNotFoundError",
]
