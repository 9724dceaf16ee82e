"""Command runner for kernel, compiler and extraction tools.

This module handles:
- Composing `make` and `gcc` command lines
- Executing commands with subprocess
- Capturing stdout/stderr to log files
- Enforcing per-command timeouts and the overall run deadline
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from unraid_kmod.errors import BuildError, PipelineCancelledError, ToolNotFoundError
from unraid_kmod.types import RunDeadline

logger = logging.getLogger(__name__)

# Warning and optimisation flags shared by the userspace tools
BASE_CFLAGS = ("-Wall", "-Wextra", "-O2", "-static")


class BuildExecutionError(BuildError):
    """Raised when a tool exits non-zero, times out, or cannot start.

    Attributes:
        exit_code: Process exit code, if the process ran.
        output: Full combined stdout/stderr of the tool.
        log_path: Log file holding the same output.
    """

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
        output: str | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.exit_code = exit_code
        self.output = output
        self.log_path = log_path


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        success: Whether the command exited zero.
        exit_code: Process exit code.
        log_path: Path to the log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str


def default_jobs(configured: int = 0) -> int:
    """Return the make job count: configured value, or CPU count when 0."""
    if configured > 0:
        return configured
    return os.cpu_count() or 1


def compose_make_command(
    kernel_dir: Path,
    targets: Sequence[str],
    jobs: int | None = None,
    variables: dict[str, str] | None = None,
) -> list[str]:
    """Compose a `make -C <kernel_dir>` command.

    Args:
        kernel_dir: Kernel source tree.
        targets: Make targets (e.g. 'olddefconfig', 'modules_prepare').
        jobs: Parallel jobs (omitted when None).
        variables: Make variables such as M= or KBUILD_MODPOST_WARN=.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["make", "-C", str(kernel_dir)]
    if jobs:
        cmd.append(f"-j{jobs}")
    for name, value in (variables or {}).items():
        cmd.append(f"{name}={value}")
    cmd.extend(targets)
    return cmd


def compose_compile_command(
    source: Path,
    output: Path,
    extra_flags: Sequence[str] = (),
) -> list[str]:
    """Compose a static gcc command for a single-file userspace tool."""
    return ["gcc", *BASE_CFLAGS, *extra_flags, "-o", str(output), str(source)]


def read_log(log_path: Path) -> str:
    """Return the contents of a command log, or '' if missing."""
    try:
        return log_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def run_command(
    cmd: list[str],
    cwd: Path,
    log_path: Path,
    timeout: float | None = None,
    deadline: RunDeadline | None = None,
    check: bool = True,
) -> CommandResult:
    """Execute a command, capturing its output to a log file.

    Args:
        cmd: Command and arguments.
        cwd: Working directory.
        log_path: Log file for combined stdout/stderr.
        timeout: Command timeout in seconds (None = no timeout).
        deadline: Optional run deadline; its remaining time caps the timeout.
        check: Raise BuildExecutionError on non-zero exit.

    Returns:
        CommandResult with execution details.

    Raises:
        ToolNotFoundError: If the program is not on PATH.
        BuildExecutionError: If the command fails (check=True), times out,
            or cannot be started. The full tool output is attached.
        PipelineCancelledError: If the run deadline expires.
    """
    if shutil.which(cmd[0]) is None:
        raise ToolNotFoundError(cmd[0])

    if deadline is not None:
        deadline.check(cmd[0])
        timeout = deadline.remaining(timeout)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
            exit_code = result.returncode

    except subprocess.TimeoutExpired as e:
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        if deadline is not None and deadline.expired():
            raise PipelineCancelledError(
                f"Run deadline expired while running {cmd[0]}", code="timeout"
            ) from e
        raise BuildExecutionError(
            f"{cmd[0]} timed out after {timeout} seconds: {cmd_str}",
            exit_code=-1,
            code="build_timeout",
            output=read_log(log_path),
            log_path=log_path,
        ) from e

    except OSError as e:
        raise BuildExecutionError(
            f"Failed to execute {cmd_str}: {e}",
            code="execution_error",
            log_path=log_path,
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    success = exit_code == 0
    if not success:
        logger.error("%s exited with %d. See log: %s", cmd[0], exit_code, log_path)
        if check:
            raise BuildExecutionError(
                f"Command failed with exit code {exit_code}: {cmd_str}",
                exit_code=exit_code,
                output=read_log(log_path),
                log_path=log_path,
            )

    return CommandResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


__all__ = [
    "BASE_CFLAGS",
    "BuildExecutionError",
    "CommandResult",
    "compose_compile_command",
    "compose_make_command",
    "default_jobs",
    "read_log",
    "run_command",
]
