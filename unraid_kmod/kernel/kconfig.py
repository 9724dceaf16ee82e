"""Kernel .config reading and editing.

Options are edited line by line so that comments and option order are kept.
A value of True writes `CONFIG_X=y`, False writes `# CONFIG_X is not set`,
and a string writes `CONFIG_X="value"`.
"""

from __future__ import annotations

import gzip
import logging
import re
import shutil
from pathlib import Path

from unraid_kmod.errors import FormatError

logger = logging.getLogger(__name__)

_SET_RE = re.compile(r"^CONFIG_([A-Za-z0-9_]+)=(.*)$")
_UNSET_RE = re.compile(r"^# CONFIG_([A-Za-z0-9_]+) is not set$")

OptionValue = bool | str

# Options cleared so modules build without the vendor signing key
MODULE_SIGNING_OPTIONS: dict[str, OptionValue] = {
    "MODULE_SIG": False,
    "MODULE_SIG_FORCE": False,
    "MODULE_SIG_ALL": False,
    "MODULE_SIG_KEY": "",
    "SYSTEM_TRUSTED_KEYS": "",
}


class InvalidConfigError(FormatError):
    """Raised when a file is not a usable kernel configuration."""

    def __init__(self, path: Path, reason: str, code: str = "invalid_kernel_config") -> None:
        super().__init__(f"{path} is not a kernel configuration: {reason}", code=code)
        self.path = path


def _format_option(name: str, value: OptionValue) -> str:
    if value is True:
        return f"CONFIG_{name}=y"
    if value is False:
        return f"# CONFIG_{name} is not set"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'CONFIG_{name}="{escaped}"'


def _option_name(line: str) -> str | None:
    match = _SET_RE.match(line) or _UNSET_RE.match(line)
    return match.group(1) if match else None


def read_options(path: Path) -> dict[str, str | None]:
    """Parse a .config into a mapping.

    Returns:
        Option name (without the CONFIG_ prefix) to raw value; None for
        options recorded as 'is not set'. String values keep their quotes.
    """
    options: dict[str, str | None] = {}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        if match := _SET_RE.match(line):
            options[match.group(1)] = match.group(2)
        elif match := _UNSET_RE.match(line):
            options[match.group(1)] = None
    return options


def read_string_option(path: Path, name: str) -> str | None:
    """Return an unquoted string option, or None when unset or absent."""
    raw = read_options(path).get(name)
    if raw is None:
        return None
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        return raw[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return raw


def set_options(path: Path, options: dict[str, OptionValue]) -> None:
    """Set options in a .config in place.

    Existing lines for an option are replaced where they stand; options not
    present are appended.

    Args:
        path: The .config file.
        options: Option name (without CONFIG_) to value.
    """
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    pending = dict(options)
    out: list[str] = []
    for line in lines:
        name = _option_name(line)
        if name is not None and name in options:
            if name in pending:
                out.append(_format_option(name, pending.pop(name)))
            # drop duplicate definitions of an edited option
            continue
        out.append(line)
    out.extend(_format_option(name, value) for name, value in pending.items())
    path.write_text("\n".join(out) + "\n", encoding="utf-8")


def force_local_version(path: Path, local_version: str) -> None:
    """Pin CONFIG_LOCALVERSION so `make kernelrelease` matches the target exactly."""
    logger.info("Setting CONFIG_LOCALVERSION=%r in %s", local_version, path)
    set_options(path, {"LOCALVERSION": local_version, "LOCALVERSION_AUTO": False})


def disable_module_signing(path: Path) -> None:
    """Turn off module signature generation and enforcement."""
    logger.info("Disabling module signing in %s", path)
    set_options(path, MODULE_SIGNING_OPTIONS)


def validate_config(path: Path) -> None:
    """Check that a file looks like a kernel .config.

    Raises:
        InvalidConfigError: If the file is missing, empty or has no options.
    """
    if not path.is_file():
        raise InvalidConfigError(path, "file does not exist")
    if not read_options(path):
        raise InvalidConfigError(path, "no CONFIG_ options found")


def install_config(candidate: Path, dest: Path) -> Path:
    """Copy a configuration candidate to dest, decompressing *.gz snapshots.

    Args:
        candidate: Found configuration (plain text or gzip, e.g. proc/config.gz).
        dest: Destination .config path.

    Returns:
        dest.

    Raises:
        InvalidConfigError: If the candidate cannot be read or is not a config.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        if candidate.suffix == ".gz":
            with gzip.open(candidate, "rb") as src, dest.open("wb") as out:
                shutil.copyfileobj(src, out)
        else:
            shutil.copyfile(candidate, dest)
    except (OSError, EOFError) as e:
        dest.unlink(missing_ok=True)
        raise InvalidConfigError(candidate, str(e)) from e
    validate_config(dest)
    return dest


__all__ = [
    "MODULE_SIGNING_OPTIONS",
    "InvalidConfigError",
    "disable_module_signing",
    "force_local_version",
    "install_config",
    "read_options",
    "read_string_option",
    "set_options",
    "validate_config",
]
