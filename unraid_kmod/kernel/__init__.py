"""Kernel version and configuration module.

This module handles:
- Resolving the exact kernel release from the module tree
- Locating a matching kernel configuration (matched source, extracted, default)
- Fetching and unpacking kernel source tarballs
"""

from unraid_kmod.kernel.locator import (
    ConfigResolution,
    ConfigUnavailableError,
    LocatorContext,
    locate_build_configuration,
)
from unraid_kmod.kernel.version import KernelVersionNotFoundError, resolve_kernel_version

__all__ = [
    "ConfigResolution",
    "ConfigUnavailableError",
    "KernelVersionNotFoundError",
    "LocatorContext",
    "locate_build_configuration",
    "resolve_kernel_version",
]
