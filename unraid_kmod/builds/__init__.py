"""Build orchestration module.

This module handles:
- Running make/gcc with captured logs
- Preparing kernel trees and compiling the module and tools
- Assembling the package tree and writing the .txz archive
- Package manifest generation
"""

from unraid_kmod.builds.runner import BuildExecutionError, run_command

__all__ = ["BuildExecutionError", "run_command"]

# Submodules that depend on kernel/ and cache/ are imported directly:
# unraid_kmod.builds.compile, unraid_kmod.builds.package, ...
