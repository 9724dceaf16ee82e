"""Archive extraction module.

This module handles:
- Magic-byte container detection and stream decoding
- Locating members inside the release zip
- Unpacking the module tree and the boot image
"""

from unraid_kmod.extract.archive import (
    ContainerNotFoundError,
    ExtractionError,
    extract_boot_image,
    extract_module_tree,
)
from unraid_kmod.extract.formats import UnsupportedContainerError, detect_format

__all__ = [
    "ContainerNotFoundError",
    "ExtractionError",
    "UnsupportedContainerError",
    "detect_format",
    "extract_boot_image",
    "extract_module_tree",
]
