"""Unraid kernel module builder - out-of-tree module packaging for Unraid.

This package resolves the exact kernel shipped by an Unraid release, prepares
matching kernel headers, builds an out-of-tree module plus its userspace
helpers, and packages everything into an installable Slackware .txz.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
