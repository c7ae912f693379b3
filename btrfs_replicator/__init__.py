"""Replicate a btrfs filesystem, with all of its subvolumes, to another one."""

from .__version__ import __version__

__all__ = ["__version__"]
