"""Root filesystem extraction module.

This module handles:
- Mounting the ISO9660 image and its nested squashfs image read-only
- Replacing the destination root directory with the squashfs tree
- Releasing mounts and temporary directories on every exit path
"""

from isorootfs.extract.extractor import (
    DEFAULT_SQUASHFS_PATH,
    Extractor,
    clear_directory,
)
from isorootfs.extract.mount import Mounter, MountHandle
from isorootfs.extract.sync import compose_rsync_command, sync_tree

__all__ = [
    "DEFAULT_SQUASHFS_PATH",
    "Extractor",
    "MountHandle",
    "Mounter",
    "clear_directory",
    "compose_rsync_command",
    "sync_tree",
]
