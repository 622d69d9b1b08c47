"""isorootfs - Fetch, verify and unpack live ISO images into root filesystems.

This package downloads distribution ISO images, authenticates their checksum
manifests with detached GPG signatures, and copies the nested squashfs root
filesystem into a destination directory.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
