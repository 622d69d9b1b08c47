"""Signature verification module.

Authenticates checksum manifests with detached GPG signatures before any
digest in them is trusted.
"""

from isorootfs.verify.gpg import (
    SignatureVerifier,
    interpret_status,
    parse_verify_status,
)

__all__ = ["SignatureVerifier", "interpret_status", "parse_verify_status"]
