"""Error definitions for the acquisition pipeline.

Every failure carries a stable ``code`` for programmatic handling, the
pipeline ``stage`` it came from and a ``context`` mapping naming the URL,
path or mount point involved. Cleanup problems are recorded as
``CleanupWarning`` objects attached to the result or to the primary error;
they never replace it.
"""

from __future__ import annotations

from typing import Any

from isorootfs.types import PipelineStage


class CleanupWarning(Exception):
    """Non-fatal failure while releasing a temporary resource."""

    def __init__(self, message: str, path: str | None = None) -> None:
        """Initialize CleanupWarning.

        Args:
            message: Description of the cleanup failure.
            path: Mount point or directory that could not be released.
        """
        super().__init__(message)
        self.message = message
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"message": self.message, "path": self.path}


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    default_code = "pipeline_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        stage: PipelineStage | None = None,
        context: dict[str, str] | None = None,
    ) -> None:
        """Initialize PipelineError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
            stage: Pipeline stage that failed.
            context: URL, path or mount point involved in the failure.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.stage = stage
        self.context: dict[str, str] = dict(context or {})
        self.warnings: list[CleanupWarning] = []

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "stage": self.stage.value if self.stage else None,
            "context": self.context,
            "warnings": [w.to_dict() for w in self.warnings],
        }


class PolicyViolation(PipelineError):
    """Raised when the verification policy cannot be satisfied."""

    default_code = "policy_violation"


class DownloadError(PipelineError):
    """Raised when a download fails (network, HTTP status or disk write)."""

    default_code = "download_error"


class HashMismatchError(PipelineError):
    """Raised when downloaded bytes do not match the expected digest."""

    default_code = "hash_mismatch"


class SignatureError(PipelineError):
    """Raised on malformed signature data or keyring failures."""

    default_code = "signature_error"


class InvalidSignature(PipelineError):
    """Raised when a well-formed signature is not made by a trusted key."""

    default_code = "invalid_signature"


class MountError(PipelineError):
    """Raised when mounting or unmounting a filesystem fails."""

    default_code = "mount_error"


class MalformedImage(PipelineError):
    """Raised when the nested filesystem image is missing from the ISO."""

    default_code = "malformed_image"


class DestinationError(PipelineError):
    """Raised when the destination root directory cannot be prepared."""

    default_code = "destination_error"


class SyncError(PipelineError):
    """Raised when copying the root filesystem fails."""

    default_code = "sync_error"


__all__ = [
    "CleanupWarning",
    "DestinationError",
    "DownloadError",
    "HashMismatchError",
    "InvalidSignature",
    "MalformedImage",
    "MountError",
    "PipelineError",
    "PolicyViolation",
    "SignatureError",
    "SyncError",
]
