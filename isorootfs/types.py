"""Shared type definitions for isorootfs.

This module contains dataclasses and enums shared across subpackages to
avoid circular imports.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from isorootfs.errors import CleanupWarning


class ArtifactState(str, Enum):
    """State of a cached download."""

    PENDING = "pending"
    READY = "ready"
    BROKEN = "broken"


class PipelineStage(str, Enum):
    """Stage of the acquisition pipeline that produced an outcome."""

    RESOLVE = "resolve"
    FETCH = "fetch"
    VERIFY = "verify"
    EXTRACT = "extract"


class ExtractorState(str, Enum):
    """Lifecycle state of a single extraction."""

    INIT = "init"
    OUTER_MOUNTED = "outer_mounted"
    INNER_MOUNTED = "inner_mounted"
    DESTINATION_CLEARED = "destination_cleared"
    SYNCED = "synced"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


def url_basename(url: str) -> str:
    """Return the last path component of a URL, without its query string."""
    return url.split("?", 1)[0].rsplit("/", 1)[-1]


@dataclass(frozen=True)
class DownloadArtifact:
    """A file to fetch, with the manifest used to check it (if any)."""

    url: str
    checksum_url: str | None = None
    hash_algorithm: str | None = None

    @property
    def filename(self) -> str:
        """Basename of the URL, which is also the cached file name."""
        return url_basename(self.url)


@dataclass(frozen=True)
class ResolvedSource:
    """Download plan produced by the resolver.

    Attributes:
        image: The ISO image to download.
        manifest: Checksum manifest, when verification is required.
        signature: Detached signature over the manifest.
        verify: Whether the manifest signature must be checked.
    """

    image: DownloadArtifact
    manifest: DownloadArtifact | None = None
    signature: DownloadArtifact | None = None
    verify: bool = False

    def artifacts(self) -> Iterator[DownloadArtifact]:
        """Yield artifacts in fetch order: signature, manifest, image."""
        if self.signature is not None:
            yield self.signature
        if self.manifest is not None:
            yield self.manifest
        yield self.image


@dataclass
class VerificationBundle:
    """Inputs needed to authenticate a checksum manifest."""

    manifest_path: Path
    signature_path: Path
    keys: list[str] = field(default_factory=list)


@dataclass
class ExtractionResult:
    """Outcome of unpacking an image into a root directory."""

    rootfs_dir: Path
    state: ExtractorState
    warnings: list["CleanupWarning"] = field(default_factory=list)


@dataclass
class PipelineResult:
    """Outcome of a full pipeline run."""

    source: ResolvedSource
    image_path: Path
    signature_verified: bool
    extraction: ExtractionResult


__all__ = [
    "ArtifactState",
    "DownloadArtifact",
    "ExtractionResult",
    "ExtractorState",
    "PipelineResult",
    "PipelineStage",
    "ResolvedSource",
    "VerificationBundle",
    "url_basename",
]
