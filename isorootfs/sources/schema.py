"""Pydantic models for source descriptors.

A source descriptor says where a distribution ISO lives and how much the
download must be trusted before it is unpacked.
"""

import re
from typing import Annotated
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

SUPPORTED_SCHEMES = {"http", "https"}

# Long key ids (16 hex) or full fingerprints (40 hex), optional 0x prefix
KEY_ID_PATTERN = re.compile(r"^(0x)?([0-9A-Fa-f]{16}|[0-9A-Fa-f]{40})$")


class LatestReleaseSchema(BaseModel):
    """Schema for discovering the image from a project's latest release.

    Attributes:
        owner: Repository owner on GitHub.
        repo: Repository name.
        asset_suffix: Suffix of the release asset to download.
    """

    model_config = ConfigDict(extra="forbid")

    owner: Annotated[str, Field(min_length=1, max_length=100)]
    repo: Annotated[str, Field(min_length=1, max_length=100)]
    asset_suffix: str = Field(default=".iso", description="Asset name suffix")


class SourceDescriptor(BaseModel):
    """Where to download an image from and how to verify it.

    Attributes:
        url: Base URL of the image directory, or the image URL itself when
            ``image_name`` is not set.
        image_name: File name of the ISO under ``url``.
        skip_verification: Download without checking a signed manifest.
        keys: Trusted signing key ids or fingerprints.
        keyserver: Keyserver override for fetching ``keys``.
        checksum_file: Name of the checksum manifest next to the image.
        signature_suffix: Suffix appended to the manifest URL to get its
            detached signature.
        squashfs_path: Location of the root filesystem image inside the ISO.
        latest_release: Resolve the image from a project's latest release.
    """

    model_config = ConfigDict(extra="forbid")

    url: Annotated[str, Field(min_length=1, description="Base or image URL")]
    image_name: str | None = Field(default=None, description="ISO file name")
    skip_verification: bool = Field(default=False)
    keys: list[str] = Field(default_factory=list, description="Trusted key ids")
    keyserver: str | None = Field(default=None)
    checksum_file: str = Field(default="SHA256SUMS")
    signature_suffix: str = Field(default=".gpg")
    squashfs_path: str = Field(default="live/filesystem.squashfs")
    latest_release: LatestReleaseSchema | None = Field(default=None)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate the URL uses a supported scheme."""
        scheme = urlsplit(v).scheme.lower()
        if scheme not in SUPPORTED_SCHEMES:
            raise ValueError(
                f"url must use one of {sorted(SUPPORTED_SCHEMES)}, got '{v}'"
            )
        return v

    @field_validator("image_name", "checksum_file")
    @classmethod
    def validate_file_name(cls, v: str | None) -> str | None:
        """Validate names are plain file names."""
        if v is None:
            return v
        if not v or "/" in v:
            raise ValueError(f"expected a plain file name, got '{v}'")
        return v

    @field_validator("keys")
    @classmethod
    def validate_keys(cls, v: list[str]) -> list[str]:
        """Validate and normalize key ids to upper-case hex."""
        normalized: list[str] = []
        for key in v:
            compact = key.replace(" ", "")
            match = KEY_ID_PATTERN.match(compact)
            if not match:
                raise ValueError(
                    f"key must be a 16-digit key id or 40-digit fingerprint, "
                    f"got '{key}'"
                )
            normalized.append(match.group(2).upper())
        return normalized

    @field_validator("squashfs_path")
    @classmethod
    def validate_squashfs_path(cls, v: str) -> str:
        """Validate the nested image path stays inside the ISO."""
        parts = v.split("/")
        if v.startswith("/") or ".." in parts or not v:
            raise ValueError(f"squashfs_path must be relative, got '{v}'")
        return v


__all__ = ["LatestReleaseSchema", "SourceDescriptor"]
