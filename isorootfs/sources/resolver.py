"""Resolve a source descriptor into a download plan.

Resolution is a pure function of the descriptor: it decides which files
must be fetched and whether the checksum manifest has to be authenticated,
and rejects unsatisfiable policies before any network I/O happens.

Trust shortcut: when the image is served over HTTPS and no signing keys are
configured, the transport is trusted and no manifest is fetched.
"""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

from isorootfs.errors import PolicyViolation
from isorootfs.sources.schema import SourceDescriptor
from isorootfs.types import DownloadArtifact, PipelineStage, ResolvedSource

logger = logging.getLogger(__name__)

ENCRYPTED_SCHEMES = {"https"}

# Hash algorithm implied by well-known manifest names (lower-cased)
MANIFEST_HASH_ALGORITHMS = {
    "sha256sums": "sha256",
    "sha256sum": "sha256",
    "sha256sum.txt": "sha256",
    "sha256sums.txt": "sha256",
    "sha512sums": "sha512",
    "sha512sum": "sha512",
    "sha512sum.txt": "sha512",
    "sha1sums": "sha1",
    "sha1sum": "sha1",
}

DEFAULT_HASH_ALGORITHM = "sha256"


def is_transport_encrypted(url: str) -> bool:
    """Return True if the URL's scheme encrypts the transfer."""
    return urlsplit(url).scheme.lower() in ENCRYPTED_SCHEMES


def hash_algorithm_for_manifest(manifest_name: str) -> str:
    """Return the hash algorithm implied by a checksum manifest name.

    Args:
        manifest_name: File name of the manifest (e.g. 'SHA256SUMS').

    Returns:
        hashlib algorithm name; sha256 when the name is not recognised.
    """
    return MANIFEST_HASH_ALGORITHMS.get(
        manifest_name.lower(), DEFAULT_HASH_ALGORITHM
    )


def split_image_url(descriptor: SourceDescriptor) -> tuple[str, str]:
    """Return (base_url, image_url) for a descriptor.

    The base URL always ends with '/'.
    """
    if descriptor.image_name:
        base_url = descriptor.url.rstrip("/") + "/"
        return base_url, base_url + descriptor.image_name

    base_url = descriptor.url.rsplit("/", 1)[0] + "/"
    return base_url, descriptor.url


def resolve_source(descriptor: SourceDescriptor) -> ResolvedSource:
    """Determine which artifacts to fetch for a descriptor.

    Args:
        descriptor: Source descriptor.

    Returns:
        ResolvedSource with the image and, when verification is required,
        the manifest and its detached signature.

    Raises:
        PolicyViolation: If verification is required over an insecure
            transport and no keys are configured.
    """
    base_url, image_url = split_image_url(descriptor)

    if image_url.endswith("/"):
        raise PolicyViolation(
            f"Cannot determine image file name from {descriptor.url}",
            code="missing_image_name",
            stage=PipelineStage.RESOLVE,
            context={"url": descriptor.url},
        )

    if descriptor.skip_verification:
        logger.warning("Verification disabled for %s", image_url)
        return ResolvedSource(image=DownloadArtifact(url=image_url))

    if not descriptor.keys:
        if not is_transport_encrypted(image_url):
            raise PolicyViolation(
                "verification keys required for insecure transport",
                stage=PipelineStage.RESOLVE,
                context={"url": image_url},
            )
        logger.info("No signing keys configured, trusting transport for %s", image_url)
        return ResolvedSource(image=DownloadArtifact(url=image_url))

    manifest_url = base_url + descriptor.checksum_file
    signature_url = manifest_url + descriptor.signature_suffix
    algorithm = hash_algorithm_for_manifest(descriptor.checksum_file)

    logger.debug(
        "Resolved %s with manifest %s (%s) and signature %s",
        image_url,
        manifest_url,
        algorithm,
        signature_url,
    )

    return ResolvedSource(
        image=DownloadArtifact(
            url=image_url,
            checksum_url=manifest_url,
            hash_algorithm=algorithm,
        ),
        manifest=DownloadArtifact(url=manifest_url),
        signature=DownloadArtifact(url=signature_url),
        verify=True,
    )


__all__ = [
    "ENCRYPTED_SCHEMES",
    "hash_algorithm_for_manifest",
    "is_transport_encrypted",
    "resolve_source",
    "split_image_url",
]
