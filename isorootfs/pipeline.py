"""Image acquisition pipeline.

Runs the four stages in order, each consuming the previous stage's output:

1. Resolve the descriptor into a download plan (no I/O).
2. Fetch the detached signature and the checksum manifest.
3. Verify the manifest signature against the trusted keys.
4. Fetch the image, hash-checked against the manifest, and extract it.

The first failure aborts the run; nothing is retried. When the resolver
decides no verification is needed, steps 2 and 3 are skipped and the image
is fetched without a hash check.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import httpx

from isorootfs.config import get_settings
from isorootfs.errors import DownloadError, InvalidSignature, PolicyViolation
from isorootfs.extract.extractor import Extractor
from isorootfs.fetch.service import open_fetcher
from isorootfs.sources.releases import ReleaseLookupError, apply_latest_release
from isorootfs.sources.resolver import resolve_source
from isorootfs.types import (
    DownloadArtifact,
    ExtractionResult,
    PipelineResult,
    PipelineStage,
)
from isorootfs.verify.gpg import SignatureVerifier

if TYPE_CHECKING:
    from isorootfs.config import Settings
    from isorootfs.sources.schema import SourceDescriptor

logger = logging.getLogger(__name__)


class FetchBackend(Protocol):
    """Downloads a URL into a cache directory."""

    def fetch(
        self,
        url: str,
        checksum_url: str | None = None,
        hash_algorithm: str | None = None,
    ) -> Path: ...


class VerifyBackend(Protocol):
    """Checks a detached signature over a manifest."""

    def verify(self, manifest_path: Path, signature_path: Path) -> bool: ...


class ExtractBackend(Protocol):
    """Unpacks an image into a root directory."""

    def extract(self, image_path: Path, rootfs_dir: Path) -> ExtractionResult: ...


def _fetch(fetcher: FetchBackend, artifact: DownloadArtifact) -> Path:
    """Fetch one artifact and return the path of the cached file."""
    cache_dir = fetcher.fetch(
        artifact.url,
        artifact.checksum_url,
        artifact.hash_algorithm,
    )
    return Path(cache_dir) / artifact.filename


def discover_source(
    descriptor: SourceDescriptor,
    settings: Settings,
    client: httpx.Client | None = None,
) -> SourceDescriptor:
    """Resolve a latest-release descriptor to a fixed image URL.

    Raises:
        DownloadError: If the release lookup fails.
    """
    if descriptor.latest_release is None:
        return descriptor

    manage_client = client is None
    http_client = httpx.Client(follow_redirects=True) if client is None else client
    try:
        return apply_latest_release(
            http_client, descriptor, api_url=settings.github_api_url
        )
    except ReleaseLookupError as e:
        raise DownloadError(
            str(e),
            code=e.code,
            stage=PipelineStage.RESOLVE,
            context={
                "repository": f"{descriptor.latest_release.owner}/"
                f"{descriptor.latest_release.repo}"
            },
        ) from e
    finally:
        if manage_client:
            http_client.close()


def run_pipeline(
    descriptor: SourceDescriptor,
    rootfs_dir: Path,
    *,
    settings: Settings | None = None,
    fetcher: FetchBackend | None = None,
    verifier: VerifyBackend | None = None,
    extractor: ExtractBackend | None = None,
    client: httpx.Client | None = None,
) -> PipelineResult:
    """Download, verify and unpack an image into rootfs_dir.

    Collaborators default to the real implementations; tests and callers
    embedding the pipeline can supply their own.

    Args:
        descriptor: Source descriptor.
        rootfs_dir: Destination root directory; its contents are replaced.
        settings: Application settings.
        fetcher: Download backend (cache-backed ``Fetcher`` by default).
        verifier: Signature backend (``SignatureVerifier`` by default).
        extractor: Extraction backend (``Extractor`` by default).
        client: HTTPX client for release lookups and downloads.

    Returns:
        PipelineResult describing the run.

    Raises:
        PipelineError: Subclass identifying the first failure.
    """
    if settings is None:
        settings = get_settings()

    descriptor = discover_source(descriptor, settings, client)

    logger.info("Resolving %s", descriptor.url)
    source = resolve_source(descriptor)

    with ExitStack() as stack:
        if fetcher is None:
            fetcher = stack.enter_context(open_fetcher(settings, client))

        if source.verify:
            if source.signature is None or source.manifest is None:
                raise PolicyViolation(
                    "Verification requires a checksum manifest and a signature",
                    code="incomplete_plan",
                    stage=PipelineStage.RESOLVE,
                    context={"url": source.image.url},
                )
            signature_path = _fetch(fetcher, source.signature)
            manifest_path = _fetch(fetcher, source.manifest)

            if verifier is None:
                verifier = SignatureVerifier(
                    descriptor.keys,
                    keyserver=descriptor.keyserver,
                    settings=settings,
                )
            if not verifier.verify(manifest_path, signature_path):
                raise InvalidSignature(
                    f"Signature of {manifest_path.name} is not valid "
                    "for any trusted key",
                    stage=PipelineStage.VERIFY,
                    context={
                        "url": source.manifest.url,
                        "path": str(manifest_path),
                    },
                )
        else:
            logger.info("Skipping signature verification for %s", source.image.url)

        image_path = _fetch(fetcher, source.image)

    if extractor is None:
        extractor = Extractor(squashfs_path=descriptor.squashfs_path, settings=settings)

    logger.info("Extracting %s into %s", image_path.name, rootfs_dir)
    extraction = extractor.extract(image_path, rootfs_dir)

    for warning in extraction.warnings:
        logger.warning("Cleanup warning: %s", warning)

    return PipelineResult(
        source=source,
        image_path=image_path,
        signature_verified=source.verify,
        extraction=extraction,
    )


__all__ = [
    "ExtractBackend",
    "FetchBackend",
    "VerifyBackend",
    "discover_source",
    "run_pipeline",
]
