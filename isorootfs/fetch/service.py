"""Download cache service.

This module provides high-level APIs for the download cache:
- Fetcher.fetch(): Download a file into the cache, optionally hash-checked
- list_artifacts(): List cached downloads
- prune_artifacts(): Remove broken or all cached downloads
- get_cache_info(): Report cache location and size

Files from one remote directory share a cache directory, so a manifest,
its signature and the image it describes end up side by side. All
transfers into a cache directory are serialised with a file lock.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from isorootfs.config import get_settings
from isorootfs.db import (
    create_all_tables,
    get_engine,
    get_session,
    get_session_factory,
)
from isorootfs.errors import DownloadError, HashMismatchError, PipelineError
from isorootfs.fetch.download import (
    DownloadResult,
    download_file,
    parse_checksum_manifest,
)
from isorootfs.fetch.models import CachedArtifact
from isorootfs.types import ArtifactState, PipelineStage, url_basename

if TYPE_CHECKING:
    from types import TracebackType

    from isorootfs.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_HASH_ALGORITHM = "sha256"


def cache_dir_for(cache_root: Path, url: str) -> Path:
    """Return the cache directory for a URL.

    The directory name is derived from the URL's parent directory, so
    sibling files share one cache directory.

    Args:
        cache_root: Root cache directory.
        url: Artifact URL.

    Returns:
        Path of the cache directory (not created).
    """
    remote_dir = url.split("?", 1)[0].rsplit("/", 1)[0]
    key = hashlib.sha256(remote_dir.encode("utf-8")).hexdigest()[:16]
    return cache_root / "downloads" / key


@contextmanager
def artifact_lock(
    cache_root: Path,
    key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock on one cache directory.

    Uses a file-based lock to prevent concurrent downloads into the same
    cache directory. The lock file is stored under the cache root.

    Args:
        cache_root: Root cache directory.
        key: Cache directory name to lock.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir = cache_root / ".locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"{key}.lock"

    logger.debug("Acquiring lock for %s", key)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as e:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for lock on cache directory {key}"
                        ) from e
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)

        logger.debug("Lock acquired for %s", key)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug("Lock released for %s", key)


def _get_artifact(session: Session, url: str) -> CachedArtifact | None:
    stmt = select(CachedArtifact).where(CachedArtifact.url == url)
    return session.execute(stmt).scalars().first()


class Fetcher:
    """Download files into the content-addressed cache.

    The fetcher owns its HTTP client unless one is passed in.
    """

    def __init__(
        self,
        session: Session,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.session = session
        self.settings = settings if settings is not None else get_settings()
        self._manage_client = client is None
        self.client: httpx.Client = (
            httpx.Client(follow_redirects=True) if client is None else client
        )

    def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._manage_client:
            self.client.close()

    def __enter__(self) -> Fetcher:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def fetch(
        self,
        url: str,
        checksum_url: str | None = None,
        hash_algorithm: str | None = None,
    ) -> Path:
        """Ensure a file is in the cache and return its directory.

        When ``checksum_url`` is given, the expected digest is read from that
        manifest (fetched first if it is not cached yet) and the transfer is
        rejected if the bytes do not match. A file previously verified
        against the same digest is served from the cache without a transfer.

        The index record is committed as ``pending`` before the transfer
        starts and again once it is ``ready`` or ``broken``. No transaction
        is open while bytes are moving.

        Args:
            url: URL to fetch.
            checksum_url: URL of a checksum manifest listing the file.
            hash_algorithm: hashlib algorithm of the manifest digests.

        Returns:
            Cache directory containing the file under its URL basename.

        Raises:
            DownloadError: If the transfer fails or offline mode forbids it.
            HashMismatchError: If the digest does not match or the manifest
                has no entry for the file.
        """
        algorithm = hash_algorithm or DEFAULT_HASH_ALGORITHM
        filename = url_basename(url)
        target_dir = cache_dir_for(self.settings.cache_dir, url)
        target_path = target_dir / filename

        expected: str | None = None
        if checksum_url:
            expected = self._expected_checksum(url, checksum_url)

        with artifact_lock(self.settings.cache_dir, target_dir.name):
            artifact = _get_artifact(self.session, url)

            if artifact is not None and self._is_reusable(
                artifact, target_path, expected, algorithm
            ):
                logger.info("Using cached %s", target_path)
                artifact.last_used_at = datetime.now(timezone.utc)
                self.session.commit()
                return target_dir

            if self.settings.offline:
                raise DownloadError(
                    f"Cannot download {url} in offline mode",
                    code="offline_mode",
                    stage=PipelineStage.FETCH,
                    context={"url": url},
                )

            if artifact is None:
                artifact = CachedArtifact(
                    url=url,
                    cache_dir=str(target_dir),
                    filename=filename,
                    state=ArtifactState.PENDING.value,
                )
                self.session.add(artifact)
            else:
                artifact.state = ArtifactState.PENDING.value
            self.session.commit()

            try:
                result = self._download(url, target_path, expected, algorithm)
            except PipelineError:
                artifact.mark_broken()
                self.session.commit()
                raise

            now = datetime.now(timezone.utc)
            artifact.checksum = result.checksum
            artifact.hash_algorithm = algorithm
            artifact.verified = expected is not None
            artifact.size_bytes = result.size_bytes
            artifact.fetched_at = now
            artifact.last_used_at = now
            artifact.mark_ready()
            self.session.commit()
            return target_dir

    def _download(
        self,
        url: str,
        target_path: Path,
        expected: str | None,
        algorithm: str,
    ) -> DownloadResult:
        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            # Transfer to a temp file, then move into place
            with tempfile.NamedTemporaryFile(
                dir=target_path.parent, suffix=".tmp", delete=False
            ) as tmp_file:
                tmp_path = Path(tmp_file.name)
        except OSError as e:
            raise DownloadError(
                f"Cannot create cache directory {target_path.parent}: {e}",
                code="os_error",
                stage=PipelineStage.FETCH,
                context={"url": url, "path": str(target_path.parent)},
            ) from e

        try:
            result = download_file(
                self.client,
                url,
                tmp_path,
                expected_checksum=expected,
                hash_algorithm=algorithm,
                timeout=self.settings.download_timeout,
            )
            os.replace(tmp_path, target_path)
        except PipelineError as e:
            tmp_path.unlink(missing_ok=True)
            logger.error("Failed to fetch %s: %s", url, e)
            raise
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise DownloadError(
                f"Failed moving {tmp_path} to {target_path}: {e}",
                code="os_error",
                stage=PipelineStage.FETCH,
                context={"url": url, "path": str(target_path)},
            ) from e
        return result

    def _expected_checksum(self, url: str, checksum_url: str) -> str:
        """Read the digest for ``url`` from its (cached) manifest."""
        manifest_path = cache_dir_for(
            self.settings.cache_dir, checksum_url
        ) / url_basename(checksum_url)
        if not manifest_path.is_file():
            self.fetch(checksum_url)

        try:
            content = manifest_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise DownloadError(
                f"Cannot read checksum manifest {manifest_path}: {e}",
                code="os_error",
                stage=PipelineStage.FETCH,
                context={"url": checksum_url, "path": str(manifest_path)},
            ) from e

        expected = parse_checksum_manifest(content, url_basename(url))
        if expected is None:
            raise HashMismatchError(
                f"No checksum for {url_basename(url)} in {checksum_url}",
                code="checksum_not_found",
                stage=PipelineStage.FETCH,
                context={"url": url, "checksum_url": checksum_url},
            )
        return expected

    def _is_reusable(
        self,
        artifact: CachedArtifact,
        path: Path,
        expected: str | None,
        algorithm: str,
    ) -> bool:
        if not artifact.is_ready() or not path.is_file():
            return False
        if expected is None:
            # Unverified files are refreshed unless the network is off-limits
            return self.settings.offline
        return (
            artifact.verified
            and artifact.hash_algorithm == algorithm
            and artifact.checksum == expected.lower()
        )


@contextmanager
def open_fetcher(
    settings: Settings | None = None,
    client: httpx.Client | None = None,
) -> Iterator[Fetcher]:
    """Open a Fetcher backed by its own database session.

    Each fetch commits its own index changes; an error leaving the block
    only rolls back uncommitted work.

    Args:
        settings: Application settings.
        client: HTTPX client (creates one if not provided).

    Yields:
        Fetcher instance.
    """
    if settings is None:
        settings = get_settings()

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    with get_session(get_session_factory(engine)) as session:
        with Fetcher(session, settings, client) as fetcher:
            yield fetcher


def list_artifacts(
    session: Session,
    state: ArtifactState | None = None,
) -> list[CachedArtifact]:
    """List cached downloads.

    Args:
        session: Database session.
        state: Filter by state (optional).

    Returns:
        List of CachedArtifact instances ordered by URL.
    """
    stmt = select(CachedArtifact)
    if state is not None:
        stmt = stmt.where(CachedArtifact.state == state.value)
    stmt = stmt.order_by(CachedArtifact.url)
    return list(session.execute(stmt).scalars().all())


def prune_artifacts(
    session: Session,
    broken_only: bool = True,
    dry_run: bool = False,
) -> list[str]:
    """Remove cached downloads from disk and from the index.

    Args:
        session: Database session.
        broken_only: Only prune broken artifacts (safe prune).
        dry_run: If True, only report what would be pruned.

    Returns:
        URLs of artifacts that were/would be pruned.
    """
    stmt = select(CachedArtifact)
    if broken_only:
        stmt = stmt.where(CachedArtifact.state == ArtifactState.BROKEN.value)

    pruned: list[str] = []
    for artifact in session.execute(stmt).scalars().all():
        if dry_run:
            logger.info("[DRY RUN] Would prune %s", artifact.url)
            pruned.append(artifact.url)
            continue

        path = Path(artifact.cache_dir) / artifact.filename
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Failed to prune %s: %s", path, e)
            continue

        session.delete(artifact)
        pruned.append(artifact.url)
        logger.info("Pruned %s", artifact.url)

    if not dry_run:
        session.flush()

    return pruned


def get_cache_size(cache_dir: Path) -> int:
    """Calculate total size of the cache in bytes."""
    total = 0
    if cache_dir.exists():
        for path in cache_dir.rglob("*"):
            if path.is_file() and not path.is_symlink():
                total += path.stat().st_size
    return total


def get_cache_info(settings: Settings | None = None) -> dict[str, object]:
    """Get information about the download cache.

    Args:
        settings: Application settings.

    Returns:
        Dictionary with cache information.
    """
    if settings is None:
        settings = get_settings()

    downloads_dir = settings.cache_dir / "downloads"
    total_size = get_cache_size(downloads_dir)

    return {
        "cache_dir": str(settings.cache_dir),
        "total_size_bytes": total_size,
        "total_size_human": _format_size(total_size),
        "exists": settings.cache_dir.exists(),
    }


def _format_size(size_bytes: int) -> str:
    """Format bytes as human-readable size."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


__all__ = [
    "Fetcher",
    "artifact_lock",
    "cache_dir_for",
    "get_cache_info",
    "get_cache_size",
    "list_artifacts",
    "open_fetcher",
    "prune_artifacts",
]
