"""HTTP transfer helpers.

This module handles:
- Streaming downloads with on-the-fly hashing
- Checksum manifest parsing
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from isorootfs.errors import DownloadError, HashMismatchError
from isorootfs.types import PipelineStage

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass
class DownloadResult:
    """Result of a single file transfer."""

    path: Path
    checksum: str
    hash_algorithm: str
    size_bytes: int


def new_hash(algorithm: str) -> hashlib._Hash:
    """Return a hashlib object for an algorithm name.

    Raises:
        ValueError: If the algorithm is not supported by hashlib.
    """
    return hashlib.new(algorithm)


def parse_checksum_manifest(content: str, filename: str) -> str | None:
    """Find the checksum for a file in a sha*sum-style manifest.

    Accepts both ``<digest>  <name>`` and binary-mode ``<digest> *<name>``
    lines, and entries prefixed with ``./``.

    Args:
        content: Manifest text.
        filename: File name to look up.

    Returns:
        Lower-case hex digest, or None if not found.
    """
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split(maxsplit=1)
        if len(parts) != 2:
            continue

        checksum, name = parts
        name = name.lstrip("*").strip()
        if name.startswith("./"):
            name = name[2:]

        if name == filename:
            return checksum.lower()

    return None


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    hash_algorithm: str = "sha256",
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file, hashing it while it streams.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected hex digest (optional).
        hash_algorithm: hashlib algorithm used for the digest.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If the transfer or the disk write fails.
        HashMismatchError: If the digest does not match.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    digest = new_hash(hash_algorithm)
    total_bytes = 0

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    digest.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
            stage=PipelineStage.FETCH,
            context={"url": url},
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
            stage=PipelineStage.FETCH,
            context={"url": url},
        ) from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
            stage=PipelineStage.FETCH,
            context={"url": url},
        ) from e
    except OSError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Failed writing {dest_path}: {e}",
            code="os_error",
            stage=PipelineStage.FETCH,
            context={"url": url, "path": str(dest_path)},
        ) from e

    computed_checksum = digest.hexdigest()

    if expected_checksum and computed_checksum != expected_checksum.lower():
        # Remove the corrupted file
        dest_path.unlink(missing_ok=True)
        raise HashMismatchError(
            f"Checksum mismatch for {url}: "
            f"expected {expected_checksum}, got {computed_checksum}",
            stage=PipelineStage.FETCH,
            context={"url": url},
        )

    logger.info(
        "Downloaded %s (%d bytes, %s: %s)",
        dest_path.name,
        total_bytes,
        hash_algorithm,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        path=dest_path,
        checksum=computed_checksum,
        hash_algorithm=hash_algorithm,
        size_bytes=total_bytes,
    )


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "DownloadResult",
    "download_file",
    "new_hash",
    "parse_checksum_manifest",
]
