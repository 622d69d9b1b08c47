"""Download cache module.

This module handles:
- Streaming downloads with hash verification against checksum manifests
- A content-addressed cache directory per remote directory
- Cache index records so verified files are not downloaded twice
- Locking for concurrent download prevention
"""

from isorootfs.fetch.download import (
    DownloadResult,
    download_file,
    parse_checksum_manifest,
)
from isorootfs.fetch.models import CachedArtifact
from isorootfs.fetch.service import (
    Fetcher,
    artifact_lock,
    cache_dir_for,
    get_cache_info,
    list_artifacts,
    prune_artifacts,
)

__all__ = [
    # Models
    "CachedArtifact",
    # Download module
    "DownloadResult",
    "download_file",
    "parse_checksum_manifest",
    # Service module
    "Fetcher",
    "artifact_lock",
    "cache_dir_for",
    "get_cache_info",
    "list_artifacts",
    "prune_artifacts",
]
