"""Source descriptor module.

This module handles:
- Validating source descriptors loaded from YAML/JSON files
- Resolving descriptors into download plans under a verification policy
- Discovering images published as latest-release assets
"""

from isorootfs.sources.io import load_descriptor
from isorootfs.sources.releases import (
    ReleaseLookupError,
    apply_latest_release,
    find_latest_release_asset,
)
from isorootfs.sources.resolver import (
    hash_algorithm_for_manifest,
    is_transport_encrypted,
    resolve_source,
)
from isorootfs.sources.schema import LatestReleaseSchema, SourceDescriptor

__all__ = [
    "LatestReleaseSchema",
    "ReleaseLookupError",
    "SourceDescriptor",
    "apply_latest_release",
    "find_latest_release_asset",
    "hash_algorithm_for_manifest",
    "is_transport_encrypted",
    "load_descriptor",
    "resolve_source",
]
