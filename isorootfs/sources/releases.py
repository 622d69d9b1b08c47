"""Latest-release discovery.

Some distributions publish rolling images only as GitHub release assets.
This module looks up the newest release of a repository and returns the
download URL of its ISO asset so the descriptor can be resolved like any
fixed-URL source.
"""

from __future__ import annotations

import logging

import httpx

from isorootfs.sources.schema import SourceDescriptor

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"

# Timeout for API requests (seconds)
API_TIMEOUT = 30


class ReleaseLookupError(Exception):
    """Raised when the latest release or its asset cannot be determined."""

    def __init__(self, message: str, code: str = "release_lookup_error") -> None:
        """Initialize ReleaseLookupError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


def find_latest_release_asset(
    client: httpx.Client,
    owner: str,
    repo: str,
    suffix: str = ".iso",
    api_url: str = GITHUB_API_BASE,
    timeout: float = API_TIMEOUT,
) -> str:
    """Return the download URL of the latest release asset with a suffix.

    When several assets match, the last one listed wins.

    Args:
        client: HTTPX client instance.
        owner: Repository owner.
        repo: Repository name.
        suffix: Asset file name suffix to look for.
        api_url: Base URL of the GitHub REST API.
        timeout: Request timeout in seconds.

    Returns:
        Browser download URL of the matching asset.

    Raises:
        ReleaseLookupError: If the API request fails or no asset matches.
    """
    url = f"{api_url.rstrip('/')}/repos/{owner}/{repo}/releases/latest"
    logger.debug("Looking up latest release at %s", url)

    try:
        response = client.get(
            url,
            timeout=timeout,
            headers={"Accept": "application/vnd.github+json"},
        )
        response.raise_for_status()
        release = response.json()
    except httpx.HTTPStatusError as e:
        raise ReleaseLookupError(
            f"HTTP error fetching latest release of {owner}/{repo}: "
            f"{e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.RequestError as e:
        raise ReleaseLookupError(
            f"Network error fetching latest release of {owner}/{repo}: {e}",
            code="network_error",
        ) from e
    except ValueError as e:
        raise ReleaseLookupError(
            f"Invalid release data for {owner}/{repo}: {e}",
            code="invalid_response",
        ) from e

    asset_url = ""
    for asset in release.get("assets") or []:
        name = asset.get("name") or ""
        if name.endswith(suffix):
            asset_url = asset.get("browser_download_url") or ""

    if not asset_url:
        raise ReleaseLookupError(
            f"No '{suffix}' asset in latest release "
            f"{release.get('tag_name', '?')} of {owner}/{repo}",
            code="asset_not_found",
        )

    logger.info(
        "Latest release %s of %s/%s: %s",
        release.get("tag_name", "?"),
        owner,
        repo,
        asset_url,
    )
    return asset_url


def apply_latest_release(
    client: httpx.Client,
    descriptor: SourceDescriptor,
    api_url: str = GITHUB_API_BASE,
) -> SourceDescriptor:
    """Return a copy of the descriptor pointing at the latest release asset.

    Descriptors without ``latest_release`` are returned unchanged.
    """
    if descriptor.latest_release is None:
        return descriptor

    release = descriptor.latest_release
    asset_url = find_latest_release_asset(
        client,
        release.owner,
        release.repo,
        suffix=release.asset_suffix,
        api_url=api_url,
    )
    return descriptor.model_copy(update={"url": asset_url, "image_name": None})


__all__ = [
    "GITHUB_API_BASE",
    "ReleaseLookupError",
    "apply_latest_release",
    "find_latest_release_asset",
]
