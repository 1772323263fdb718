"""
Latest-release lookups against the GitHub releases API.
"""

from __future__ import annotations

import enum
import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

from . import __version__
from .config import DEFAULT_GITHUB_API
from .versions import extract_version

logger = logging.getLogger(__name__)

USER_AGENT = f"binaudit/{__version__}"


class CollectionError(Exception):
    """Raised when version collection fails."""
    pass


class NetworkError(CollectionError):
    """Raised when network requests fail."""

    def __init__(self, message: str, timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message)


class HTTPStatusError(NetworkError):
    """Raised when the server answers with a non-success status."""

    def __init__(self, url: str, status: int, reason: str = ""):
        self.url = url
        self.status = status
        super().__init__(f"HTTP {status} {reason} for {url}".strip())


class ParseError(CollectionError):
    """Raised when response parsing fails."""
    pass


class RemoteState(enum.Enum):
    FOUND = "found"
    UNAVAILABLE = "unavailable"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RemoteStatus:
    """
    Outcome of a latest-release lookup.

    Attributes:
        state: Lookup outcome
        tag: Raw release tag (e.g., "v1.4.0")
        version: Tag passed through the version extractor (e.g., "1.4.0")
        detail: Failure reason for logs and JSON output
    """
    state: RemoteState
    tag: str = ""
    version: str | None = None
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.state is RemoteState.FOUND


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return True
    reason = getattr(exc, "reason", None)
    return isinstance(reason, (socket.timeout, TimeoutError))


def github_headers(token: str | None = None) -> dict[str, str]:
    """Headers for GitHub REST API requests."""
    headers = {
        "Accept": "application/vnd.github+json",
        "User-Agent": USER_AGENT,
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def http_get(url: str, timeout: float = 5, headers: dict[str, str] | None = None) -> bytes:
    """Perform HTTP GET request.

    Args:
        url: URL to fetch
        timeout: Timeout in seconds
        headers: Optional HTTP headers

    Returns:
        Response body as bytes

    Raises:
        HTTPStatusError: If the server returns a non-success status
        NetworkError: If the request fails or times out
    """
    default_headers = {"User-Agent": USER_AGENT}
    if headers:
        default_headers.update(headers)

    req = urllib.request.Request(url, headers=default_headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return response.read()
    except urllib.error.HTTPError as e:
        raise HTTPStatusError(url, e.code, str(e.reason or "")) from e
    except (urllib.error.URLError, OSError) as e:
        timed_out = _is_timeout(e)
        raise NetworkError(f"Failed to fetch {url}: {e}", timed_out=timed_out) from e
    except http.client.HTTPException as e:
        # Malformed status line or truncated body
        raise NetworkError(f"Failed to fetch {url}: {e!r}") from e


def fetch_latest_release(
    repository: str,
    timeout: float = 5,
    token: str | None = None,
    api_url: str = DEFAULT_GITHUB_API,
) -> dict[str, Any]:
    """Fetch the latest published release of a repository.

    Args:
        repository: "owner/project"
        timeout: Request timeout in seconds
        token: Optional GitHub token
        api_url: GitHub REST API base URL

    Returns:
        Decoded release payload

    Raises:
        NetworkError: On network or HTTP failure
        ParseError: If the payload is not a JSON object
    """
    url = f"{api_url}/repos/{repository}/releases/latest"
    logger.debug(f"Fetching latest release: {url}")

    body = http_get(url, timeout=timeout, headers=github_headers(token))
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Invalid JSON from {url}: {e}") from e

    if not isinstance(data, dict):
        raise ParseError(f"Unexpected release payload from {url}")
    return data


def probe_remote(
    repository: str,
    timeout: float = 5,
    token: str | None = None,
    api_url: str = DEFAULT_GITHUB_API,
) -> RemoteStatus:
    """Look up the latest published version of a repository.

    One request, no retries. Never raises: any failure (including rate
    limiting) is reported as UNAVAILABLE or TIMED_OUT for this entry only.

    Args:
        repository: "owner/project"
        timeout: Request timeout in seconds
        token: Optional GitHub token
        api_url: GitHub REST API base URL

    Returns:
        RemoteStatus
    """
    try:
        data = fetch_latest_release(repository, timeout=timeout, token=token, api_url=api_url)
    except NetworkError as e:
        if e.timed_out:
            logger.debug(f"GitHub {repository}: timed out after {timeout}s")
            return RemoteStatus(state=RemoteState.TIMED_OUT, detail=f"timed out after {timeout}s")
        if isinstance(e, HTTPStatusError) and e.status in (403, 429):
            logger.warning(f"GitHub {repository}: rate limited (HTTP {e.status})")
        else:
            logger.debug(f"GitHub {repository}: {e}")
        return RemoteStatus(state=RemoteState.UNAVAILABLE, detail=str(e))
    except ParseError as e:
        logger.debug(f"GitHub {repository}: {e}")
        return RemoteStatus(state=RemoteState.UNAVAILABLE, detail=str(e))

    tag = data.get("tag_name")
    if not isinstance(tag, str) or not tag:
        logger.debug(f"GitHub {repository}: release payload has no tag_name")
        return RemoteStatus(state=RemoteState.UNAVAILABLE, detail="release has no tag_name")

    version = extract_version(tag)
    logger.debug(f"GitHub {repository}: {tag} ({version or 'no semver'})")
    return RemoteStatus(state=RemoteState.FOUND, tag=tag, version=version)


def get_github_rate_limit(
    timeout: float = 5,
    token: str | None = None,
    api_url: str = DEFAULT_GITHUB_API,
) -> dict[str, Any]:
    """Get GitHub API rate limit status.

    Returns:
        Dictionary with rate limit info or empty dict on failure
    """
    try:
        data = json.loads(http_get(f"{api_url}/rate_limit", timeout=timeout, headers=github_headers(token)))
        core = data.get("resources", {}).get("core", {})

        return {
            "limit": core.get("limit", 0),
            "remaining": core.get("remaining", 0),
            "used": core.get("used", 0),
            "reset": core.get("reset", 0),
        }
    except (CollectionError, ValueError, AttributeError) as e:
        logger.debug(f"Failed to get GitHub rate limit: {e}")
        return {}
