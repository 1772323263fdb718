"""
Version extraction and comparison.

The same extractor normalizes both local ``--version`` output and remote
release tags, so "v1.4.0" from a release and "tool 1.4.0 (abc123)" from a
binary compare equal.
"""

from __future__ import annotations

import re

from packaging import version as pkg_version

# Placeholder shown for unknown or not-applicable versions
SENTINEL = "-"

VERSION_RE = re.compile(r"\d+\.\d+\.\d+")


def extract_version(text: str | bytes | None) -> str | None:
    """Extract the first MAJOR.MINOR.PATCH token from free text.

    Args:
        text: Command output or release tag (bytes are decoded leniently)

    Returns:
        Version (e.g., "2.10.4") or None if no such token exists
    """
    if not text:
        return None
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")

    m = VERSION_RE.search(text)
    return m.group(0) if m else None


def display(version: str | None) -> str:
    """Version for display, or the sentinel when unknown."""
    return version if version else SENTINEL


def _numeric_key(v: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", v))


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two version strings.

    Args:
        v1: First version
        v2: Second version

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2
    """
    try:
        ver1 = pkg_version.parse(v1)
        ver2 = pkg_version.parse(v2)
    except pkg_version.InvalidVersion:
        # Fall back to comparing the numeric components
        ver1, ver2 = _numeric_key(v1), _numeric_key(v2)  # type: ignore[assignment]

    if ver1 < ver2:
        return -1
    elif ver1 > ver2:
        return 1
    return 0


def is_outdated(local: str | None, latest: str | None) -> bool:
    """True when both versions are known and the local one is older."""
    if not local or not latest:
        return False
    return compare_versions(local, latest) < 0
