"""
Local binary detection and version probing.

A binary counts as installed when a file with its executable name is a direct
child of the target directory. Installed binaries are run with their version
argument to read the reported version.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .common import subprocess_env
from .config import ConfigurationError
from .manifest import ManifestEntry
from .versions import extract_version

logger = logging.getLogger(__name__)

ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


class LocalState(enum.Enum):
    ABSENT = "absent"
    PRESENT = "present"
    UNKNOWN_VERSION = "unknown_version"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class LocalStatus:
    """
    Outcome of probing one binary in the target directory.

    Attributes:
        state: Probe outcome
        version: Extracted version (PRESENT only)
        path: Path of the probed executable (empty when absent)
        detail: Why the version is unknown, for logs and JSON output
    """
    state: LocalState
    version: str | None = None
    path: str = ""
    detail: str = ""

    @property
    def installed(self) -> bool:
        return self.state is not LocalState.ABSENT


def scan_target_dir(target_dir: str | Path) -> frozenset[str]:
    """
    Snapshot the names of the direct children of the target directory.

    Args:
        target_dir: Directory holding managed binaries

    Returns:
        Frozen set of file names (empty if the directory does not exist)

    Raises:
        ConfigurationError: If the directory exists but cannot be listed
    """
    try:
        with os.scandir(target_dir) as it:
            names = frozenset(entry.name for entry in it)
    except FileNotFoundError:
        logger.debug(f"Target directory {target_dir} does not exist yet")
        return frozenset()
    except NotADirectoryError as e:
        raise ConfigurationError(f"Target path {target_dir} is not a directory") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read {target_dir}: {e}") from e

    logger.debug(f"Found {len(names)} entries in {target_dir}")
    return names


def _clean_output(output: str) -> str:
    return "\n".join(ANSI_ESCAPE_RE.sub("", line.strip()) for line in output.splitlines())


def probe_local(
    entry: ManifestEntry,
    installed: frozenset[str] | set[str],
    target_dir: str | Path,
    timeout: float,
) -> LocalStatus:
    """
    Determine whether an entry is installed and which version it reports.

    Never raises for per-binary problems: a broken, non-executable or hung
    binary yields UNKNOWN_VERSION or TIMED_OUT so the other entries can still be
    reconciled.

    Args:
        entry: Manifest entry to probe
        installed: Snapshot from scan_target_dir()
        target_dir: Directory holding managed binaries
        timeout: Seconds to wait for the version command

    Returns:
        LocalStatus
    """
    if entry.executable not in installed:
        return LocalStatus(state=LocalState.ABSENT)

    path = os.path.join(str(target_dir), entry.executable)
    args = [path, entry.version_arg] if entry.version_arg else [path]

    try:
        proc = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,  # Some tools read stdin when given no args
            timeout=timeout,
            check=False,
            env=subprocess_env(),
        )
    except subprocess.TimeoutExpired:
        logger.debug(f"{entry.name}: '{' '.join(args)}' timed out after {timeout}s")
        return LocalStatus(
            state=LocalState.TIMED_OUT,
            path=path,
            detail=f"timed out after {timeout}s",
        )
    except OSError as e:
        # Not executable, exec format error, dangling symlink, ...
        logger.debug(f"{entry.name}: cannot run {path}: {e}")
        return LocalStatus(state=LocalState.UNKNOWN_VERSION, path=path, detail=str(e))

    if proc.returncode != 0:
        logger.debug(f"{entry.name}: '{' '.join(args)}' exited with {proc.returncode}")
        return LocalStatus(
            state=LocalState.UNKNOWN_VERSION,
            path=path,
            detail=f"exit code {proc.returncode}",
        )

    stdout = _clean_output(proc.stdout.decode("utf-8", errors="replace"))
    version = extract_version(stdout)
    if version is None:
        # A few tools print their version on stderr
        stderr = _clean_output(proc.stderr.decode("utf-8", errors="replace"))
        version = extract_version(stderr)

    if version is None:
        logger.debug(f"{entry.name}: no version in output {stdout[:80]!r}")
        return LocalStatus(
            state=LocalState.UNKNOWN_VERSION,
            path=path,
            detail="no version in output",
        )

    return LocalStatus(state=LocalState.PRESENT, version=version, path=path)
