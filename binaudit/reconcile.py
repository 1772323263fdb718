"""
Reconciliation of the manifest against the target directory.

For every manifest entry, combines the local probe and (optionally) the
latest-release lookup into a StatusRecord. Entries are probed independently on
a bounded thread pool; the resulting report always holds exactly one record
per entry, in manifest order.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable

from .collectors import RemoteState, RemoteStatus, probe_remote
from .config import Settings
from .detection import LocalState, LocalStatus, probe_local
from .manifest import Manifest, ManifestEntry
from .versions import display, is_outdated

logger = logging.getLogger(__name__)

LocalProbe = Callable[[ManifestEntry], LocalStatus]
RemoteProbe = Callable[[ManifestEntry], RemoteStatus]

# Display states
NOT_INSTALLED = "NOT INSTALLED"
UP_TO_DATE = "UP-TO-DATE"
OUTDATED = "OUTDATED"
INSTALLED = "INSTALLED"
UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class StatusRecord:
    """
    Reconciled status of one manifest entry.

    Attributes:
        name: Manifest entry name
        installed: Whether the executable is present in the target directory
        local_version: Version reported by the executable, if it could be read
        latest_version: Latest published version, if looked up successfully
        remote_checked: Whether a latest-release lookup was requested
        detail: Reason a version is unknown (probe/lookup failure), if any
    """
    name: str
    installed: bool
    local_version: str | None = None
    latest_version: str | None = None
    remote_checked: bool = False
    detail: str = ""

    @property
    def state(self) -> str:
        """Summary state: NOT INSTALLED, UP-TO-DATE, OUTDATED, INSTALLED or UNKNOWN."""
        if not self.installed:
            return NOT_INSTALLED
        if not self.local_version:
            return UNKNOWN
        if not self.remote_checked:
            return INSTALLED
        if not self.latest_version:
            return UNKNOWN
        if is_outdated(self.local_version, self.latest_version):
            return OUTDATED
        return UP_TO_DATE

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization (unknowns as the sentinel)."""
        return {
            "name": self.name,
            "installed": self.installed,
            "state": self.state,
            "version": display(self.local_version),
            "latest": display(self.latest_version) if self.remote_checked else None,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class Report:
    """
    Result of one reconciliation run.

    Attributes:
        records: One record per manifest entry, in manifest order
        include_remote: Whether latest-release lookups were performed
        duration_seconds: Wall-clock time spent probing
    """
    records: tuple[StatusRecord, ...]
    include_remote: bool = False
    duration_seconds: float = 0.0

    def __iter__(self):
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def names(self) -> list[str]:
        return [r.name for r in self.records]

    def get(self, name: str) -> StatusRecord | None:
        for record in self.records:
            if record.name == name:
                return record
        return None

    def missing(self) -> list[StatusRecord]:
        return [r for r in self.records if not r.installed]

    def outdated(self) -> list[StatusRecord]:
        return [r for r in self.records if r.state == OUTDATED]

    def summary_counts(self) -> dict[str, int]:
        """Counts per state plus the total."""
        counts = {"total": len(self.records), NOT_INSTALLED: 0, OUTDATED: 0, UP_TO_DATE: 0, INSTALLED: 0, UNKNOWN: 0}
        for record in self.records:
            counts[record.state] += 1
        return counts

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "include_remote": self.include_remote,
            "duration_seconds": self.duration_seconds,
            "binaries": [r.to_dict() for r in self.records],
        }


def to_status_record(
    entry: ManifestEntry,
    local: LocalStatus,
    remote: RemoteStatus | None = None,
) -> StatusRecord:
    """
    Combine probe outcomes into a StatusRecord.

    Args:
        entry: Manifest entry
        local: Local probe outcome
        remote: Latest-release lookup outcome, or None if not requested

    Returns:
        StatusRecord
    """
    details = []
    if local.state in (LocalState.UNKNOWN_VERSION, LocalState.TIMED_OUT) and local.detail:
        details.append(local.detail)

    latest = None
    if remote is not None:
        if remote.state is RemoteState.FOUND:
            latest = remote.version
        elif remote.detail:
            details.append(f"latest: {remote.detail}")

    return StatusRecord(
        name=entry.name,
        installed=local.installed,
        local_version=local.version if local.state is LocalState.PRESENT else None,
        latest_version=latest,
        remote_checked=remote is not None,
        detail="; ".join(details),
    )


def _probe_entry(
    entry: ManifestEntry,
    local_probe: LocalProbe,
    remote_probe: RemoteProbe | None,
) -> StatusRecord:
    local = local_probe(entry)
    remote = None
    if remote_probe is not None:
        try:
            remote = remote_probe(entry)
        except Exception as e:
            # The local result stands on its own; only the latest column is lost
            logger.warning(f"Latest-version lookup for {entry.name} failed: {e!r}")
            remote = RemoteStatus(state=RemoteState.UNAVAILABLE, detail=f"lookup failed: {e!r}")
    return to_status_record(entry, local, remote)


def _failed_record(
    entry: ManifestEntry,
    installed: frozenset[str] | set[str],
    include_remote: bool,
    error: BaseException,
) -> StatusRecord:
    return StatusRecord(
        name=entry.name,
        installed=entry.executable in installed,
        remote_checked=include_remote,
        detail=f"probe failed: {error}",
    )


def reconcile(
    manifest: Manifest,
    installed: frozenset[str] | set[str],
    settings: Settings,
    include_remote: bool = False,
    local_probe: LocalProbe | None = None,
    remote_probe: RemoteProbe | None = None,
) -> Report:
    """
    Reconcile every manifest entry against the installed set.

    Args:
        manifest: Declared binaries
        installed: Snapshot of the target directory (see scan_target_dir)
        settings: Runtime settings (target directory, timeouts, workers)
        include_remote: Also look up the latest published version of each entry
        local_probe: Override for the local probe (defaults to probe_local)
        remote_probe: Override for the remote probe (defaults to probe_remote)

    Returns:
        Report with exactly one record per manifest entry, in manifest order
    """
    start_time = time.time()
    target_dir = Path(settings.target_dir)

    if local_probe is None:
        local_probe = partial(
            _default_local_probe,
            installed=installed,
            target_dir=target_dir,
            timeout=settings.probe_timeout_seconds,
        )
    if include_remote and remote_probe is None:
        remote_probe = partial(_default_remote_probe, settings=settings)
    if not include_remote:
        remote_probe = None

    entries = list(manifest)
    results: dict[str, StatusRecord] = {}

    if entries:
        max_workers = min(settings.max_workers, len(entries))
        logger.debug(f"Reconciling {len(entries)} binaries with {max_workers} workers (remote={include_remote})")

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_entry = {
                executor.submit(_probe_entry, entry, local_probe, remote_probe): entry
                for entry in entries
            }
            for future in as_completed(future_to_entry):
                entry = future_to_entry[future]
                try:
                    results[entry.name] = future.result()
                except Exception as e:
                    # Keep the row; a probe bug must not drop an entry from the report
                    logger.error(f"Probe for {entry.name} failed unexpectedly: {e}")
                    results[entry.name] = _failed_record(entry, installed, include_remote, e)

    records = tuple(results[entry.name] for entry in entries)
    duration = time.time() - start_time
    logger.debug(f"Reconciled {len(records)} binaries in {duration:.2f}s")

    return Report(records=records, include_remote=include_remote, duration_seconds=duration)


def _default_local_probe(
    entry: ManifestEntry,
    installed: frozenset[str] | set[str],
    target_dir: Path,
    timeout: float,
) -> LocalStatus:
    return probe_local(entry, installed, target_dir, timeout)


def _default_remote_probe(entry: ManifestEntry, settings: Settings) -> RemoteStatus:
    return probe_remote(
        entry.repository,
        timeout=settings.http_timeout_seconds,
        token=settings.github_token,
        api_url=settings.github_api_url,
    )
