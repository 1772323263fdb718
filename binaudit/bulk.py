"""
Fetch orchestration: install missing, named or outdated binaries.

Installs always run sequentially in manifest order, since every install writes
into the same target directory.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

from .config import ConfigurationError, Settings, ensure_target_dir
from .detection import scan_target_dir
from .installer import InstallError, Installer, InstallResult
from .manifest import Manifest, ManifestEntry
from .reconcile import LocalProbe, RemoteProbe, reconcile

logger = logging.getLogger(__name__)

NOTHING_MISSING = "All binaries are already present."
NOTHING_OUTDATED = "All binaries are up to date."


class UnknownBinaryError(ConfigurationError):
    """The requested binary is not declared in the manifest."""

    def __init__(self, name: str, known: Sequence[str] = ()):
        self.name = name
        message = f"Unknown binary '{name}'"
        if known:
            message += f" (declared: {', '.join(known)})"
        super().__init__(message)


@dataclass(frozen=True)
class FetchOutcome:
    """
    Result of fetching one binary.

    Attributes:
        name: Manifest entry name
        success: Whether the executable is now in the target directory
        error: Error message (failures only)
        reason: InstallError reason category (failures only)
        result: Installer result (successes only)
    """
    name: str
    success: bool
    error: str = ""
    reason: str = ""
    result: InstallResult | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "success": self.success,
            "error": self.error,
            "reason": self.reason,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass(frozen=True)
class OutcomeSummary:
    """
    Result of a multi-binary fetch.

    Attributes:
        requested: Names selected for fetching, in manifest order
        succeeded: Successful fetches
        failed: Failed fetches
        not_attempted: Names skipped after an earlier failure (fail-fast only)
        already_present: Names that needed no action
        duration_seconds: Total execution time
        noop_message: Message shown when nothing needed fetching
    """
    requested: tuple[str, ...]
    succeeded: tuple[FetchOutcome, ...] = ()
    failed: tuple[FetchOutcome, ...] = ()
    not_attempted: tuple[str, ...] = ()
    already_present: tuple[str, ...] = ()
    duration_seconds: float = 0.0
    noop_message: str = NOTHING_MISSING

    @property
    def noop(self) -> bool:
        return not self.requested

    @property
    def ok(self) -> bool:
        return not self.failed and not self.not_attempted

    def message(self) -> str:
        """One-line human-readable summary."""
        if self.noop:
            return self.noop_message
        parts = [f"{len(self.succeeded)} installed"]
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        if self.not_attempted:
            parts.append(f"{len(self.not_attempted)} not attempted")
        return f"{', '.join(parts)} ({self.duration_seconds:.1f}s)"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "requested": list(self.requested),
            "succeeded": [o.to_dict() for o in self.succeeded],
            "failed": [o.to_dict() for o in self.failed],
            "not_attempted": list(self.not_attempted),
            "already_present": list(self.already_present),
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ProgressTracker:
    """
    Thread-safe progress tracking for fetch operations.

    Attributes:
        _lock: Threading lock for thread-safe updates
        _progress: Progress state for each binary
        _callbacks: Callbacks to invoke on progress updates
    """
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _progress: dict[str, dict] = field(default_factory=dict)
    _callbacks: list[Callable[[str, str, str], None]] = field(default_factory=list)

    def register_callback(self, callback: Callable[[str, str, str], None]) -> None:
        """Register a callback for progress updates."""
        with self._lock:
            self._callbacks.append(callback)

    def update(self, name: str, status: str, message: str = "") -> None:
        """
        Update progress for a binary.

        Args:
            name: Manifest entry name
            status: Status ("pending", "in_progress", "success", "failed", "skipped")
            message: Optional status message
        """
        with self._lock:
            self._progress[name] = {
                "status": status,
                "message": message,
                "timestamp": time.time(),
            }
            for callback in self._callbacks:
                callback(name, status, message)

    def get_progress(self, name: str) -> dict | None:
        with self._lock:
            return self._progress.get(name)

    def get_summary(self) -> dict[str, int]:
        """Get summary counts by status."""
        with self._lock:
            summary = {"pending": 0, "in_progress": 0, "success": 0, "failed": 0, "skipped": 0}
            for progress in self._progress.values():
                status = progress.get("status", "pending")
                summary[status] = summary.get(status, 0) + 1
            return summary


def _install_entry(
    entry: ManifestEntry,
    settings: Settings,
    installer: Installer,
    progress: ProgressTracker | None = None,
) -> FetchOutcome:
    if progress:
        progress.update(entry.name, "in_progress", f"Fetching {entry.repository}")

    try:
        result = installer.install(entry.repository, settings.target_path, entry.executable)
    except InstallError as e:
        logger.error(f"Failed to install {entry.name} from {entry.repository}: {e.message}")
        if progress:
            progress.update(entry.name, "failed", e.message)
        return FetchOutcome(name=entry.name, success=False, error=e.message, reason=e.reason)

    logger.info(f"Installed {entry.name} to {result.path}")
    if progress:
        progress.update(entry.name, "success", result.tag)
    return FetchOutcome(name=entry.name, success=True, result=result)


def _install_sequentially(
    entries: Sequence[ManifestEntry],
    settings: Settings,
    installer: Installer,
    fail_fast: bool,
    already_present: Sequence[str],
    progress: ProgressTracker | None,
    noop_message: str,
) -> OutcomeSummary:
    start_time = time.time()
    requested = tuple(entry.name for entry in entries)

    if not entries:
        return OutcomeSummary(requested=(), already_present=tuple(already_present), noop_message=noop_message)

    ensure_target_dir(settings)

    if progress:
        for entry in entries:
            progress.update(entry.name, "pending")

    succeeded: list[FetchOutcome] = []
    failed: list[FetchOutcome] = []
    not_attempted: list[str] = []

    for index, entry in enumerate(entries):
        outcome = _install_entry(entry, settings, installer, progress)
        if outcome.success:
            succeeded.append(outcome)
            continue

        failed.append(outcome)
        if fail_fast:
            not_attempted = [e.name for e in entries[index + 1:]]
            if progress:
                for name in not_attempted:
                    progress.update(name, "skipped", f"not attempted after {entry.name} failed")
            break

    duration = time.time() - start_time
    logger.debug(
        f"Fetch finished in {duration:.1f}s: {len(succeeded)} ok, {len(failed)} failed, "
        f"{len(not_attempted)} not attempted"
    )

    return OutcomeSummary(
        requested=requested,
        succeeded=tuple(succeeded),
        failed=tuple(failed),
        not_attempted=tuple(not_attempted),
        already_present=tuple(already_present),
        duration_seconds=duration,
        noop_message=noop_message,
    )


def fetch_missing(
    manifest: Manifest,
    settings: Settings,
    installer: Installer,
    fail_fast: bool | None = None,
    progress: ProgressTracker | None = None,
    local_probe: LocalProbe | None = None,
) -> OutcomeSummary:
    """
    Install every manifest entry that is absent from the target directory.

    Absence comes from a local-only reconciliation; no latest-release lookups
    are made.

    Args:
        manifest: Declared binaries
        settings: Runtime settings
        installer: Installer backend
        fail_fast: Stop at the first failure (defaults to settings.fail_fast)
        progress: Optional progress tracker
        local_probe: Override for the local probe

    Returns:
        OutcomeSummary (no-op when nothing is missing)

    Raises:
        ConfigurationError: If the target directory is unset or cannot be created
    """
    if fail_fast is None:
        fail_fast = settings.fail_fast

    installed = scan_target_dir(settings.target_path)
    report = reconcile(manifest, installed, settings, include_remote=False, local_probe=local_probe)

    missing_names = {record.name for record in report.missing()}
    missing = [entry for entry in manifest if entry.name in missing_names]
    present = [entry.name for entry in manifest if entry.name not in missing_names]

    if missing:
        logger.info(f"Fetching {len(missing)} missing binaries: {', '.join(e.name for e in missing)}")

    return _install_sequentially(missing, settings, installer, fail_fast, present, progress, NOTHING_MISSING)


def fetch_one(
    manifest: Manifest,
    settings: Settings,
    installer: Installer,
    name: str,
    progress: ProgressTracker | None = None,
) -> FetchOutcome:
    """
    Install one declared binary, replacing any existing copy.

    Args:
        manifest: Declared binaries
        settings: Runtime settings
        installer: Installer backend
        name: Manifest entry name

    Returns:
        FetchOutcome

    Raises:
        UnknownBinaryError: If ``name`` is not declared in the manifest
        ConfigurationError: If the target directory is unset or cannot be created
    """
    entry = manifest.get(name)
    if entry is None:
        raise UnknownBinaryError(name, manifest.names())

    ensure_target_dir(settings)
    return _install_entry(entry, settings, installer, progress)


def fetch_outdated(
    manifest: Manifest,
    settings: Settings,
    installer: Installer,
    fail_fast: bool | None = None,
    progress: ProgressTracker | None = None,
    local_probe: LocalProbe | None = None,
    remote_probe: RemoteProbe | None = None,
) -> OutcomeSummary:
    """
    Re-install every entry whose local version is older than the latest release.

    Entries whose versions cannot be determined are left alone.

    Returns:
        OutcomeSummary (no-op when everything is up to date)
    """
    if fail_fast is None:
        fail_fast = settings.fail_fast

    installed = scan_target_dir(settings.target_path)
    report = reconcile(
        manifest,
        installed,
        settings,
        include_remote=True,
        local_probe=local_probe,
        remote_probe=remote_probe,
    )

    outdated_names = {record.name for record in report.outdated()}
    outdated = [entry for entry in manifest if entry.name in outdated_names]
    unchanged = [entry.name for entry in manifest if entry.name not in outdated_names]

    for record in report.outdated():
        logger.info(f"{record.name}: {record.local_version} -> {record.latest_version}")

    return _install_sequentially(outdated, settings, installer, fail_fast, unchanged, progress, NOTHING_OUTDATED)
