"""
binaudit - Reconcile declared command-line binaries against an install directory.

Core Modules:
- Manifest: Declared binaries and their release repositories
- Detection: Installed-set snapshot and local version probing
- Collectors: Latest-release lookups
- Reconciliation: Per-binary status report
- Installation: Release download and fetch orchestration
"""

__version__ = "1.0.0"

# Foundation
from .config import ConfigurationError, Settings, ensure_target_dir, load_settings
from .logging_config import get_logger, setup_logging
from .versions import SENTINEL, compare_versions, extract_version, is_outdated

# Manifest
from .manifest import (
    DEFAULT_ENTRIES,
    DuplicateNameError,
    Manifest,
    ManifestEntry,
    ManifestError,
    ManifestMalformedError,
    ManifestUnreadableError,
    load_manifest,
    parse_manifest,
    write_default_manifest,
)

# Detection and lookups
from .detection import LocalState, LocalStatus, probe_local, scan_target_dir
from .collectors import RemoteState, RemoteStatus, get_github_rate_limit, probe_remote

# Reconciliation
from .reconcile import Report, StatusRecord, reconcile, to_status_record

# Installation
from .installer import (
    GitHubReleaseInstaller,
    InstallError,
    Installer,
    InstallResult,
    UbiInstaller,
    get_installer,
    select_asset,
)
from .bulk import (
    FetchOutcome,
    OutcomeSummary,
    ProgressTracker,
    UnknownBinaryError,
    fetch_missing,
    fetch_one,
    fetch_outdated,
)

__all__ = [
    "__version__",
    # Foundation
    "ConfigurationError",
    "Settings",
    "ensure_target_dir",
    "load_settings",
    "get_logger",
    "setup_logging",
    "SENTINEL",
    "compare_versions",
    "extract_version",
    "is_outdated",
    # Manifest
    "DEFAULT_ENTRIES",
    "DuplicateNameError",
    "Manifest",
    "ManifestEntry",
    "ManifestError",
    "ManifestMalformedError",
    "ManifestUnreadableError",
    "load_manifest",
    "parse_manifest",
    "write_default_manifest",
    # Detection and lookups
    "LocalState",
    "LocalStatus",
    "probe_local",
    "scan_target_dir",
    "RemoteState",
    "RemoteStatus",
    "get_github_rate_limit",
    "probe_remote",
    # Reconciliation
    "Report",
    "StatusRecord",
    "reconcile",
    "to_status_record",
    # Installation
    "GitHubReleaseInstaller",
    "InstallError",
    "Installer",
    "InstallResult",
    "UbiInstaller",
    "get_installer",
    "select_asset",
    "FetchOutcome",
    "OutcomeSummary",
    "ProgressTracker",
    "UnknownBinaryError",
    "fetch_missing",
    "fetch_one",
    "fetch_outdated",
]
