"""
Configuration file parsing and runtime settings.

Settings are merged from YAML configuration files (project → user), then
environment variables, then command-line overrides, and are built exactly once
per invocation. Every other module receives the resulting ``Settings`` object
instead of reading the process environment itself.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)


DEFAULT_GITHUB_API = "https://api.github.com"
VALID_INSTALLERS = {"github", "ubi"}

# Environment variable → (settings key, converter)
ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "XDG_BIN_HOME": ("target_dir", str),
    "BINAUDIT_MANIFEST": ("manifest_path", str),
    "BINAUDIT_MAX_WORKERS": ("max_workers", int),
    "BINAUDIT_PROBE_TIMEOUT": ("probe_timeout_seconds", float),
    "BINAUDIT_HTTP_TIMEOUT": ("http_timeout_seconds", float),
    "BINAUDIT_INSTALLER": ("installer", str),
    "BINAUDIT_GITHUB_API": ("github_api_url", str),
}


class ConfigurationError(ValueError):
    """Raised when the invocation cannot proceed: bad settings, manifest or target directory."""


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings for one invocation.

    Attributes:
        target_dir: Directory whose direct children are the installed binaries
        manifest_path: Path of the manifest document
        probe_timeout_seconds: Timeout for running ``<binary> --version``
        http_timeout_seconds: Timeout for release API requests
        download_timeout_seconds: Timeout for downloading release assets
        max_workers: Maximum parallel probes during reconciliation
        fail_fast: Abort remaining installs after the first failure
        installer: Installer backend ('github' or 'ubi')
        github_token: Optional token for authenticated GitHub API requests
        github_api_url: Base URL of the GitHub REST API
        source: Configuration files that contributed to these settings
    """
    target_dir: str = ""
    manifest_path: str = ""
    probe_timeout_seconds: float = 3
    http_timeout_seconds: float = 5
    download_timeout_seconds: float = 60
    max_workers: int = 8
    fail_fast: bool = True
    installer: str = "github"
    github_token: str | None = None
    github_api_url: str = DEFAULT_GITHUB_API
    source: str = ""

    def __post_init__(self):
        """Validate settings after initialization."""
        if not 0 < self.probe_timeout_seconds <= 60:
            raise ConfigurationError(
                f"Invalid probe_timeout_seconds: {self.probe_timeout_seconds}. "
                "Must be greater than 0 and at most 60"
            )

        if not 0 < self.http_timeout_seconds <= 60:
            raise ConfigurationError(
                f"Invalid http_timeout_seconds: {self.http_timeout_seconds}. "
                "Must be greater than 0 and at most 60"
            )

        if not 0 < self.download_timeout_seconds <= 600:
            raise ConfigurationError(
                f"Invalid download_timeout_seconds: {self.download_timeout_seconds}. "
                "Must be greater than 0 and at most 600"
            )

        if self.max_workers < 1 or self.max_workers > 32:
            raise ConfigurationError(
                f"Invalid max_workers: {self.max_workers}. "
                "Must be between 1 and 32"
            )

        if self.installer not in VALID_INSTALLERS:
            raise ConfigurationError(
                f"Invalid installer: {self.installer}. "
                f"Must be one of: {', '.join(sorted(VALID_INSTALLERS))}"
            )

    @property
    def target_path(self) -> Path:
        """Target directory as a Path (raises if unset)."""
        if not self.target_dir:
            raise ConfigurationError(
                "XDG_BIN_HOME environment variable is not set "
                "(set it, pass --target-dir, or add target_dir to the config file)"
            )
        return Path(self.target_dir)

    @staticmethod
    def from_dict(data: Mapping[str, Any], source: str = "") -> Settings:
        """Create Settings from a flattened settings dictionary."""
        try:
            return Settings(
                target_dir=_expand(data.get("target_dir", "")),
                manifest_path=_expand(data.get("manifest_path", "")),
                probe_timeout_seconds=float(data.get("probe_timeout_seconds", 3)),
                http_timeout_seconds=float(data.get("http_timeout_seconds", 5)),
                download_timeout_seconds=float(data.get("download_timeout_seconds", 60)),
                max_workers=int(data.get("max_workers", 8)),
                fail_fast=bool(data.get("fail_fast", True)),
                installer=str(data.get("installer", "github")),
                github_token=data.get("github_token") or None,
                github_api_url=str(data.get("github_api_url", DEFAULT_GITHUB_API)).rstrip("/"),
                source=source,
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigurationError):
                raise
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization (token redacted)."""
        return {
            "target_dir": self.target_dir,
            "manifest_path": self.manifest_path,
            "probe_timeout_seconds": self.probe_timeout_seconds,
            "http_timeout_seconds": self.http_timeout_seconds,
            "download_timeout_seconds": self.download_timeout_seconds,
            "max_workers": self.max_workers,
            "fail_fast": self.fail_fast,
            "installer": self.installer,
            "github_token": "***" if self.github_token else None,
            "github_api_url": self.github_api_url,
            "source": self.source,
        }


def _expand(path: Any) -> str:
    if not path:
        return ""
    return os.path.expandvars(os.path.expanduser(str(path)))


def config_home(environ: Mapping[str, str]) -> str:
    """Resolve the XDG configuration home."""
    return environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")


def default_manifest_path(environ: Mapping[str, str]) -> str:
    """Conventional manifest location: $XDG_CONFIG_HOME/binaudit/manifest.yml."""
    return os.path.join(config_home(environ), "binaudit", "manifest.yml")


def config_locations(environ: Mapping[str, str]) -> list[str]:
    """
    Configuration file locations in priority order.

    Args:
        environ: Environment mapping used to resolve XDG directories

    Returns:
        Candidate paths, highest priority first
    """
    return [
        ".binaudit.yml",                                             # Project root
        ".binaudit.yaml",
        os.path.join(config_home(environ), "binaudit", "config.yml"),  # User global
        os.path.join(config_home(environ), "binaudit", "config.yaml"),
    ]


def _flatten(data: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten the config document layout into settings keys."""
    flat: dict[str, Any] = {}
    if "target_dir" in data:
        flat["target_dir"] = data["target_dir"]
    if "manifest" in data:
        flat["manifest_path"] = data["manifest"]

    preferences = data.get("preferences") or {}
    if not isinstance(preferences, Mapping):
        raise ConfigurationError("'preferences' must be a mapping")
    for key in (
        "probe_timeout_seconds",
        "http_timeout_seconds",
        "download_timeout_seconds",
        "max_workers",
        "fail_fast",
        "installer",
    ):
        if key in preferences:
            flat[key] = preferences[key]

    github = data.get("github") or {}
    if isinstance(github, Mapping) and "api_url" in github:
        flat["github_api_url"] = github["api_url"]

    return flat


def load_config_file(file_path: str) -> dict[str, Any] | None:
    """
    Load one YAML configuration file.

    Args:
        file_path: Path to configuration file

    Returns:
        Flattened settings dictionary, or None if the file does not exist

    Raises:
        ConfigurationError: If the file exists but cannot be read or parsed
    """
    if not os.path.exists(file_path):
        return None

    logger.debug(f"Loading config from: {file_path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {file_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file {file_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {file_path} must contain a mapping")

    return _flatten(data)


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(var, "")
        if not raw:
            continue
        try:
            overrides[key] = convert(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {var}: {raw!r}") from e

    token = environ.get("GITHUB_TOKEN") or environ.get("GH_TOKEN")
    if token:
        overrides["github_token"] = token
    return overrides


def load_settings(
    custom_path: str | None = None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """
    Build the settings for this invocation.

    Precedence (highest to lowest):
    1. Explicit overrides (command-line options)
    2. Environment variables (XDG_BIN_HOME, BINAUDIT_*, GITHUB_TOKEN)
    3. Custom config path (if provided)
    4. Project .binaudit.yml
    5. User $XDG_CONFIG_HOME/binaudit/config.yml
    6. Defaults

    Args:
        custom_path: Optional path to a config file that must exist
        environ: Environment mapping (defaults to os.environ)
        overrides: Settings keys set on the command line; None values are ignored

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If a config file is invalid or a value fails validation
    """
    if environ is None:
        environ = os.environ

    layers: list[dict[str, Any]] = []
    sources: list[str] = []

    if custom_path:
        data = load_config_file(custom_path)
        if data is None:
            raise ConfigurationError(f"Could not load config from specified path: {custom_path}")
        layers.append(data)
        sources.append(custom_path)

    for location in config_locations(environ):
        data = load_config_file(location)
        if data is not None:
            layers.append(data)
            sources.append(location)

    merged: dict[str, Any] = {}
    # Lowest priority first so that later updates win
    for data in reversed(layers):
        merged.update(data)
    merged.update(_env_overrides(environ))
    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})

    if not merged.get("manifest_path"):
        merged["manifest_path"] = default_manifest_path(environ)

    settings = Settings.from_dict(merged, source=", ".join(sources))
    logger.debug(f"Settings loaded from {settings.source or 'defaults'}: {settings.to_dict()}")
    return settings


def ensure_target_dir(settings: Settings) -> Path:
    """
    Ensure the target directory exists, creating it on demand.

    Args:
        settings: Runtime settings

    Returns:
        Path to the target directory

    Raises:
        ConfigurationError: If the directory is unset, not a directory, or cannot be created
    """
    path = settings.target_path

    if path.exists():
        if not path.is_dir():
            raise ConfigurationError(f"Target path {path} exists but is not a directory")
        return path

    logger.info(f"Creating directory {path}...")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(f"Failed to create directory {path}: {e}") from e
    return path
