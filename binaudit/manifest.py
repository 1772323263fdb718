"""
Manifest of managed binaries.

The manifest declares which executables are expected in the target directory
and where their releases come from. It is loaded once per invocation and never
mutated afterwards.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping

import yaml

from .config import ConfigurationError

logger = logging.getLogger(__name__)


DEFAULT_VERSION_ARG = "--version"
REPOSITORY_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

# Field aliases accepted in manifest documents → canonical field
FIELD_ALIASES = {
    "repository": "repository",
    "repositoryId": "repository",
    "repo": "repository",
    "executable": "executable",
    "executableName": "executable",
    "exe": "executable",
    "version_arg": "version_arg",
    "versionProbeArg": "version_arg",
    "version_flag": "version_arg",
}


class ManifestError(ConfigurationError):
    """Base class for manifest loading failures."""


class ManifestUnreadableError(ManifestError):
    """The manifest document could not be read."""


class ManifestMalformedError(ManifestError):
    """The manifest document could not be parsed or has the wrong structure."""


class DuplicateNameError(ManifestError):
    """Two manifest entries share the same name."""

    def __init__(self, name: str, source: str = ""):
        self.name = name
        where = f" in {source}" if source else ""
        super().__init__(f"Duplicate binary name '{name}'{where}")


@dataclass(frozen=True)
class ManifestEntry:
    """
    One declared binary.

    Attributes:
        name: Unique key of the entry
        repository: Release repository identifier ("owner/project")
        executable: File name expected in the target directory
        version_arg: Argument that makes the executable print its version
    """
    name: str
    repository: str
    executable: str
    version_arg: str = DEFAULT_VERSION_ARG

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def project(self) -> str:
        return self.repository.split("/", 1)[1]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], position: int = 0) -> ManifestEntry:
        """Create an entry from a manifest document item.

        Args:
            data: Mapping with name, repository and optional executable/version_arg
            position: 1-based index of the item, used in error messages

        Returns:
            ManifestEntry

        Raises:
            ManifestMalformedError: If required fields are missing or invalid
        """
        if not isinstance(data, Mapping):
            raise ManifestMalformedError(f"Entry #{position} must be a mapping, got {type(data).__name__}")

        fields: dict[str, Any] = {"name": data.get("name")}
        for key, value in data.items():
            canonical = FIELD_ALIASES.get(key)
            if canonical:
                fields[canonical] = value

        name = fields.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ManifestMalformedError(f"Entry #{position} is missing a 'name'")
        name = name.strip()

        repository = fields.get("repository")
        if not isinstance(repository, str) or not REPOSITORY_RE.match(repository.strip()):
            raise ManifestMalformedError(
                f"Entry '{name}': 'repository' must look like 'owner/project', got {repository!r}"
            )

        executable = fields.get("executable", name)
        if not isinstance(executable, str) or not executable.strip() or "/" in executable or "\\" in executable:
            raise ManifestMalformedError(
                f"Entry '{name}': 'executable' must be a plain file name, got {executable!r}"
            )

        version_arg = fields.get("version_arg", DEFAULT_VERSION_ARG)
        if not isinstance(version_arg, str):
            raise ManifestMalformedError(f"Entry '{name}': 'version_arg' must be a string")

        return cls(
            name=name,
            repository=repository.strip(),
            executable=executable.strip(),
            version_arg=version_arg,
        )

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "repository": self.repository,
            "executable": self.executable,
            "version_arg": self.version_arg,
        }


@dataclass(frozen=True)
class Manifest:
    """
    Ordered, immutable set of manifest entries keyed by name.

    Attributes:
        entries: Entries in declaration order
        source: Path the manifest was loaded from (empty for in-memory manifests)
    """
    entries: tuple[ManifestEntry, ...] = ()
    source: str = ""
    _by_name: dict[str, ManifestEntry] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        index: dict[str, ManifestEntry] = {}
        for entry in self.entries:
            if entry.name in index:
                raise DuplicateNameError(entry.name, self.source)
            index[entry.name] = entry
        object.__setattr__(self, "_by_name", index)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> ManifestEntry | None:
        return self._by_name.get(name)

    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def to_dict(self) -> dict[str, Any]:
        return {"binaries": [entry.to_dict() for entry in self.entries]}


DEFAULT_ENTRIES: tuple[ManifestEntry, ...] = (
    ManifestEntry("nu", "nushell/nushell", "nu"),
    ManifestEntry("uv", "astral-sh/uv", "uv"),
    ManifestEntry("zoxide", "ajeetdsouza/zoxide", "zoxide"),
    ManifestEntry("bun", "oven-sh/bun", "bun"),
    ManifestEntry("jj", "jj-vcs/jj", "jj"),
    ManifestEntry("fzf", "junegunn/fzf", "fzf"),
    ManifestEntry("ubi", "houseabsolute/ubi", "ubi"),
    ManifestEntry("gh", "cli/cli", "gh"),
    ManifestEntry("yazi", "sxyazi/yazi", "yazi"),
    ManifestEntry("micro", "zyedidia/micro", "micro"),
    ManifestEntry("lazygit", "jesseduffield/lazygit", "lazygit"),
)


def parse_manifest(data: Any, source: str = "") -> Manifest:
    """
    Build a Manifest from a decoded document.

    Accepts either a top-level list of entries or a mapping with a
    ``binaries`` list.

    Args:
        data: Decoded YAML/JSON document
        source: Where the document came from (for error messages)

    Returns:
        Manifest

    Raises:
        ManifestMalformedError: If the structure is invalid
        DuplicateNameError: If two entries share a name
    """
    if isinstance(data, Mapping):
        if "binaries" not in data:
            raise ManifestMalformedError(f"Manifest {source or '<memory>'} has no 'binaries' list")
        items = data["binaries"]
    else:
        items = data

    if items is None:
        items = []
    if not isinstance(items, list):
        raise ManifestMalformedError(
            f"Manifest {source or '<memory>'}: expected a list of entries, got {type(items).__name__}"
        )

    entries = tuple(ManifestEntry.from_dict(item, position=i) for i, item in enumerate(items, start=1))
    return Manifest(entries=entries, source=source)


def load_manifest(path: str | Path) -> Manifest:
    """
    Load the manifest document at ``path``.

    ``.json`` files are decoded as JSON, everything else as YAML.

    Args:
        path: Manifest file path

    Returns:
        Manifest

    Raises:
        ManifestUnreadableError: If the file cannot be read
        ManifestMalformedError: If parsing or structural validation fails
        DuplicateNameError: If two entries share a name
    """
    path = Path(path)

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ManifestUnreadableError(
            f"Manifest not found at {path} (run 'binaudit init' to create one)"
        ) from e
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestUnreadableError(f"Cannot read manifest {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ManifestMalformedError(f"Cannot parse manifest {path}: {e}") from e

    manifest = parse_manifest(data, source=str(path))
    logger.debug(f"Loaded {len(manifest)} manifest entries from {path}")
    return manifest


def dump_manifest(manifest: Manifest) -> str:
    """Render a manifest as a YAML document."""
    return yaml.safe_dump(manifest.to_dict(), sort_keys=False, default_flow_style=False)


def write_default_manifest(path: str | Path, overwrite: bool = False) -> Path:
    """
    Write the built-in starter manifest.

    Args:
        path: Destination path
        overwrite: Replace an existing file

    Returns:
        Path written

    Raises:
        ConfigurationError: If the file exists (without overwrite) or cannot be written
    """
    path = Path(path)
    if path.exists() and not overwrite:
        raise ConfigurationError(f"Manifest already exists at {path} (use --force to overwrite)")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dump_manifest(Manifest(entries=DEFAULT_ENTRIES)), encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot write manifest {path}: {e}") from e

    logger.info(f"Wrote default manifest with {len(DEFAULT_ENTRIES)} binaries to {path}")
    return path
