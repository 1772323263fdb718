"""
Installation of release binaries into the target directory.

Two backends are available:

- ``GitHubReleaseInstaller`` downloads the latest release asset for the
  running platform, unpacks it and places the executable in the target
  directory.
- ``UbiInstaller`` delegates to the external ``ubi`` command.

Both implement the same contract: ``install(repository, target_dir,
executable)`` either leaves ``<target_dir>/<executable>`` in place and returns
an InstallResult, or raises InstallError.
"""

from __future__ import annotations

import gzip
import http.client
import logging
import lzma
import os
import random
import re
import shutil
import subprocess
import tarfile
import tempfile
import time
import urllib.error
import urllib.request
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from .collectors import USER_AGENT, CollectionError, HTTPStatusError, NetworkError, fetch_latest_release
from .common import current_platform, subprocess_env, vlog
from .config import DEFAULT_GITHUB_API, Settings

logger = logging.getLogger(__name__)


OS_ALIASES = {
    "linux": ("linux", "linux64", "linux32"),
    "darwin": ("darwin", "macos", "apple", "osx", "mac"),
    "windows": ("windows", "win64", "win32", "win"),
}

ARCH_ALIASES = {
    "x86_64": ("x86_64", "amd64", "x64", "x86-64", "64bit", "linux64", "win64"),
    "aarch64": ("aarch64", "arm64"),
    "i686": ("i686", "i386", "386", "32bit", "linux32", "win32"),
    "armv7": ("armv7", "armv7l", "armhf"),
}

TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz", ".tbz2", ".tar")
IGNORED_SUFFIXES = (
    ".sha256", ".sha256sum", ".sha512", ".md5", ".sig", ".asc", ".pem", ".sbom",
    ".json", ".txt", ".deb", ".rpm", ".apk", ".msi", ".pkg", ".dmg", ".7z",
    ".zst", ".vsix", ".whl",
)


class InstallError(Exception):
    """
    Installation failure for one binary.

    Attributes:
        message: Human-readable error message
        reason: Failure category ('network', 'no_asset', 'permission', 'extract', 'command')
        retryable: Whether this error can be retried
    """
    def __init__(
        self,
        message: str,
        reason: str = "command",
        retryable: bool = False,
    ):
        self.message = message
        self.reason = reason
        self.retryable = retryable
        super().__init__(message)


@dataclass(frozen=True)
class InstallResult:
    """
    Successful installation of one binary.

    Attributes:
        executable: Executable name
        path: Installed file path
        repository: Release repository
        tag: Release tag that was installed (empty if the backend does not report it)
        asset: Release asset the executable came from
        backend: Installer backend that performed the installation
        duration_seconds: Total installation time
    """
    executable: str
    path: str
    repository: str
    tag: str = ""
    asset: str = ""
    backend: str = ""
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "executable": self.executable,
            "path": self.path,
            "repository": self.repository,
            "tag": self.tag,
            "asset": self.asset,
            "backend": self.backend,
            "duration_seconds": self.duration_seconds,
        }


class Installer(Protocol):
    """Places a release executable into a target directory."""

    name: str

    def install(self, repository: str, target_dir: Path, executable: str) -> InstallResult:
        ...


def calculate_backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds with jitter applied
    """
    delay = min(base_delay * (2 ** attempt), max_delay)

    # Jitter of +/-20%
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0.1, delay + jitter)


def is_retryable_error(error: CollectionError) -> bool:
    """
    Determine if a download error is transient.

    Args:
        error: Error raised by the HTTP layer

    Returns:
        True for timeouts, connection failures and 5xx/429 responses
    """
    if isinstance(error, HTTPStatusError):
        return error.status >= 500 or error.status == 429
    return isinstance(error, NetworkError)


def _matches(name: str, alias: str) -> bool:
    return re.search(rf"(?<![a-z0-9]){re.escape(alias)}(?![a-z0-9])", name) is not None


def _is_supported_format(name: str, os_name: str) -> bool:
    if name.endswith(IGNORED_SUFFIXES) or "checksum" in name:
        return False
    if name.endswith(TAR_SUFFIXES) or name.endswith((".zip", ".gz", ".exe")):
        return True
    # Raw binaries have no extension; a dotted remainder is part of the version
    suffix = name.rsplit(".", 1)[-1] if "." in name else ""
    return os_name != "windows" and (not suffix or suffix.isdigit() or "-" in suffix or "_" in suffix)


def select_asset(
    assets: list[dict[str, Any]],
    executable: str,
    os_name: str,
    arch: str,
) -> dict[str, Any] | None:
    """
    Pick the release asset that best matches a platform.

    The asset name must mention the operating system. Assets naming a
    different CPU architecture are rejected; an exact architecture match scores
    higher than an asset that names none. Static (musl) Linux builds and names
    containing the executable are preferred.

    Args:
        assets: Release "assets" list (dicts with "name" and "browser_download_url")
        executable: Executable name being installed
        os_name: Normalized OS ("linux", "darwin", "windows")
        arch: Normalized architecture ("x86_64", "aarch64", ...)

    Returns:
        Best matching asset, or None
    """
    os_aliases = OS_ALIASES.get(os_name, (os_name,))
    arch_aliases = ARCH_ALIASES.get(arch, (arch,))
    other_arch_aliases = [
        alias
        for key, aliases in ARCH_ALIASES.items()
        if key != arch
        for alias in aliases
        if alias not in arch_aliases
    ]

    best: tuple[int, int] | None = None
    chosen = None

    for index, asset in enumerate(assets):
        name = str(asset.get("name", "")).lower()
        if not name or not asset.get("browser_download_url"):
            continue
        if not _is_supported_format(name, os_name):
            continue
        if not any(_matches(name, alias) for alias in os_aliases):
            continue

        score = 0
        if any(_matches(name, alias) for alias in arch_aliases):
            score += 4
        elif any(_matches(name, alias) for alias in other_arch_aliases):
            continue
        elif os_name == "darwin" and "universal" in name:
            score += 3
        else:
            score += 1

        if os_name == "linux" and "musl" in name:
            score += 1
        if executable.lower() in name:
            score += 1

        # Earlier assets win ties
        rank = (score, -index)
        if best is None or rank > best:
            best = rank
            chosen = asset

    return chosen


def _candidate_names(executable: str) -> tuple[str, ...]:
    if executable.lower().endswith(".exe"):
        return (executable,)
    return (executable, f"{executable}.exe")


def extract_executable(archive_path: Path, asset_name: str, executable: str) -> bytes:
    """
    Read the executable out of a downloaded release asset.

    Args:
        archive_path: Downloaded file
        asset_name: Release asset name (determines the format)
        executable: Executable name to look for inside archives

    Returns:
        Executable file content

    Raises:
        InstallError: If the archive is corrupt or does not contain the executable
    """
    name = asset_name.lower()
    wanted = _candidate_names(executable)

    try:
        if name.endswith(TAR_SUFFIXES):
            with tarfile.open(archive_path, "r:*") as tar:
                members = [m for m in tar.getmembers() if m.isfile()]
                for member in members:
                    if os.path.basename(member.name) in wanted:
                        fileobj = tar.extractfile(member)
                        if fileobj is not None:
                            return fileobj.read()
                archive_files = [m.name for m in members]

        elif name.endswith(".zip"):
            with zipfile.ZipFile(archive_path) as zf:
                infos = [i for i in zf.infolist() if not i.is_dir()]
                for info in infos:
                    if os.path.basename(info.filename) in wanted:
                        return zf.read(info)
                archive_files = [i.filename for i in infos]

        elif name.endswith(".gz"):
            with gzip.open(archive_path, "rb") as f:
                return f.read()

        else:
            return archive_path.read_bytes()

    except (
        tarfile.TarError,
        zipfile.BadZipFile,
        gzip.BadGzipFile,
        zlib.error,
        lzma.LZMAError,
        EOFError,
        OSError,
    ) as e:
        raise InstallError(f"Cannot unpack {asset_name}: {e}", reason="extract") from e

    raise InstallError(
        f"'{executable}' not found in {asset_name} (contains: {', '.join(archive_files[:10])})",
        reason="extract",
    )


def write_executable(content: bytes, target_dir: Path, executable: str) -> Path:
    """
    Atomically write an executable into the target directory with mode 0755.

    Raises:
        InstallError: If the directory is not writable
    """
    destination = target_dir / executable
    try:
        fd, tmp_name = tempfile.mkstemp(dir=target_dir, prefix=f".{executable}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            os.chmod(tmp_name, 0o755)
            os.replace(tmp_name, destination)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except PermissionError as e:
        raise InstallError(f"Permission denied writing {destination}: {e}", reason="permission") from e
    except OSError as e:
        raise InstallError(f"Cannot write {destination}: {e}", reason="permission") from e

    return destination


def download_file(url: str, destination: Path, timeout: float) -> None:
    """Stream ``url`` into ``destination``.

    Raises:
        HTTPStatusError: If the server returns a non-success status
        NetworkError: If the download fails or times out
    """
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT, "Accept": "application/octet-stream"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response, open(destination, "wb") as out:
            shutil.copyfileobj(response, out)
    except urllib.error.HTTPError as e:
        raise HTTPStatusError(url, e.code, str(e.reason or "")) from e
    except (urllib.error.URLError, OSError) as e:
        raise NetworkError(f"Failed to download {url}: {e}") from e
    except http.client.HTTPException as e:
        raise NetworkError(f"Failed to download {url}: {e!r}") from e


def verify_installed(target_dir: str | Path, executable: str) -> bool:
    """True when the executable is a direct child of the target directory."""
    return (Path(target_dir) / executable).is_file()


class GitHubReleaseInstaller:
    """Install executables from the latest GitHub release of a repository."""

    name = "github"

    def __init__(
        self,
        api_url: str = DEFAULT_GITHUB_API,
        token: str | None = None,
        http_timeout: float = 5,
        download_timeout: float = 60,
        max_retries: int = 3,
        platform: tuple[str, str] | None = None,
        verbose: bool = False,
    ):
        self.api_url = api_url
        self.token = token
        self.http_timeout = http_timeout
        self.download_timeout = download_timeout
        self.max_retries = max_retries
        self.os_name, self.arch = platform or current_platform()
        self.verbose = verbose

    def install(self, repository: str, target_dir: Path, executable: str) -> InstallResult:
        """
        Download and install the latest release of ``repository``.

        Args:
            repository: "owner/project"
            target_dir: Existing directory to place the executable in
            executable: Executable name

        Returns:
            InstallResult

        Raises:
            InstallError: On network failure, missing asset, bad archive or permission error
        """
        start_time = time.time()
        target_dir = Path(target_dir)

        try:
            release = fetch_latest_release(
                repository,
                timeout=self.http_timeout,
                token=self.token,
                api_url=self.api_url,
            )
        except CollectionError as e:
            raise InstallError(f"Cannot fetch latest release of {repository}: {e}", reason="network") from e

        tag = str(release.get("tag_name", ""))
        assets = release.get("assets") or []
        asset = select_asset(assets, executable, self.os_name, self.arch)
        if asset is None:
            names = ", ".join(str(a.get("name", "")) for a in assets[:10]) or "none"
            raise InstallError(
                f"No release asset of {repository} {tag} matches {self.os_name}/{self.arch} (assets: {names})",
                reason="no_asset",
            )

        asset_name = str(asset["name"])
        vlog(f"Selected asset {asset_name} from {repository} {tag}", self.verbose)

        with tempfile.TemporaryDirectory(prefix="binaudit-") as tmp:
            archive_path = Path(tmp) / os.path.basename(asset_name)
            self._download_with_retry(str(asset["browser_download_url"]), archive_path)
            content = extract_executable(archive_path, asset_name, executable)

        path = write_executable(content, target_dir, executable)
        duration = time.time() - start_time
        logger.debug(f"Installed {executable} {tag} to {path} in {duration:.1f}s")

        return InstallResult(
            executable=executable,
            path=str(path),
            repository=repository,
            tag=tag,
            asset=asset_name,
            backend=self.name,
            duration_seconds=duration,
        )

    def _download_with_retry(self, url: str, destination: Path) -> None:
        for attempt in range(self.max_retries):
            vlog(f"Downloading {url} (attempt {attempt + 1}/{self.max_retries})", self.verbose)
            try:
                download_file(url, destination, timeout=self.download_timeout)
                return
            except CollectionError as e:
                if not is_retryable_error(e) or attempt == self.max_retries - 1:
                    raise InstallError(f"Download failed: {e}", reason="network", retryable=is_retryable_error(e)) from e
                delay = calculate_backoff_delay(attempt)
                vlog(f"Retrying after {delay:.1f}s delay...", self.verbose)
                time.sleep(delay)


class UbiInstaller:
    """Install executables by running the external ``ubi`` command."""

    name = "ubi"

    def __init__(self, ubi_path: str | None = None, timeout: float = 60, verbose: bool = False):
        self.ubi_path = ubi_path
        self.timeout = timeout
        self.verbose = verbose

    def _resolve_ubi(self, target_dir: Path) -> str:
        if self.ubi_path:
            return self.ubi_path
        # ubi is usually itself one of the managed binaries
        local = target_dir / "ubi"
        if local.is_file() and os.access(local, os.X_OK):
            return str(local)
        found = shutil.which("ubi")
        if not found:
            raise InstallError("ubi command not found (install it with 'binaudit get ubi')", reason="command")
        return found

    def install(self, repository: str, target_dir: Path, executable: str) -> InstallResult:
        """
        Run ``ubi --project REPO --in DIR --exe NAME``.

        Raises:
            InstallError: If ubi is missing, fails, times out, or leaves no executable
        """
        start_time = time.time()
        target_dir = Path(target_dir)
        command = [
            self._resolve_ubi(target_dir),
            "--project", repository,
            "--in", str(target_dir),
            "--exe", executable,
        ]
        vlog(f"Executing: {' '.join(command)}", self.verbose)

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
                env=subprocess_env(),
            )
        except subprocess.TimeoutExpired as e:
            raise InstallError(f"ubi timed out after {self.timeout}s", reason="network", retryable=True) from e
        except OSError as e:
            raise InstallError(f"Cannot run ubi: {e}", reason="command") from e

        if result.returncode != 0:
            message = f"ubi failed with exit code {result.returncode}"
            if result.stderr:
                message += f": {result.stderr.strip()[:200]}"
            raise InstallError(message, reason="command")

        if not verify_installed(target_dir, executable):
            raise InstallError(f"ubi finished but {target_dir / executable} does not exist", reason="command")

        return InstallResult(
            executable=executable,
            path=str(target_dir / executable),
            repository=repository,
            backend=self.name,
            duration_seconds=time.time() - start_time,
        )


def get_installer(settings: Settings, verbose: bool = False) -> Installer:
    """
    Build the installer backend selected in the settings.

    Args:
        settings: Runtime settings
        verbose: Enable verbose logging

    Returns:
        Installer instance
    """
    if settings.installer == "ubi":
        return UbiInstaller(timeout=settings.download_timeout_seconds, verbose=verbose)
    return GitHubReleaseInstaller(
        api_url=settings.github_api_url,
        token=settings.github_token,
        http_timeout=settings.http_timeout_seconds,
        download_timeout=settings.download_timeout_seconds,
        verbose=verbose,
    )
