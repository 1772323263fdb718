"""
Tests for fetch orchestration (binaudit/bulk.py).
"""

import threading
from pathlib import Path

import pytest

from binaudit.bulk import (
    NOTHING_MISSING,
    NOTHING_OUTDATED,
    FetchOutcome,
    OutcomeSummary,
    ProgressTracker,
    UnknownBinaryError,
    fetch_missing,
    fetch_one,
    fetch_outdated,
)
from binaudit.collectors import RemoteState, RemoteStatus
from binaudit.config import ConfigurationError, Settings
from binaudit.detection import LocalState, LocalStatus
from binaudit.installer import InstallError, InstallResult
from binaudit.manifest import Manifest, ManifestEntry


class FakeInstaller:
    """Installer that records calls and writes placeholder executables."""

    name = "fake"

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    def install(self, repository, target_dir, executable):
        self.calls.append(executable)
        if executable in self.fail:
            raise InstallError(f"no asset for {executable}", reason="no_asset")
        path = Path(target_dir) / executable
        path.write_bytes(b"")
        return InstallResult(executable=executable, path=str(path), repository=repository, tag="v1.0.0")


def make_manifest(*names):
    return Manifest(entries=tuple(ManifestEntry(name, f"owner/{name}", name) for name in names))


def presence_probe(target_dir):
    """Local probe that only checks presence, reporting version 1.0.0."""
    def probe(entry):
        if (Path(target_dir) / entry.executable).exists():
            return LocalStatus(state=LocalState.PRESENT, version="1.0.0")
        return LocalStatus(state=LocalState.ABSENT)
    return probe


@pytest.fixture
def target(tmp_path):
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def settings(target):
    return Settings(target_dir=str(target))


class TestOutcomeSummary:
    """Tests for OutcomeSummary."""

    def test_noop(self):
        summary = OutcomeSummary(requested=())
        assert summary.noop is True
        assert summary.ok is True
        assert summary.message() == "All binaries are already present."

    def test_message_with_failures(self):
        summary = OutcomeSummary(
            requested=("a", "b", "c"),
            succeeded=(FetchOutcome("a", True),),
            failed=(FetchOutcome("b", False, error="boom", reason="network"),),
            not_attempted=("c",),
            duration_seconds=1.25,
        )
        assert summary.ok is False
        assert summary.message() == "1 installed, 1 failed, 1 not attempted (1.2s)"

    def test_to_dict(self):
        summary = OutcomeSummary(requested=("a",), succeeded=(FetchOutcome("a", True),), already_present=("b",))
        data = summary.to_dict()
        assert data["requested"] == ["a"]
        assert data["succeeded"][0]["name"] == "a"
        assert data["already_present"] == ["b"]


class TestFetchMissing:
    """Tests for fetch_missing()."""

    def test_all_present_is_noop(self, target, settings):
        """Test zero installer calls when everything is installed."""
        for name in ("a", "b"):
            (target / name).write_bytes(b"")
        installer = FakeInstaller()

        summary = fetch_missing(make_manifest("a", "b"), settings, installer)

        assert installer.calls == []
        assert summary.noop is True
        assert summary.message() == NOTHING_MISSING
        assert summary.already_present == ("a", "b")

    def test_installs_only_absent(self, target, settings):
        """Test {A: absent, B: present} installs A exactly once."""
        (target / "b").write_bytes(b"")
        installer = FakeInstaller()

        summary = fetch_missing(make_manifest("a", "b"), settings, installer)

        assert installer.calls == ["a"]
        assert summary.requested == ("a",)
        assert [o.name for o in summary.succeeded] == ["a"]
        assert summary.ok is True

    def test_manifest_order(self, settings):
        installer = FakeInstaller()
        fetch_missing(make_manifest("zeta", "alpha", "mid"), settings, installer)
        assert installer.calls == ["zeta", "alpha", "mid"]

    def test_creates_target_dir(self, tmp_path):
        target = tmp_path / "new" / "bin"
        installer = FakeInstaller()
        summary = fetch_missing(make_manifest("a"), Settings(target_dir=str(target)), installer)
        assert target.is_dir()
        assert (target / "a").exists()
        assert summary.ok is True

    def test_fail_fast_stops_remaining(self, settings):
        installer = FakeInstaller(fail={"b"})

        summary = fetch_missing(make_manifest("a", "b", "c"), settings, installer, fail_fast=True)

        assert installer.calls == ["a", "b"]
        assert [o.name for o in summary.succeeded] == ["a"]
        assert [o.name for o in summary.failed] == ["b"]
        assert summary.failed[0].reason == "no_asset"
        assert summary.not_attempted == ("c",)
        assert summary.ok is False

    def test_keep_going_reports_every_failure(self, settings):
        installer = FakeInstaller(fail={"a", "c"})

        summary = fetch_missing(make_manifest("a", "b", "c"), settings, installer, fail_fast=False)

        assert installer.calls == ["a", "b", "c"]
        assert [o.name for o in summary.failed] == ["a", "c"]
        assert summary.not_attempted == ()

    def test_fail_fast_defaults_to_settings(self, target):
        installer = FakeInstaller(fail={"a"})
        settings = Settings(target_dir=str(target), fail_fast=False)
        fetch_missing(make_manifest("a", "b"), settings, installer)
        assert installer.calls == ["a", "b"]

    def test_target_dir_unset(self):
        with pytest.raises(ConfigurationError, match="XDG_BIN_HOME"):
            fetch_missing(make_manifest("a"), Settings(), FakeInstaller())

    def test_progress_updates(self, settings):
        events = []
        progress = ProgressTracker()
        progress.register_callback(lambda name, status, message: events.append((name, status)))

        fetch_missing(make_manifest("a", "b"), settings, FakeInstaller(fail={"a"}), fail_fast=True, progress=progress)

        assert ("a", "in_progress") in events
        assert ("a", "failed") in events
        assert ("b", "skipped") in events
        assert progress.get_summary()["failed"] == 1


class TestFetchOne:
    """Tests for fetch_one()."""

    def test_unknown_name(self, settings):
        installer = FakeInstaller()
        with pytest.raises(UnknownBinaryError, match="nope") as exc_info:
            fetch_one(make_manifest("a"), settings, installer, "nope")
        assert isinstance(exc_info.value, ConfigurationError)
        assert installer.calls == []

    def test_installs_even_if_present(self, target, settings):
        """Test a named fetch replaces an existing copy."""
        (target / "a").write_bytes(b"old")
        installer = FakeInstaller()
        outcome = fetch_one(make_manifest("a"), settings, installer, "a")
        assert installer.calls == ["a"]
        assert outcome.success is True
        assert outcome.result.tag == "v1.0.0"

    def test_failure_is_an_outcome(self, settings):
        outcome = fetch_one(make_manifest("a"), settings, FakeInstaller(fail={"a"}), "a")
        assert outcome.success is False
        assert outcome.reason == "no_asset"
        assert "no asset" in outcome.error


class TestFetchOutdated:
    """Tests for fetch_outdated()."""

    def test_reinstalls_outdated_only(self, target, settings):
        for name in ("old", "new"):
            (target / name).write_bytes(b"")

        def remote(entry):
            version = {"old": "1.1.0", "new": "1.0.0"}[entry.name]
            return RemoteStatus(state=RemoteState.FOUND, tag=f"v{version}", version=version)

        installer = FakeInstaller()
        summary = fetch_outdated(
            make_manifest("old", "new"),
            settings,
            installer,
            local_probe=presence_probe(target),
            remote_probe=remote,
        )
        assert installer.calls == ["old"]
        assert summary.already_present == ("new",)

    def test_everything_current(self, target, settings):
        (target / "a").write_bytes(b"")
        installer = FakeInstaller()
        summary = fetch_outdated(
            make_manifest("a"),
            settings,
            installer,
            local_probe=presence_probe(target),
            remote_probe=lambda entry: RemoteStatus(state=RemoteState.FOUND, tag="v1.0.0", version="1.0.0"),
        )
        assert installer.calls == []
        assert summary.message() == NOTHING_OUTDATED

    def test_unknown_latest_is_left_alone(self, target, settings):
        (target / "a").write_bytes(b"")
        installer = FakeInstaller()
        fetch_outdated(
            make_manifest("a"),
            settings,
            installer,
            local_probe=presence_probe(target),
            remote_probe=lambda entry: RemoteStatus(state=RemoteState.UNAVAILABLE),
        )
        assert installer.calls == []


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_update_and_get(self):
        tracker = ProgressTracker()
        tracker.update("a", "success", "v1.0.0")
        assert tracker.get_progress("a")["status"] == "success"
        assert tracker.get_progress("b") is None

    def test_thread_safety(self):
        tracker = ProgressTracker()

        def worker(i):
            tracker.update(f"tool{i}", "success")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.get_summary()["success"] == 20
