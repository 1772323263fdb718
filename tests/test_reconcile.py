"""
Tests for reconciliation (binaudit/reconcile.py).
"""

import http.client
import random
import time
from unittest.mock import MagicMock, patch

import pytest

from binaudit.collectors import RemoteState, RemoteStatus
from binaudit.config import Settings
from binaudit.detection import LocalState, LocalStatus
from binaudit.manifest import Manifest, ManifestEntry
from binaudit.reconcile import (
    INSTALLED,
    NOT_INSTALLED,
    OUTDATED,
    UNKNOWN,
    UP_TO_DATE,
    StatusRecord,
    reconcile,
    to_status_record,
)


def make_manifest(*names):
    return Manifest(entries=tuple(ManifestEntry(name, f"owner/{name}", name) for name in names))


def local_probe_for(states):
    """Local probe returning canned LocalStatus per entry name."""
    def probe(entry):
        return states.get(entry.name, LocalStatus(state=LocalState.ABSENT))
    return probe


def remote_probe_for(versions):
    """Remote probe returning FOUND with the given version, or UNAVAILABLE."""
    def probe(entry):
        version = versions.get(entry.name)
        if version is None:
            return RemoteStatus(state=RemoteState.UNAVAILABLE, detail="HTTP 404")
        return RemoteStatus(state=RemoteState.FOUND, tag=f"v{version}", version=version)
    return probe


def present(version):
    return LocalStatus(state=LocalState.PRESENT, version=version, path="/bin/x")


@pytest.fixture
def settings(tmp_path):
    return Settings(target_dir=str(tmp_path))


class TestStatusRecord:
    """Tests for StatusRecord states and serialization."""

    def test_states(self):
        assert StatusRecord("a", installed=False).state == NOT_INSTALLED
        assert StatusRecord("a", installed=True).state == UNKNOWN
        assert StatusRecord("a", installed=True, local_version="1.0.0").state == INSTALLED
        assert StatusRecord("a", True, "1.0.0", "1.1.0", remote_checked=True).state == OUTDATED
        assert StatusRecord("a", True, "1.1.0", "1.1.0", remote_checked=True).state == UP_TO_DATE
        assert StatusRecord("a", True, "1.1.0", None, remote_checked=True).state == UNKNOWN

    def test_to_dict_uses_sentinel(self):
        data = StatusRecord("fzf", installed=False, remote_checked=True).to_dict()
        assert data["version"] == "-"
        assert data["latest"] == "-"
        assert data["state"] == NOT_INSTALLED

    def test_to_dict_latest_none_when_offline(self):
        assert StatusRecord("fzf", installed=True, local_version="1.0.0").to_dict()["latest"] is None


class TestToStatusRecord:
    """Tests for to_status_record()."""

    def test_absent_without_remote(self):
        entry = ManifestEntry("fzf", "junegunn/fzf", "fzf")
        record = to_status_record(entry, LocalStatus(state=LocalState.ABSENT))
        assert record.installed is False
        assert record.local_version is None
        assert record.remote_checked is False

    def test_unknown_version_keeps_detail(self):
        entry = ManifestEntry("fzf", "junegunn/fzf", "fzf")
        local = LocalStatus(state=LocalState.TIMED_OUT, path="/bin/fzf", detail="timed out after 3s")
        record = to_status_record(entry, local)
        assert record.installed is True
        assert record.local_version is None
        assert record.detail == "timed out after 3s"

    def test_remote_failure_detail(self):
        entry = ManifestEntry("fzf", "junegunn/fzf", "fzf")
        remote = RemoteStatus(state=RemoteState.TIMED_OUT, detail="timed out after 5s")
        record = to_status_record(entry, present("0.56.3"), remote)
        assert record.latest_version is None
        assert record.remote_checked is True
        assert record.detail == "latest: timed out after 5s"


class TestReconcile:
    """Tests for reconcile()."""

    def test_one_record_per_entry(self, settings):
        """Test N entries produce exactly N records with distinct names."""
        manifest = make_manifest("a", "b", "c", "d", "e")
        report = reconcile(manifest, frozenset(), settings, local_probe=local_probe_for({}))
        assert len(report) == 5
        assert len(set(report.names())) == 5

    def test_manifest_order_preserved(self, settings):
        """Test records follow declaration order however probes finish."""
        names = [f"tool{i}" for i in range(12)]
        manifest = make_manifest(*names)

        def slow_probe(entry):
            time.sleep(random.uniform(0, 0.02))
            return present("1.0.0")

        report = reconcile(manifest, frozenset(), settings, local_probe=slow_probe)
        assert report.names() == names

    def test_absent_entries_regardless_of_remote(self, settings):
        """Test absent entries are not installed and show the sentinel locally."""
        manifest = make_manifest("fzf")
        for include_remote in (False, True):
            report = reconcile(
                manifest,
                frozenset(),
                settings,
                include_remote=include_remote,
                local_probe=local_probe_for({}),
                remote_probe=remote_probe_for({"fzf": "0.56.3"}),
            )
            record = report.get("fzf")
            assert record.installed is False
            assert record.local_version is None
            assert record.to_dict()["version"] == "-"
            assert record.state == NOT_INSTALLED

    def test_absent_entry_still_gets_latest(self, settings):
        manifest = make_manifest("fzf")
        report = reconcile(
            manifest,
            frozenset(),
            settings,
            include_remote=True,
            local_probe=local_probe_for({}),
            remote_probe=remote_probe_for({"fzf": "0.56.3"}),
        )
        assert report.get("fzf").latest_version == "0.56.3"

    def test_no_remote_lookups_when_offline(self, settings):
        remote_probe = MagicMock()
        report = reconcile(
            make_manifest("a", "b"),
            frozenset(),
            settings,
            include_remote=False,
            local_probe=local_probe_for({"a": present("1.0.0")}),
            remote_probe=remote_probe,
        )
        remote_probe.assert_not_called()
        assert report.include_remote is False
        assert all(r.latest_version is None for r in report)
        assert report.get("a").state == INSTALLED

    def test_outdated_and_up_to_date(self, settings):
        report = reconcile(
            make_manifest("old", "new"),
            frozenset(),
            settings,
            include_remote=True,
            local_probe=local_probe_for({"old": present("1.0.0"), "new": present("2.0.0")}),
            remote_probe=remote_probe_for({"old": "1.2.0", "new": "2.0.0"}),
        )
        assert report.get("old").state == OUTDATED
        assert report.get("new").state == UP_TO_DATE
        assert [r.name for r in report.outdated()] == ["old"]

    def test_remote_unavailable_is_not_fatal(self, settings):
        report = reconcile(
            make_manifest("a", "b"),
            frozenset(),
            settings,
            include_remote=True,
            local_probe=local_probe_for({"a": present("1.0.0"), "b": present("1.0.0")}),
            remote_probe=remote_probe_for({"b": "1.0.0"}),
        )
        assert report.get("a").latest_version is None
        assert report.get("a").state == UNKNOWN
        assert "latest:" in report.get("a").detail
        assert report.get("b").state == UP_TO_DATE

    def test_probe_exception_keeps_entry(self, settings):
        """Test an unexpected probe error still yields a record for that entry."""
        def flaky(entry):
            if entry.name == "b":
                raise RuntimeError("boom")
            return present("1.0.0")

        report = reconcile(make_manifest("a", "b", "c"), frozenset(), settings, local_probe=flaky)
        assert report.names() == ["a", "b", "c"]
        assert "boom" in report.get("b").detail
        assert report.get("a").local_version == "1.0.0"

    def test_local_probe_exception_uses_snapshot(self, settings):
        """Test a failed local probe still reports presence from the directory snapshot."""
        def broken(entry):
            raise RuntimeError("boom")

        report = reconcile(make_manifest("a", "b"), frozenset({"a"}), settings, local_probe=broken)
        assert report.get("a").installed is True
        assert report.get("a").state == UNKNOWN
        assert report.get("b").installed is False

    def test_remote_exception_keeps_local_status(self, settings):
        """Test a failed latest lookup never hides an installed binary."""
        def broken_remote(entry):
            raise RuntimeError("connection reset mid-body")

        report = reconcile(
            make_manifest("a"),
            frozenset({"a"}),
            settings,
            include_remote=True,
            local_probe=local_probe_for({"a": present("1.0.0")}),
            remote_probe=broken_remote,
        )
        record = report.get("a")
        assert record.installed is True
        assert record.local_version == "1.0.0"
        assert record.latest_version is None
        assert record.remote_checked is True
        assert record.state == UNKNOWN
        assert "latest: lookup failed" in record.detail
        assert "connection reset mid-body" in record.detail

    @patch("binaudit.collectors.urllib.request.urlopen")
    def test_malformed_http_response_keeps_local_status(self, mock_urlopen, settings):
        """Test a garbled HTTP response from the releases API only loses the latest column."""
        mock_urlopen.side_effect = http.client.BadStatusLine("garbage")

        report = reconcile(
            make_manifest("a", "b"),
            frozenset({"a"}),
            settings,
            include_remote=True,
            local_probe=local_probe_for({"a": present("1.0.0")}),
        )
        assert report.names() == ["a", "b"]
        assert report.get("a").installed is True
        assert report.get("a").local_version == "1.0.0"
        assert report.get("a").latest_version is None
        assert report.get("b").installed is False
        assert "latest:" in report.get("a").detail

    def test_empty_manifest(self, settings):
        report = reconcile(Manifest(), frozenset(), settings)
        assert len(report) == 0
        assert report.summary_counts()["total"] == 0

    def test_single_worker(self, tmp_path):
        settings = Settings(target_dir=str(tmp_path), max_workers=1)
        report = reconcile(make_manifest("a", "b"), frozenset(), settings, local_probe=local_probe_for({}))
        assert report.names() == ["a", "b"]

    def test_summary_and_missing(self, settings):
        report = reconcile(
            make_manifest("a", "b", "c"),
            frozenset(),
            settings,
            include_remote=True,
            local_probe=local_probe_for({"a": present("1.0.0"), "b": present("1.0.0")}),
            remote_probe=remote_probe_for({"a": "1.0.0", "b": "1.5.0", "c": "3.0.0"}),
        )
        counts = report.summary_counts()
        assert counts["total"] == 3
        assert counts[NOT_INSTALLED] == 1
        assert counts[OUTDATED] == 1
        assert counts[UP_TO_DATE] == 1
        assert [r.name for r in report.missing()] == ["c"]

    def test_to_dict(self, settings):
        report = reconcile(make_manifest("a"), frozenset(), settings, local_probe=local_probe_for({}))
        data = report.to_dict()
        assert data["include_remote"] is False
        assert data["binaries"][0]["name"] == "a"


class TestDefaultProbes:
    """Tests for the default probe wiring."""

    def test_default_local_probe_uses_snapshot(self, settings):
        """Test entries missing from the snapshot are absent without running anything."""
        with patch("binaudit.detection.subprocess.run") as mock_run:
            report = reconcile(make_manifest("fzf"), frozenset(), settings)
        mock_run.assert_not_called()
        assert report.get("fzf").installed is False

    @patch("binaudit.reconcile.probe_remote")
    def test_default_remote_probe_uses_settings(self, mock_remote, tmp_path):
        mock_remote.return_value = RemoteStatus(state=RemoteState.FOUND, tag="v2.0.0", version="2.0.0")
        settings = Settings(
            target_dir=str(tmp_path),
            http_timeout_seconds=7,
            github_token="tok",
            github_api_url="https://ghe.example.com/api/v3",
        )
        report = reconcile(make_manifest("gh"), frozenset(), settings, include_remote=True)
        mock_remote.assert_called_once_with(
            "owner/gh",
            timeout=7,
            token="tok",
            api_url="https://ghe.example.com/api/v3",
        )
        assert report.get("gh").latest_version == "2.0.0"
