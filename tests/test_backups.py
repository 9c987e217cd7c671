"""Tests for snapshots and retention."""
from __future__ import annotations

import shutil
import tarfile
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from cicdctl.actions import RunOptions
from cicdctl.backups import BackupError, BackupManager, RetentionPolicy, SnapshotNotFoundError
from cicdctl.state import StateRegistry

pytestmark = pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta = timedelta(minutes=1)) -> None:
        self.current += delta


def _manager(
    tmp_path: Path,
    *,
    clock: Callable[[], datetime] | None = None,
    options: RunOptions = RunOptions(),
    compression: str = "none",
) -> BackupManager:
    return BackupManager(
        tmp_path / "backups",
        StateRegistry(tmp_path / "state"),
        options=options,
        compression=compression,
        clock=clock or FakeClock(),
    )


def _source(tmp_path: Path) -> Path:
    source = tmp_path / "etc" / "nginx.conf"
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_text("worker_processes 1;\n")
    return source


def test_snapshot_creates_archive_named_by_family_and_timestamp(tmp_path: Path) -> None:
    """Archives are named ``<family>.<timestamp>.<ext>`` and restricted to 0600."""
    manager = _manager(tmp_path, compression="gzip")
    source = _source(tmp_path)

    result = manager.snapshot(source)

    assert result.status == "created"
    assert result.snapshot is not None
    archive = result.snapshot.archive_path
    assert archive.name == "nginx.conf.20260301120000-000000.tar.gz"
    assert archive.stat().st_mode & 0o777 == 0o600
    with tarfile.open(archive) as handle:
        assert handle.getnames() == ["nginx.conf"]


def test_missing_source_is_skipped(tmp_path: Path) -> None:
    """A path that does not exist yet is reported as skipped."""
    manager = _manager(tmp_path)

    result = manager.snapshot(tmp_path / "absent")

    assert result.skipped
    assert not (tmp_path / "backups").exists()


def test_count_retention_keeps_newest(tmp_path: Path) -> None:
    """Only the newest N snapshots of a family survive."""
    manager = _manager(tmp_path)
    manager.set_retention(RetentionPolicy.keep_last(2))
    source = _source(tmp_path)

    for _ in range(4):
        last = manager.snapshot(source)

    snapshots = manager.list_snapshots("nginx.conf")
    assert len(snapshots) == 2
    assert last.snapshot is not None
    assert snapshots[0].archive_path == last.snapshot.archive_path
    assert len(last.pruned) == 1


def test_retention_zero_still_keeps_latest(tmp_path: Path) -> None:
    """A zero count never prunes a family down to nothing."""
    manager = _manager(tmp_path)
    manager.set_retention(RetentionPolicy.keep_last(0))
    source = _source(tmp_path)

    manager.snapshot(source)
    latest = manager.snapshot(source)

    snapshots = manager.list_snapshots("nginx.conf")
    assert [item.archive_path for item in snapshots] == [latest.snapshot.archive_path]  # type: ignore[union-attr]


def test_days_retention_prunes_old_snapshots(tmp_path: Path) -> None:
    """Snapshots older than the window are removed; the newest always stays."""
    clock = FakeClock()
    manager = _manager(tmp_path, clock=clock)
    manager.set_retention(RetentionPolicy.keep_days(4))
    source = _source(tmp_path)

    manager.snapshot(source)
    clock.advance(timedelta(days=3))
    second = manager.snapshot(source)
    clock.advance(timedelta(days=3))
    third = manager.snapshot(source)

    names = [item.archive_path for item in manager.list_snapshots("nginx.conf")]
    assert names == [third.snapshot.archive_path, second.snapshot.archive_path]  # type: ignore[union-attr]


def test_families_are_independent(tmp_path: Path) -> None:
    """Retention applies per family; an explicit family overrides the basename."""
    manager = _manager(tmp_path)
    manager.set_retention(RetentionPolicy.keep_last(1))
    source = _source(tmp_path)

    manager.snapshot(source)
    manager.snapshot(source, family="restart-grant")
    manager.snapshot(source, family="restart-grant")

    assert manager.families() == ["nginx.conf", "restart-grant"]
    assert len(manager.list_snapshots("nginx.conf")) == 1
    assert len(manager.list_snapshots("restart-grant")) == 1


def test_invalid_family_rejected(tmp_path: Path) -> None:
    """Family names must be filename-safe."""
    manager = _manager(tmp_path)

    with pytest.raises(BackupError):
        manager.snapshot(_source(tmp_path), family="../escape")


def test_same_instant_snapshots_do_not_collide(tmp_path: Path) -> None:
    """Two snapshots taken at the same clock reading get distinct names."""
    manager = _manager(tmp_path, clock=lambda: START)
    source = _source(tmp_path)

    first = manager.snapshot(source)
    second = manager.snapshot(source)

    assert first.snapshot is not None and second.snapshot is not None
    assert first.snapshot.archive_path != second.snapshot.archive_path
    assert len(manager.list_snapshots("nginx.conf")) == 2


def test_dry_run_plans_without_writing(tmp_path: Path) -> None:
    """Dry-run reports the archive it would create and touches nothing."""
    manager = _manager(tmp_path, options=RunOptions(dry_run=True))

    result = manager.snapshot(_source(tmp_path))

    assert result.status == "planned"
    assert [action.kind for action in result.actions] == ["mkdir", "archive"]
    assert not (tmp_path / "backups").exists()


def test_prune_applies_current_policy(tmp_path: Path) -> None:
    """Tightening the policy and pruning removes the excess snapshots."""
    manager = _manager(tmp_path)
    source = _source(tmp_path)
    for _ in range(3):
        manager.snapshot(source)

    manager.set_retention(RetentionPolicy.keep_last(1))
    listed = manager.list_snapshots("nginx.conf")
    assert [item.retained for item in listed] == [True, False, False]

    removed = manager.prune("nginx.conf")

    assert len(removed) == 2
    assert len(manager.list_snapshots("nginx.conf")) == 1


def test_retention_policy_validation(tmp_path: Path) -> None:
    """Negative values and unknown modes are rejected; the default comes from config."""
    with pytest.raises(BackupError):
        RetentionPolicy.keep_last(-1)
    with pytest.raises(BackupError):
        RetentionPolicy(mode="weekly", value=1)

    manager = _manager(tmp_path)
    assert manager.get_retention() == RetentionPolicy("count", 7)

    manager.set_retention(RetentionPolicy.keep_days(30))
    assert manager.get_retention().describe() == "keep 30 days"


def test_corrupt_retention_state_raises(tmp_path: Path) -> None:
    """A non-integer persisted value is reported, not silently defaulted."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "retention.yml").write_text("retention:\n  mode: count\n  value: lots\n")

    with pytest.raises(BackupError):
        _manager(tmp_path).get_retention()


def test_dry_run_plan_does_not_depend_on_the_clock(tmp_path: Path) -> None:
    """Repeated dry runs describe the same planned archive."""
    clock = FakeClock()
    manager = _manager(tmp_path, clock=clock, options=RunOptions(dry_run=True))
    source = _source(tmp_path)

    first = manager.snapshot(source)
    clock.advance(timedelta(seconds=7))
    second = manager.snapshot(source)

    assert [action.describe() for action in first.actions] == [
        action.describe() for action in second.actions
    ]
    assert str(tmp_path / "backups" / "nginx.conf.<timestamp>.tar") in first.actions[-1].describe()


def test_restore_round_trip_for_a_file(tmp_path: Path) -> None:
    """Restoring puts the old content and mode back and keeps the replaced copy."""
    clock = FakeClock()
    manager = _manager(tmp_path, clock=clock)
    source = _source(tmp_path)
    source.chmod(0o640)
    original = manager.snapshot(source).snapshot
    assert original is not None

    source.write_text("worker_processes 8;\n")
    source.chmod(0o600)
    clock.advance()
    result = manager.restore(manager.find_snapshot("nginx.conf"))

    assert result.status == "restored"
    assert result.destination == source.absolute()
    assert source.read_text() == "worker_processes 1;\n"
    assert source.stat().st_mode & 0o777 == 0o640
    assert result.safety is not None and result.safety.status == "created"
    assert len(manager.list_snapshots("nginx.conf")) == 2
    assert not [path for path in source.parent.iterdir() if ".restore-" in path.name]


def test_restore_replaces_a_directory_wholesale(tmp_path: Path) -> None:
    """Files added after the snapshot do not survive a directory restore."""
    manager = _manager(tmp_path)
    site = tmp_path / "etc" / "site"
    site.mkdir(parents=True)
    (site / "index.html").write_text("v1")
    manager.snapshot(site)

    (site / "index.html").write_text("v2")
    (site / "extra.html").write_text("new")
    manager.restore(manager.find_snapshot("site"))

    assert sorted(path.name for path in site.iterdir()) == ["index.html"]
    assert (site / "index.html").read_text() == "v1"


def test_restore_never_prunes_the_snapshot_being_restored(tmp_path: Path) -> None:
    """The safety snapshot taken before a restore cannot evict its source archive."""
    clock = FakeClock()
    manager = _manager(tmp_path, clock=clock)
    manager.set_retention(RetentionPolicy.keep_last(1))
    source = _source(tmp_path)
    wanted = manager.snapshot(source).snapshot
    assert wanted is not None

    source.write_text("broken\n")
    clock.advance()
    manager.restore(wanted)

    assert source.read_text() == "worker_processes 1;\n"
    assert wanted.archive_path.exists()


def test_restore_dry_run_plans_without_writing(tmp_path: Path) -> None:
    """Dry-run lists the safety snapshot and the restore and changes nothing."""
    source = _source(tmp_path)
    _manager(tmp_path).snapshot(source)
    source.write_text("changed\n")
    manager = _manager(tmp_path, options=RunOptions(dry_run=True))

    result = manager.restore(manager.find_snapshot("nginx.conf"))

    assert result.status == "planned"
    assert [action.kind for action in result.actions] == ["archive", "restore"]
    assert source.read_text() == "changed\n"
    assert len(manager.list_snapshots("nginx.conf")) == 1


def test_find_snapshot_by_timestamp(tmp_path: Path) -> None:
    """Timestamps select a snapshot exactly or by an unambiguous prefix."""
    clock = FakeClock()
    manager = _manager(tmp_path, clock=clock)
    source = _source(tmp_path)
    first = manager.snapshot(source).snapshot
    clock.advance(timedelta(hours=1))
    manager.snapshot(source)
    assert first is not None

    assert manager.find_snapshot("nginx.conf", "20260301120000-000000") == first
    assert manager.find_snapshot("nginx.conf", "2026030112").archive_path == first.archive_path
    with pytest.raises(SnapshotNotFoundError, match="matches 2"):
        manager.find_snapshot("nginx.conf", "20260301")
    with pytest.raises(SnapshotNotFoundError):
        manager.find_snapshot("nginx.conf", "1999")
    with pytest.raises(SnapshotNotFoundError):
        manager.find_snapshot("absent")


def test_restore_needs_a_known_destination(tmp_path: Path) -> None:
    """Without a recorded source the caller must say where to restore."""
    manager = _manager(tmp_path)
    source = _source(tmp_path)
    manager.snapshot(source)
    (tmp_path / "state" / "snapshot-sources.yml").unlink()
    snapshot = manager.find_snapshot("nginx.conf")

    with pytest.raises(BackupError, match="explicit destination"):
        manager.restore(snapshot)

    elsewhere = tmp_path / "copy" / "nginx.conf"
    manager.restore(snapshot, destination=elsewhere)
    assert elsewhere.read_text() == "worker_processes 1;\n"


def test_restore_missing_archive(tmp_path: Path) -> None:
    """A snapshot whose archive has vanished is reported as not found."""
    manager = _manager(tmp_path)
    snapshot = manager.snapshot(_source(tmp_path)).snapshot
    assert snapshot is not None
    snapshot.archive_path.unlink()

    with pytest.raises(SnapshotNotFoundError):
        manager.restore(snapshot)
