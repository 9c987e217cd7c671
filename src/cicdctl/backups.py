"""Pre-mutation snapshots and retention for tracked configuration paths.

Snapshots are compressed tar archives written to the backups directory as
``<basename>.<YYYYmmddHHMMSS-ffffff>.<ext>``. All snapshots sharing a basename
form a *family*; retention is applied per family right after each snapshot.

The retention policy is either "keep the last N" or "keep everything younger
than D days". Whatever the policy says, the snapshot created by the current
call is never pruned, and a family is never pruned down to zero.

The path each family was taken from is recorded in the state registry so a
snapshot can be restored in place. A restore first snapshots whatever currently
sits at the target, then swaps the extracted copy in.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .actions import PlannedAction, RunOptions
from .archive import (
    ArchiveError,
    compression_extension,
    create_archive,
    extract_archive,
    resolve_algorithm,
)
from .config import RetentionConfig
from .state import StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)

RETENTION_FILE = "retention.yml"
SOURCES_FILE = "snapshot-sources.yml"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S-%f"
ARCHIVE_MODE = 0o600
_ARCHIVE_SUFFIX = r"(?:tar|tar\.gz|tar\.zst)"
_SNAPSHOT_RE = re.compile(rf"^(?P<family>.+)\.(?P<stamp>\d{{14}}-\d{{6}})\.{_ARCHIVE_SUFFIX}$")
_FAMILY_RE = re.compile(r"^[A-Za-z0-9._@-]+$")


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class SnapshotNotFoundError(BackupError):
    """Raised when no snapshot matches a restore request."""


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class RetentionPolicy:
    """Keep the last ``value`` snapshots (``count``) or ``value`` days (``days``)."""

    mode: str = "count"
    value: int = 7

    def __post_init__(self) -> None:
        """Validate the policy values."""
        if self.mode not in {"count", "days"}:
            raise BackupError(f"Unsupported retention mode '{self.mode}'. Use 'count' or 'days'.")
        if isinstance(self.value, bool) or not isinstance(self.value, int) or self.value < 0:
            raise BackupError("Retention value must be a non-negative integer.")

    @classmethod
    def keep_last(cls, count: int) -> RetentionPolicy:
        """Return a policy keeping the newest *count* snapshots."""
        return cls(mode="count", value=count)

    @classmethod
    def keep_days(cls, days: int) -> RetentionPolicy:
        """Return a policy keeping snapshots younger than *days* days."""
        return cls(mode="days", value=days)

    def describe(self) -> str:
        """Return a short human-readable description."""
        if self.mode == "count":
            return f"keep last {self.value}"
        return f"keep {self.value} days"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"mode": self.mode, "value": self.value}


@dataclass(frozen=True)
class BackupSnapshot:
    """A single archive belonging to a snapshot family."""

    family: str
    created_at: datetime
    archive_path: Path
    retained: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "family": self.family,
            "created_at": self.created_at.isoformat(),
            "archive": str(self.archive_path),
            "retained": self.retained,
        }


@dataclass(frozen=True)
class SnapshotResult:
    """Outcome of :meth:`BackupManager.snapshot`."""

    status: str  # "created", "skipped" or "planned"
    source_path: Path
    snapshot: BackupSnapshot | None = None
    pruned: tuple[Path, ...] = ()
    actions: tuple[PlannedAction, ...] = field(default_factory=tuple)

    @property
    def skipped(self) -> bool:
        """Return True when the source did not exist."""
        return self.status == "skipped"


@dataclass(frozen=True)
class RestoreResult:
    """Outcome of :meth:`BackupManager.restore`."""

    status: str  # "restored" or "planned"
    snapshot: BackupSnapshot
    destination: Path
    safety: SnapshotResult | None = None
    actions: tuple[PlannedAction, ...] = field(default_factory=tuple)


class BackupManager:
    """Create snapshots and enforce retention under a backups directory."""

    def __init__(
        self,
        root: Path,
        state: StateRegistry,
        *,
        options: RunOptions = RunOptions(),
        compression: str = "auto",
        compression_level: int | None = None,
        default_retention: RetentionConfig = RetentionConfig(),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.root = Path(root)
        self.state = state
        self.options = options
        self.compression = compression
        self.compression_level = compression_level
        self.default_retention = default_retention
        self.clock = clock

    # Retention --------------------------------------------------------
    def get_retention(self) -> RetentionPolicy:
        """Return the persisted policy, or the configured default."""
        try:
            stored = self.state.read_mapping(RETENTION_FILE, "retention")
        except StateRegistryError as exc:
            raise BackupError(str(exc)) from exc
        if not stored:
            return RetentionPolicy(self.default_retention.mode, self.default_retention.value)
        value = stored.get("value")
        if isinstance(value, bool) or not isinstance(value, int):
            raise BackupError(
                f"Invalid retention value in {self.state.path_for(RETENTION_FILE)}: {value!r}."
            )
        return RetentionPolicy(mode=str(stored.get("mode", "count")), value=value)

    def set_retention(self, policy: RetentionPolicy) -> list[PlannedAction]:
        """Persist *policy* so future sweeps use it."""
        actions = [
            PlannedAction(
                "write", str(self.state.path_for(RETENTION_FILE)), policy.describe()
            )
        ]
        if self.options.dry_run:
            return actions
        try:
            self.state.write(RETENTION_FILE, {"retention": policy.to_dict()})
        except StateRegistryError as exc:
            raise BackupError(str(exc)) from exc
        return actions

    # Snapshots --------------------------------------------------------
    def snapshot(self, source_path: Path, *, family: str | None = None) -> SnapshotResult:
        """Archive *source_path* and prune its family.

        The family defaults to the basename of *source_path*; pass *family* when
        two tracked paths share a basename.

        A missing source is reported as ``skipped``. Failing to write the
        archive raises :class:`BackupError`; callers must not proceed with the
        mutation the snapshot was protecting.
        """
        source = Path(source_path)
        return self._take(source, family or source.name, record=True)

    def _take(
        self,
        source: Path,
        family: str,
        *,
        record: bool,
        protect: Collection[Path] = (),
    ) -> SnapshotResult:
        if not source.exists():
            return SnapshotResult(status="skipped", source_path=source)

        if not _FAMILY_RE.match(family):
            raise BackupError(f"Invalid snapshot family name '{family}'.")
        algorithm = resolve_algorithm(self.compression)
        created_at = self._unique_timestamp(family, algorithm)
        archive_path = self._archive_path(family, created_at, algorithm)
        snapshot = BackupSnapshot(family=family, created_at=created_at, archive_path=archive_path)

        actions: list[PlannedAction] = []
        if not self.root.is_dir():
            actions.append(PlannedAction("mkdir", str(self.root), "mode 0700"))
        # Dry-run output must not depend on the clock.
        planned_name = (
            self.root / f"{family}.<timestamp>.{compression_extension(algorithm)}"
            if self.options.dry_run
            else archive_path
        )
        actions.append(
            PlannedAction("archive", str(planned_name), f"from {source}, {algorithm}")
        )

        existing = self.list_snapshots(family)
        doomed = self._select_for_pruning(
            [snapshot, *existing], keep={snapshot.archive_path, *protect}
        )
        actions.extend(PlannedAction("delete", str(path)) for path in doomed)

        if self.options.dry_run:
            return SnapshotResult(
                status="planned",
                source_path=source,
                snapshot=snapshot,
                pruned=tuple(doomed),
                actions=tuple(actions),
            )

        try:
            self.root.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            raise BackupError(f"Failed to prepare backup directory {self.root}: {exc}") from exc
        try:
            create_archive(
                source,
                archive_path,
                algorithm,
                self.compression_level,
                mode=ARCHIVE_MODE,
            )
        except ArchiveError as exc:
            raise BackupError(f"Snapshot of {source} failed: {exc}") from exc

        if record:
            self._record_source(family, source)
        pruned = self._delete(doomed)
        return SnapshotResult(
            status="created",
            source_path=source,
            snapshot=snapshot,
            pruned=tuple(pruned),
            actions=tuple(actions),
        )

    def prune(self, family: str) -> list[Path]:
        """Delete snapshots of *family* beyond the retention cutoff."""
        snapshots = self.list_snapshots(family)
        if not snapshots:
            return []
        doomed = self._select_for_pruning(snapshots, keep={snapshots[0].archive_path})
        if self.options.dry_run:
            return doomed
        return self._delete(doomed)

    def list_snapshots(self, family: str) -> list[BackupSnapshot]:
        """Return the snapshots of *family*, newest first."""
        if not self.root.is_dir():
            return []
        snapshots: list[BackupSnapshot] = []
        for path in self.root.iterdir():
            parsed = _parse_snapshot_name(path.name)
            if parsed is None or parsed[0] != family or not path.is_file():
                continue
            snapshots.append(BackupSnapshot(family=family, created_at=parsed[1], archive_path=path))
        snapshots.sort(key=lambda item: (item.created_at, item.archive_path.name), reverse=True)
        policy = self.get_retention()
        now = self._now()
        return [
            BackupSnapshot(
                family=item.family,
                created_at=item.created_at,
                archive_path=item.archive_path,
                retained=_is_retained(policy, index, item, now),
            )
            for index, item in enumerate(snapshots)
        ]

    def families(self) -> list[str]:
        """Return every snapshot family present in the backups directory."""
        if not self.root.is_dir():
            return []
        names = {
            parsed[0]
            for parsed in (_parse_snapshot_name(path.name) for path in self.root.iterdir())
            if parsed is not None
        }
        return sorted(names)

    # Restore ----------------------------------------------------------
    def find_snapshot(self, family: str, at: str | None = None) -> BackupSnapshot:
        """Return the newest snapshot of *family*, or the one taken at *at*.

        *at* is the archive timestamp (``YYYYmmddHHMMSS-ffffff``) or any prefix
        of it that matches exactly one snapshot.
        """
        snapshots = self.list_snapshots(family)
        if not snapshots:
            raise SnapshotNotFoundError(f"No snapshots exist for '{family}'.")
        if at is None:
            return snapshots[0]
        matches = [
            item for item in snapshots if item.created_at.strftime(TIMESTAMP_FORMAT).startswith(at)
        ]
        if not matches:
            raise SnapshotNotFoundError(f"No snapshot of '{family}' was taken at '{at}'.")
        if len(matches) > 1:
            raise SnapshotNotFoundError(
                f"Timestamp '{at}' matches {len(matches)} snapshots of '{family}'; be more specific."
            )
        return matches[0]

    def source_for(self, family: str) -> Path | None:
        """Return the path *family* was last snapshotted from, if recorded."""
        try:
            sources = self.state.read_mapping(SOURCES_FILE, "sources")
        except StateRegistryError as exc:
            raise BackupError(str(exc)) from exc
        recorded = sources.get(family)
        return Path(str(recorded)) if recorded else None

    def restore_target(self, family: str, destination: Path | None = None) -> Path:
        """Return where a snapshot of *family* would be restored."""
        if destination is not None:
            return Path(destination)
        recorded = self.source_for(family)
        if recorded is None:
            raise BackupError(
                f"No source path is recorded for '{family}'; pass an explicit destination."
            )
        return recorded

    def restore(
        self, snapshot: BackupSnapshot, *, destination: Path | None = None
    ) -> RestoreResult:
        """Put the contents of *snapshot* back at its source (or *destination*).

        Whatever currently exists at the target is snapshotted into the same
        family first; the archive being restored is never pruned by that step.
        """
        archive = snapshot.archive_path
        if not archive.is_file():
            raise SnapshotNotFoundError(f"Snapshot {archive} does not exist.")
        target = self.restore_target(snapshot.family, destination)

        safety = self._take(target, snapshot.family, record=False, protect={archive})
        actions = [*safety.actions, PlannedAction("restore", str(target), f"from {archive.name}")]
        if self.options.dry_run:
            return RestoreResult(
                status="planned",
                snapshot=snapshot,
                destination=target,
                safety=safety,
                actions=tuple(actions),
            )

        self._extract_into_place(archive, target)
        LOGGER.info("Restored %s from %s.", target, archive)
        return RestoreResult(
            status="restored",
            snapshot=snapshot,
            destination=target,
            safety=safety,
            actions=tuple(actions),
        )

    # Internals --------------------------------------------------------
    def _extract_into_place(self, archive: Path, target: Path) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{target.name}.restore-", dir=target.parent))
        except OSError as exc:
            raise BackupError(f"Failed to prepare restore of {target}: {exc}") from exc
        try:
            extract_archive(archive, staging)
            entries = list(staging.iterdir())
            if len(entries) != 1:
                raise BackupError(
                    f"Snapshot {archive.name} must contain exactly one top-level entry."
                )
            payload = entries[0]
            if target.exists() and (target.is_dir() or payload.is_dir()):
                aside = staging / ".previous"
                os.replace(target, aside)
                try:
                    os.replace(payload, target)
                except OSError:
                    os.replace(aside, target)
                    raise
            else:
                os.replace(payload, target)
        except ArchiveError as exc:
            raise BackupError(f"Failed to extract {archive.name}: {exc}") from exc
        except OSError as exc:
            raise BackupError(f"Failed to restore {target}: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _record_source(self, family: str, source: Path) -> None:
        try:
            sources = self.state.read_mapping(SOURCES_FILE, "sources")
            location = str(source.absolute())
            if sources.get(family) != location:
                sources[family] = location
                self.state.write(SOURCES_FILE, {"sources": sources})
        except StateRegistryError as exc:
            raise BackupError(str(exc)) from exc

    def _select_for_pruning(
        self, snapshots: list[BackupSnapshot], *, keep: Collection[Path]
    ) -> list[Path]:
        policy = self.get_retention()
        now = self._now()
        ordered = sorted(
            snapshots, key=lambda item: (item.created_at, item.archive_path.name), reverse=True
        )
        doomed: list[Path] = []
        for index, item in enumerate(ordered):
            if item.archive_path in keep or index == 0:
                continue
            if not _is_retained(policy, index, item, now):
                doomed.append(item.archive_path)
        return doomed

    def _delete(self, paths: list[Path]) -> list[Path]:
        removed: list[Path] = []
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise BackupError(f"Failed to prune snapshot {path}: {exc}") from exc
            removed.append(path)
        return removed

    def _archive_path(self, family: str, created_at: datetime, algorithm: str) -> Path:
        stamp = created_at.strftime(TIMESTAMP_FORMAT)
        return self.root / f"{family}.{stamp}.{compression_extension(algorithm)}"

    def _now(self) -> datetime:
        current = self.clock()
        if current.tzinfo is None:
            return current.replace(tzinfo=UTC)
        return current.astimezone(UTC)

    def _unique_timestamp(self, family: str, algorithm: str) -> datetime:
        created_at = self._now()
        taken = {item.created_at for item in self.list_snapshots(family)}
        while created_at in taken or self._archive_path(family, created_at, algorithm).exists():
            created_at += timedelta(microseconds=1)
        return created_at


def _parse_snapshot_name(name: str) -> tuple[str, datetime] | None:
    match = _SNAPSHOT_RE.match(name)
    if match is None:
        return None
    try:
        created_at = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None
    return match.group("family"), created_at


def _is_retained(policy: RetentionPolicy, index: int, item: BackupSnapshot, now: datetime) -> bool:
    if index == 0:
        return True
    if policy.mode == "count":
        return index < max(policy.value, 1)
    return now - item.created_at <= timedelta(days=policy.value)


__all__ = [
    "BackupError",
    "BackupManager",
    "BackupSnapshot",
    "RestoreResult",
    "RetentionPolicy",
    "SnapshotNotFoundError",
    "SnapshotResult",
]
