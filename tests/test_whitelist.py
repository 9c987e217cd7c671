"""Tests for the restart whitelist."""
from __future__ import annotations

from pathlib import Path

import pytest

from cicdctl.actions import RunOptions
from cicdctl.identifiers import InvalidName
from cicdctl.locking import LockManager, LockTimeoutError
from cicdctl.whitelist import ServiceWhitelist, WhitelistEntryNotFound


def _whitelist(tmp_path: Path, **kwargs: object) -> ServiceWhitelist:
    return ServiceWhitelist(tmp_path / "whitelist" / "allowed_services", **kwargs)  # type: ignore[arg-type]


def test_add_and_contains_exact_match(tmp_path: Path) -> None:
    """Membership is exact; prefixes and suffixes never match."""
    whitelist = _whitelist(tmp_path)

    whitelist.add("nginx")

    assert whitelist.contains("nginx") is True
    assert whitelist.contains("nginx-evil") is False
    assert whitelist.contains("ngin") is False


def test_add_is_idempotent_and_file_is_private(tmp_path: Path) -> None:
    """Adding twice is a no-op and the file is written 0600."""
    whitelist = _whitelist(tmp_path)

    assert len(whitelist.add("nginx")) == 1
    assert whitelist.add("nginx") == []

    assert whitelist.path.read_text() == "nginx\n"
    assert whitelist.path.stat().st_mode & 0o777 == 0o600


def test_remove_revokes_immediately(tmp_path: Path) -> None:
    """Removal takes effect on the next read."""
    whitelist = _whitelist(tmp_path)
    whitelist.add("nginx")
    whitelist.add("postgresql")

    whitelist.remove("nginx")

    assert whitelist.list() == {"postgresql"}
    with pytest.raises(WhitelistEntryNotFound):
        whitelist.remove("nginx")


def test_invalid_names_are_rejected(tmp_path: Path) -> None:
    """Names with shell or sudoers metacharacters never reach the file."""
    whitelist = _whitelist(tmp_path)

    with pytest.raises(InvalidName):
        whitelist.add("nginx;reboot")
    assert not whitelist.path.exists()


def test_hand_edited_file_skips_invalid_lines(tmp_path: Path) -> None:
    """Comments and blank lines are ignored; invalid lines are reported."""
    whitelist = _whitelist(tmp_path)
    whitelist.path.parent.mkdir(parents=True)
    whitelist.path.write_text("# approved\nnginx\n\nbad name\nnginx\n")

    assert whitelist.list() == {"nginx"}
    assert whitelist.invalid_lines() == ["bad name"]


def test_missing_file_means_empty(tmp_path: Path) -> None:
    """An absent whitelist allows nothing."""
    whitelist = _whitelist(tmp_path)

    assert whitelist.list() == set()
    assert whitelist.contains("nginx") is False


def test_dry_run_leaves_file_untouched(tmp_path: Path) -> None:
    """Dry-run returns the planned write without creating the file."""
    whitelist = _whitelist(tmp_path, options=RunOptions(dry_run=True))

    actions = whitelist.add("nginx")

    assert actions[0].describe().endswith("(add nginx)")
    assert not whitelist.path.exists()


def test_mutation_waits_for_global_lock(tmp_path: Path) -> None:
    """Mutations take the shared mutation lock."""
    locks = LockManager(tmp_path / "run", default_timeout=0.1)
    whitelist = _whitelist(tmp_path, locks=locks)

    with locks.mutation_lock():
        with pytest.raises(LockTimeoutError):
            whitelist.add("nginx")

    whitelist.add("nginx")
    assert whitelist.contains("nginx")
