"""The set of systemd units approved for unprivileged restart.

The whitelist file is the single source of truth: it is re-read on every call
and consulted by the installed restart wrapper on every invocation, so adding
or removing a name takes effect immediately. Membership is an exact string
match; ``nginx`` never matches ``nginx-evil``.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .actions import PlannedAction, RunOptions
from .identifiers import InvalidName, validate_service_name
from .locking import LockManager

LOGGER = logging.getLogger(__name__)

WHITELIST_FILE_MODE = 0o600
WHITELIST_DIR_MODE = 0o700


class WhitelistError(RuntimeError):
    """Raised when the whitelist cannot be read or written."""


class WhitelistEntryNotFound(WhitelistError):
    """Raised when removing a service that is not whitelisted."""


@dataclass(slots=True)
class ServiceWhitelist:
    """Manage ``whitelist/allowed_services`` under the artifact root."""

    path: Path
    options: RunOptions = RunOptions()
    locks: LockManager | None = None

    def contains(self, service_name: str) -> bool:
        """Return True when *service_name* is whitelisted (exact match)."""
        name = validate_service_name(service_name)
        return name in self._read()

    def list(self) -> set[str]:
        """Return the current whitelist."""
        return set(self._read())

    def add(self, service_name: str) -> list[PlannedAction]:
        """Add *service_name*; adding an existing entry is a no-op."""
        name = validate_service_name(service_name)
        with self._locked():
            entries = self._read()
            if name in entries:
                return []
            entries.append(name)
            actions = [PlannedAction("write", str(self.path), f"add {name}")]
            if not self.options.dry_run:
                self._write(entries)
        return actions

    def remove(self, service_name: str) -> list[PlannedAction]:
        """Remove *service_name*; raises when it is not whitelisted."""
        name = validate_service_name(service_name)
        with self._locked():
            entries = self._read()
            if name not in entries:
                raise WhitelistEntryNotFound(f"Service '{name}' is not in the whitelist.")
            remaining = [entry for entry in entries if entry != name]
            actions = [PlannedAction("write", str(self.path), f"remove {name}")]
            if not self.options.dry_run:
                self._write(remaining)
        return actions

    def invalid_lines(self) -> list[str]:
        """Return non-empty lines in the file that are not valid service names."""
        return [
            line
            for line in self._raw_lines()
            if not line.startswith("#") and not _is_valid(line)
        ]

    # ------------------------------------------------------------------
    def _raw_lines(self) -> list[str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise WhitelistError(f"Unable to read whitelist {self.path}: {exc}") from exc
        return [line.strip() for line in text.splitlines() if line.strip()]

    def _read(self) -> list[str]:
        entries: list[str] = []
        for line in self._raw_lines():
            if line.startswith("#"):
                continue
            if not _is_valid(line):
                LOGGER.warning("Ignoring invalid whitelist entry %r in %s.", line, self.path)
                continue
            if line not in entries:
                entries.append(line)
        return entries

    def _write(self, entries: list[str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True, mode=WHITELIST_DIR_MODE)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except OSError as exc:
            raise WhitelistError(f"Unable to prepare whitelist {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                for entry in sorted(entries):
                    handle.write(f"{entry}\n")
            os.chmod(tmp_path, WHITELIST_FILE_MODE)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise WhitelistError(f"Unable to write whitelist {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self.locks is None or self.options.dry_run:
            yield
            return
        with self.locks.mutation_lock():
            yield


def _is_valid(name: str) -> bool:
    try:
        validate_service_name(name)
    except InvalidName:
        return False
    return True


__all__ = ["ServiceWhitelist", "WhitelistEntryNotFound", "WhitelistError"]
