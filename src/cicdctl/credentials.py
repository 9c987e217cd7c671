"""File-backed secret store.

Each secret lives in its own file, ``<artifact_root>/credentials/<key>``, with
owner-only permissions. There is exactly one slot per key: rotating a secret
overwrites the previous value and no history is kept on disk.

The store never prompts and never logs values. Gating the display of a secret
behind an explicit confirmation is the caller's job.
"""
from __future__ import annotations

import logging
import os
import secrets
import string
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .actions import PlannedAction, RunOptions
from .identifiers import validate_secret_key

LOGGER = logging.getLogger(__name__)

SECRET_FILE_MODE = 0o600
SECRET_DIR_MODE = 0o700
DEFAULT_SECRET_LENGTH = 24
_ALPHABET = string.ascii_letters + string.digits


class SecretStoreError(RuntimeError):
    """Raised when the store cannot persist or read a secret."""


class SecretNotFoundError(SecretStoreError):
    """Raised when a requested secret key does not exist."""


class InvalidSecretError(ValueError):
    """Raised when a secret value is unacceptable (for example empty)."""


def generate_secret(length: int = DEFAULT_SECRET_LENGTH) -> str:
    """Return a random alphanumeric secret of *length* characters."""
    if length < 8:
        raise InvalidSecretError("Generated secrets must be at least 8 characters long.")
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _validate_value(value: str | bytes) -> bytes:
    if isinstance(value, str):
        value = value.encode("utf-8")
    elif not isinstance(value, bytes):
        raise InvalidSecretError("Secret values must be text or bytes.")
    if not value.strip():
        raise InvalidSecretError("Secret values must not be empty.")
    return value


@dataclass(slots=True)
class SecretStore:
    """Persist named secrets under *root* with owner-only permissions."""

    root: Path
    options: RunOptions = RunOptions()

    def path_for(self, key: str) -> Path:
        """Return the file holding *key* after validating the key."""
        return self.root / validate_secret_key(key)

    # Mutators ----------------------------------------------------------
    def put(self, key: str, value: str | bytes) -> list[PlannedAction]:
        """Store *value* under *key*, replacing any previous value.

        Text is stored UTF-8 encoded; bytes are stored as given.
        """
        path = self.path_for(key)
        payload = _validate_value(value)
        actions = self._plan_write(path, len(payload))
        if self.options.dry_run:
            return actions
        self._write(path, payload)
        return actions

    def rotate(
        self, key: str, value: str | bytes | Callable[[], str | bytes]
    ) -> list[PlannedAction]:
        """Replace the existing value of *key*; the old value is not recoverable.

        *value* may be literal text or bytes, or a zero-argument generator such as
        :func:`generate_secret`.
        """
        path = self.path_for(key)
        if not path.is_file():
            raise SecretNotFoundError(f"Secret '{key}' does not exist.")
        if self.options.dry_run:
            return [PlannedAction("write", str(path), f"rotate, mode {SECRET_FILE_MODE:04o}")]
        new_value = value() if callable(value) else value
        payload = _validate_value(new_value)
        actions = self._plan_write(path, len(payload))
        self._write(path, payload)
        return actions

    def delete(self, key: str) -> list[PlannedAction]:
        """Remove *key*; deleting an absent key is not an error."""
        path = self.path_for(key)
        if not path.exists():
            return []
        actions = [PlannedAction("delete", str(path))]
        if self.options.dry_run:
            return actions
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise SecretStoreError(f"Failed to delete secret '{key}': {exc}") from exc
        return actions

    def wipe_all(self) -> list[PlannedAction]:
        """Remove every secret in the store."""
        actions = [PlannedAction("delete", str(self.root / key)) for key in sorted(self.list())]
        if self.options.dry_run:
            return actions
        for key in sorted(self.list()):
            try:
                (self.root / key).unlink(missing_ok=True)
            except OSError as exc:
                raise SecretStoreError(f"Failed to delete secret '{key}': {exc}") from exc
        return actions

    # Readers -----------------------------------------------------------
    def get_bytes(self, key: str) -> bytes:
        """Return the raw value stored under *key*."""
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise SecretNotFoundError(f"Secret '{key}' does not exist.") from exc
        except OSError as exc:
            raise SecretStoreError(f"Failed to read secret '{key}': {exc}") from exc

    def get(self, key: str) -> str:
        """Return the value stored under *key* as text."""
        try:
            return self.get_bytes(key).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SecretStoreError(f"Secret '{key}' is not valid UTF-8 text.") from exc

    def exists(self, key: str) -> bool:
        """Return True when *key* has a stored value."""
        return self.path_for(key).is_file()

    def list(self) -> dict[str, int]:
        """Return ``{key: byte_length}`` for every stored secret."""
        if not self.root.is_dir():
            return {}
        entries: dict[str, int] = {}
        for path in sorted(self.root.iterdir()):
            if path.name.startswith(".") or not path.is_file():
                continue
            entries[path.name] = path.stat().st_size
        return entries

    # Internals ---------------------------------------------------------
    def _plan_write(self, path: Path, size: int) -> list[PlannedAction]:
        actions: list[PlannedAction] = []
        if not self.root.is_dir():
            actions.append(PlannedAction("mkdir", str(self.root), f"mode {SECRET_DIR_MODE:04o}"))
        actions.append(
            PlannedAction("write", str(path), f"{size} bytes, mode {SECRET_FILE_MODE:04o}")
        )
        return actions

    def _write(self, path: Path, payload: bytes) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True, mode=SECRET_DIR_MODE)
        except OSError as exc:
            message = f"Unable to create credentials directory {self.root}: {exc}"
            raise SecretStoreError(message) from exc
        _harden(self.root, SECRET_DIR_MODE)

        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        except OSError as exc:
            raise SecretStoreError(f"Failed to write secret '{path.name}': {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            _harden(tmp_path, SECRET_FILE_MODE)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise SecretStoreError(f"Failed to write secret '{path.name}': {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _harden(path: Path, mode: int) -> None:
    try:
        os.chmod(path, mode)
    except OSError as exc:
        LOGGER.warning("Unable to set mode %04o on %s: %s", mode, path, exc)


__all__ = [
    "DEFAULT_SECRET_LENGTH",
    "InvalidSecretError",
    "SecretNotFoundError",
    "SecretStore",
    "SecretStoreError",
    "generate_secret",
]
