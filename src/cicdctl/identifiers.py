"""Validation helpers for operator-supplied identifiers.

Every name that ends up in a file path, a shell script or a sudoers rule is
validated here, once, at construction time. Callers receive the validated
string back so the check cannot be skipped accidentally.
"""
from __future__ import annotations

import os
import re
from pathlib import Path

SERVICE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._@-]+$")
SECRET_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
PRINCIPAL_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
SAFE_PATH_PATTERN = re.compile(r"^/[A-Za-z0-9._/-]+$")


class InvalidName(ValueError):
    """Raised when an identifier fails validation."""


def validate_service_name(name: str) -> str:
    """Return *name* if it is an acceptable systemd unit name."""
    if not isinstance(name, str) or not name:
        raise InvalidName("Service name must be a non-empty string.")
    if name in {".", ".."}:
        raise InvalidName(f"Service name '{name}' is reserved.")
    if not SERVICE_NAME_PATTERN.fullmatch(name):
        raise InvalidName(
            f"Service name '{name}' may only contain letters, digits, '.', '_', '@' and '-'."
        )
    return name


def validate_secret_key(key: str) -> str:
    """Return *key* if it is safe to use as a credential filename."""
    if not isinstance(key, str) or not key:
        raise InvalidName("Secret key must be a non-empty string.")
    if not SECRET_KEY_PATTERN.fullmatch(key):
        raise InvalidName(
            f"Secret key '{key}' must start with a letter or digit and contain only "
            "letters, digits, '.', '_' or '-' (max 128 characters)."
        )
    return key


def validate_principal(name: str) -> str:
    """Return *name* if it is a plausible POSIX user name."""
    if not isinstance(name, str) or not name:
        raise InvalidName("User name must be a non-empty string.")
    if not PRINCIPAL_PATTERN.fullmatch(name):
        raise InvalidName(
            f"User name '{name}' must start with a lowercase letter or '_' and contain "
            "only lowercase letters, digits, '_' or '-'."
        )
    return name


def validate_absolute_path(path: str | os.PathLike[str], *, label: str = "Path") -> Path:
    """Return *path* if it is absolute, canonical and free of metacharacters.

    Canonical means the lexical form is already normalised and the nearest
    existing ancestor does not resolve through a symlink to somewhere else.
    """
    text = os.fspath(path)
    if not SAFE_PATH_PATTERN.fullmatch(text):
        raise InvalidName(
            f"{label} '{text}' must be absolute and contain only letters, digits, "
            "'.', '_', '-' and '/'."
        )
    if os.path.normpath(text) != text:
        raise InvalidName(f"{label} '{text}' is not in canonical form.")
    if os.path.realpath(text) != text:
        raise InvalidName(f"{label} '{text}' resolves through a symlink.")
    return Path(text)


__all__ = [
    "InvalidName",
    "SERVICE_NAME_PATTERN",
    "validate_absolute_path",
    "validate_principal",
    "validate_secret_key",
    "validate_service_name",
]
