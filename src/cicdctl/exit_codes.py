"""Enumerations for CLI and restart wrapper exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``VALIDATION`` covers operator input (bad names, ports, versions).
    ``ENVIRONMENT`` covers missing tools, refused headless actions and
    operator aborts. ``PROVIDER`` covers fatal component failures such as a
    backup that could not be written or a grant that failed validation.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


class WrapperExit(IntEnum):
    """Exit codes shared by the installed restart wrapper and its Python mirror."""

    OK = 0
    USAGE = 2
    NOT_ALLOWED = 3
    UNIT_NOT_FOUND = 4
    RESTART_FAILED = 5


__all__ = ["ExitCode", "WrapperExit"]
