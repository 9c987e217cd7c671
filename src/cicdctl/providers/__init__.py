"""Providers wrapping external system managers."""
from __future__ import annotations

from .systemd import SystemdError, SystemdProvider

__all__ = ["SystemdError", "SystemdProvider"]
