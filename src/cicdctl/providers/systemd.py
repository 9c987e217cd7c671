"""Systemd provider used to query and restart units."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Thin wrapper around ``systemctl`` for unit queries and restarts."""

    systemctl_bin: str = "/usr/bin/systemctl"

    def unit_exists(self, unit: str) -> bool:
        """Return True when systemd knows about *unit*."""
        result = self._systemctl(
            "show", "--property=LoadState", "--value", "--", unit, check=False
        )
        if result.returncode != 0:
            return False
        state = (result.stdout or "").strip()
        return bool(state) and state != "not-found"

    def is_active(self, unit: str) -> bool:
        """Return True when *unit* is currently active."""
        result = self._systemctl("is-active", "--quiet", "--", unit, check=False)
        return result.returncode == 0

    def restart(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", "--", unit, dry_run=dry_run)

    def status(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Return the status output for *unit*."""
        return self._systemctl("status", "--no-pager", "--", unit, check=False)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        *args: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.systemctl_bin, *args]
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.systemctl_bin} {args[0]}",
            dry_run=dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
