"""Structured operation logging for cicdctl.

Every CLI operation produces one JSON line in ``operations.jsonl`` and one
human-readable line in ``cicdctl.log`` under the configured logs directory.
Logging must never take a provisioning run down with it: if the directory
cannot be created or a write fails, the logger disables itself and the
operation carries on.

Secret values are never handed to the logger; callers pass key names and byte
lengths only.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

LOGGER = logging.getLogger(__name__)


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class _Step:
    name: str
    status: str
    detail: object | None


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the final result for a single CLI operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    actor: str
    started: float
    steps: list[_Step] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "info", detail: object | None = None) -> None:
        """Record an intermediate step."""
        self.steps.append(_Step(name=name, status=status, detail=detail))

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = value

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        backups: Iterable[object] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "changed": changed,
            "backups": [_sanitize(item) for item in backups or []],
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        duration_ms = int((time.monotonic() - self.started) * 1000)
        result = self.result or {
            "status": "unknown",
            "message": "operation exited without reporting a result",
            "warnings": [],
            "errors": [],
            "changed": None,
            "backups": [],
        }
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "command": self.command,
            "args": _sanitize(dict(self.args)),
            "target": _sanitize(self.target) if self.target is not None else None,
            "actor": self.actor,
            "steps": [
                {"name": step.name, "status": step.status, "detail": _sanitize(step.detail)}
                for step in self.steps
            ],
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": duration_ms,
            "result": result,
            "context": {"cicdctl_version": __version__},
        }


class StructuredLogger:
    """Append-only JSONL operation log with a human-readable companion."""

    def __init__(self, logs_dir: Path, *, name: str = "cicdctl", create: bool = True) -> None:
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / "operations.jsonl"
        self._human_log_path = self._logs_dir / f"{name}.log"
        self._enabled = True
        if not create and not self._logs_dir.is_dir():
            self._enabled = False
            return
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            LOGGER.warning("Operation logging disabled; cannot create %s: %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return True while the logger is still writing records."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=target,
            actor=_current_actor(),
            started=time.monotonic(),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record["result"]
        status = result.get("status") if isinstance(result, dict) else "unknown"
        message = result.get("message") if isinstance(result, dict) else ""
        human = f"{record['timestamp']} {scope.actor} {scope.command} [{status}] {message}\n"
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human)
        except OSError as exc:
            LOGGER.warning("Operation logging disabled after write failure: %s", exc)
            self._enabled = False
            return
        for path in (self._operations_log_path, self._human_log_path):
            try:
                os.chmod(path, 0o600)
            except OSError:
                continue


def _current_actor() -> str:
    sudo_user = os.environ.get("SUDO_USER")
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = str(os.getuid())
    if sudo_user and sudo_user != user:
        return f"{sudo_user} (as {user})"
    return user


__all__ = ["OperationScope", "StructuredLogger"]
