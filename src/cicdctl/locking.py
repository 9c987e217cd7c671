"""Advisory file locks guarding read-modify-write state.

Only the whitelist and the restart authorization boundary have a real
read-modify-write hazard, so those are the only callers. Locks live under the
runtime directory and are taken with ``fcntl.flock``; each lock file carries
JSON metadata describing the holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

GLOBAL_LOCK_NAME = "cicdctl"
_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is not acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire named advisory locks under a runtime directory."""

    def __init__(self, runtime_dir: Path, *, default_timeout: float = 30.0) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def named_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block."""
        path = self.lock_path(name)
        try:
            self.runtime_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LockError(f"Unable to create lock directory {self.runtime_dir}: {exc}") from exc

        limit = self.default_timeout if timeout is None else timeout
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = {"pid": os.getpid(), "path": str(path), "acquired_at": time.time()}
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def mutation_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock used for whitelist and grant mutation."""
        with self.named_lock(GLOBAL_LOCK_NAME, timeout=timeout) as handle:
            yield handle


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
