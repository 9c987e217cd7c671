"""Run options and planned actions shared by mutating components."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RunOptions:
    """Execution switches threaded into every mutating component."""

    dry_run: bool = False
    headless: bool = False
    allow_sudoers: bool = False


@dataclass(frozen=True)
class PlannedAction:
    """A single filesystem or process action a component intends to perform."""

    kind: str
    target: str
    detail: str | None = None

    def describe(self) -> str:
        """Return the literal, human-readable form used in dry-run output."""
        text = f"{self.kind} {self.target}"
        if self.detail:
            text = f"{text} ({self.detail})"
        return text

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"kind": self.kind, "target": self.target, "detail": self.detail}


__all__ = ["PlannedAction", "RunOptions"]
