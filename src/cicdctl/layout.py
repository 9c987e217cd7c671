"""Planning and applying the artifact root directory layout."""
from __future__ import annotations

import os
import stat
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .actions import PlannedAction

ARTIFACT_SUBDIRS: tuple[str, ...] = ("credentials", "whitelist", "backups", "state", "logs")


class LayoutError(RuntimeError):
    """Raised when the directory layout cannot be applied."""


@dataclass(frozen=True)
class DirectorySpec:
    """A directory that must exist with a given mode."""

    path: Path
    mode: int = 0o700


@dataclass(frozen=True)
class DirectoryAction:
    """A single mkdir or chmod step."""

    kind: str
    path: Path
    mode: int

    def as_planned(self) -> PlannedAction:
        """Return the generic planned-action form used in dry-run output."""
        return PlannedAction(self.kind, str(self.path), f"mode {self.mode:04o}")


@dataclass(slots=True)
class DirectoryPlan:
    """Actions needed to converge on a set of :class:`DirectorySpec`."""

    actions: list[DirectoryAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        """Return True when nothing needs to change."""
        return not self.actions


def artifact_layout(root: Path, *, logs_dir: Path | None = None) -> list[DirectorySpec]:
    """Return the directory specs for an artifact root."""
    specs = [DirectorySpec(root, 0o755)]
    for name in ARTIFACT_SUBDIRS:
        path = logs_dir if name == "logs" and logs_dir is not None else root / name
        specs.append(DirectorySpec(path, 0o700))
    return specs


def plan_directories(specs: Iterable[DirectorySpec]) -> DirectoryPlan:
    """Compare *specs* with the filesystem and return the required actions."""
    plan = DirectoryPlan()
    for spec in specs:
        path = Path(spec.path)
        if not path.exists():
            plan.actions.append(DirectoryAction("mkdir", path, spec.mode))
            continue
        if not path.is_dir():
            plan.warnings.append(f"{path} exists but is not a directory.")
            continue
        current = stat.S_IMODE(path.stat().st_mode)
        if current != spec.mode:
            plan.actions.append(DirectoryAction("chmod", path, spec.mode))
    return plan


def apply_directory_plan(plan: DirectoryPlan) -> None:
    """Execute the actions in *plan*."""
    for action in plan.actions:
        try:
            if action.kind == "mkdir":
                action.path.mkdir(parents=True, exist_ok=True)
            os.chmod(action.path, action.mode)
        except OSError as exc:
            raise LayoutError(f"Failed to {action.kind} {action.path}: {exc}") from exc


__all__ = [
    "ARTIFACT_SUBDIRS",
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "LayoutError",
    "apply_directory_plan",
    "artifact_layout",
    "plan_directories",
]
