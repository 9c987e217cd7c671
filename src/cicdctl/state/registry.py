"""Helpers for the small YAML state files kept under ``<artifact_root>/state``.

The state directory stores things like the persisted retention policy
(``retention.yml``) and port reservations (``ports.yml``). Writes are atomic so
an interrupted run never leaves a half-written file behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage cicdctl state. Install with `pip install cicdctl`."
    ) from exc


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML state directory."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the state directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True, mode=0o700)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named state file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a state file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse state file {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to read state file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given state file."""
        try:
            self.ensure_root()
        except OSError as exc:
            message = f"Unable to create state directory {self.root}: {exc}"
            raise StateRegistryError(message) from exc
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o600)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write state file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def read_mapping(self, name: str, key: str) -> dict[str, object]:
        """Return the mapping stored under *key* in *name* (empty when absent)."""
        data = self.read(name, default={key: {}})
        if not isinstance(data, Mapping):
            raise StateRegistryError(f"State file {self.path_for(name)} must contain a mapping.")
        value = data.get(key) or {}
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"'{key}' in {self.path_for(name)} must be a mapping.")
        return {str(item_key): item for item_key, item in value.items()}


__all__ = ["StateRegistry", "StateRegistryError"]
