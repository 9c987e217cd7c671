"""Jinja2 template rendering for generated scripts and grant files.

Templates ship inside the package under ``resources/templates``. Operators
may shadow any of them by placing a file with the same relative name in the
configured override directory. Rendering is strict: an undefined variable is
an error, never an empty string.

Two filters keep operator-supplied values from being interpreted by the
consumer of the rendered text:

``shquote``
    quotes a value for inclusion in a POSIX shell script.
``sudoers_arg``
    escapes the characters sudoers treats specially inside a command spec.
"""
from __future__ import annotations

import os
import shlex
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent / "resources" / "templates"

_SUDOERS_SPECIAL = {"\\", ",", ":", "=", " ", "\t"}


class TemplateError(RuntimeError):
    """Raised when a template cannot be written to disk."""


def shell_quote(value: object) -> str:
    """Return *value* quoted for a POSIX shell."""
    return shlex.quote(str(value))


def sudoers_escape(value: object) -> str:
    """Return *value* with sudoers command-spec metacharacters escaped."""
    return "".join(f"\\{char}" if char in _SUDOERS_SPECIAL else char for char in str(value))


class TemplateEngine:
    """Render package templates with optional operator overrides."""

    def __init__(self, search_paths: list[Path]) -> None:
        self.search_paths = search_paths
        self._env = Environment(
            loader=FileSystemLoader([str(path) for path in search_paths]),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self._env.filters["shquote"] = shell_quote
        self._env.filters["sudoers_arg"] = sudoers_escape

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates from *override_dir*."""
        paths: list[Path] = []
        if override_dir is not None and Path(override_dir).is_dir():
            paths.append(Path(override_dir))
        paths.append(BUILTIN_TEMPLATES_DIR)
        return cls(paths)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self._env.get_template(name)
        return template.render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return True when the content changed."""
        rendered = self.render_to_string(name, context)
        destination = Path(destination)
        if destination.exists():
            try:
                current = destination.read_text(encoding="utf-8")
            except OSError:
                current = None
            if current == rendered:
                os.chmod(destination, mode)
                return False
        write_atomic(destination, rendered, mode=mode)
        return True


def write_atomic(destination: Path, content: str, *, mode: int) -> None:
    """Atomically replace *destination* with *content* and apply *mode*."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    except OSError as exc:
        raise TemplateError(f"Failed to write {destination}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "BUILTIN_TEMPLATES_DIR",
    "TemplateEngine",
    "TemplateError",
    "shell_quote",
    "sudoers_escape",
    "write_atomic",
]
