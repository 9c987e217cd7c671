"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from cicdctl.templates import TemplateEngine, shell_quote, sudoers_escape


def _grant_context() -> dict[str, object]:
    return {
        "principal": "deploy",
        "wrapper_path": "/usr/local/sbin/cicd_restart_service",
        "services": ["nginx", "postgresql@16-main"],
    }


def test_render_grant_has_one_rule_per_service() -> None:
    """Built-in grant template enumerates each service on its own line."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("sudoers/restart.j2", _grant_context())

    rules = [line for line in output.splitlines() if line and not line.startswith("#")]
    assert rules == [
        "deploy ALL=(root) NOPASSWD: /usr/local/sbin/cicd_restart_service nginx",
        "deploy ALL=(root) NOPASSWD: /usr/local/sbin/cicd_restart_service postgresql@16-main",
    ]
    assert output.endswith("\n")


def test_rendering_is_strict_about_undefined_variables() -> None:
    """A missing context value is an error, not an empty string."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("sudoers/restart.j2", {"principal": "deploy"})


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "grant"

    changed = engine.render_to_path(
        "sudoers/restart.j2", destination, _grant_context(), mode=0o440
    )

    assert changed is True
    assert oct(destination.stat().st_mode & 0o777) == "0o440"

    changed_again = engine.render_to_path(
        "sudoers/restart.j2", destination, _grant_context(), mode=0o440
    )
    assert changed_again is False


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    (override_dir / "sudoers").mkdir(parents=True)
    (override_dir / "sudoers" / "restart.j2").write_text("custom {{ principal }}\n")

    engine = TemplateEngine.with_overrides(override_dir)

    assert engine.render_to_string("sudoers/restart.j2", _grant_context()) == "custom deploy\n"


def test_missing_override_directory_falls_back_to_builtins(tmp_path: Path) -> None:
    """A configured but absent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "nope")

    assert len(engine.search_paths) == 1


def test_escaping_filters() -> None:
    """Shell and sudoers escaping neutralise metacharacters."""
    assert shell_quote("/opt/x y") == "'/opt/x y'"
    assert shell_quote("plain") == "plain"
    assert sudoers_escape("a,b:c=d e\\f") == "a\\,b\\:c\\=d\\ e\\\\f"
    assert sudoers_escape("nginx") == "nginx"
