"""Execute the rendered restart wrapper against a fake systemctl."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from cicdctl.authorizer import RestartAuthorizer
from cicdctl.exit_codes import WrapperExit
from cicdctl.providers.systemd import SystemdProvider
from cicdctl.templates import TemplateEngine
from cicdctl.whitelist import ServiceWhitelist

pytestmark = pytest.mark.skipif(not Path("/bin/bash").exists(), reason="bash is required")


@pytest.fixture
def wrapper(root: Path, make_stub: Callable[..., Path]) -> Path:
    """Render the wrapper with a logging fake systemctl and return its path."""
    calls_log = root / "systemctl.calls"
    systemctl = make_stub(
        "systemctl",
        f'echo "$*" >> {calls_log}\n'
        'case "$1" in\n'
        '  show) if [ "$5" = "ghost" ]; then echo not-found; else echo loaded; fi ;;\n'
        '  is-active) if [ "$4" = "flaky" ]; then exit 3; fi ;;\n'
        "esac\n"
        "exit 0\n",
    )
    whitelist = ServiceWhitelist(root / "whitelist" / "allowed_services")
    for name in ("nginx", "ghost", "flaky"):
        whitelist.add(name)
    authorizer = RestartAuthorizer(
        whitelist=whitelist,
        templates=TemplateEngine.with_overrides(None),
        systemd=SystemdProvider(systemctl_bin=str(systemctl)),
        wrapper_path=root / "sbin" / "cicd_restart_service",
        grant_path=root / "sudoers.d" / "cicd_restart_service",
        user_lookup=lambda name: object(),
    )
    path = authorizer.wrapper_path
    path.parent.mkdir(parents=True)
    path.write_text(authorizer.render_wrapper(), encoding="utf-8")
    os.chmod(path, 0o755)
    return path


def _run(wrapper: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        [str(wrapper), *args], capture_output=True, text=True, check=False
    )


def _calls(root: Path) -> list[str]:
    log = root / "systemctl.calls"
    return log.read_text().splitlines() if log.exists() else []


def test_whitelisted_active_service_restarts(wrapper: Path, root: Path) -> None:
    """A known, whitelisted unit is restarted and reported active."""
    result = _run(wrapper, "nginx")

    assert result.returncode == WrapperExit.OK
    assert "restarted and active" in result.stdout
    assert "restart -- nginx" in _calls(root)


def test_unlisted_service_never_reaches_systemctl(wrapper: Path, root: Path) -> None:
    """Services outside the whitelist, including prefix matches, are refused."""
    for name in ("sshd", "nginx-evil", "ngin"):
        result = _run(wrapper, name)
        assert result.returncode == WrapperExit.NOT_ALLOWED
        assert "not allowed" in result.stderr

    assert _calls(root) == []


def test_unknown_unit_is_reported(wrapper: Path, root: Path) -> None:
    """A whitelisted name systemd does not know exits with the not-found code."""
    result = _run(wrapper, "ghost")

    assert result.returncode == WrapperExit.UNIT_NOT_FOUND
    assert not any(call.startswith("restart") for call in _calls(root))


def test_inactive_after_restart_fails(wrapper: Path) -> None:
    """A unit that does not come back active is a restart failure."""
    result = _run(wrapper, "flaky")

    assert result.returncode == WrapperExit.RESTART_FAILED
    assert "failed to become active" in result.stderr


def test_usage_errors(wrapper: Path, root: Path) -> None:
    """Missing, extra or malformed arguments are usage errors."""
    assert _run(wrapper).returncode == WrapperExit.USAGE
    assert _run(wrapper, "nginx", "extra").returncode == WrapperExit.USAGE
    assert _run(wrapper, "nginx;reboot").returncode == WrapperExit.USAGE
    assert _run(wrapper, "").returncode == WrapperExit.USAGE
    assert _calls(root) == []


def test_revocation_is_immediate(wrapper: Path, root: Path) -> None:
    """Removing a service from the whitelist blocks the very next call."""
    ServiceWhitelist(root / "whitelist" / "allowed_services").remove("nginx")

    assert _run(wrapper, "nginx").returncode == WrapperExit.NOT_ALLOWED
