"""Tests for the restart wrapper and sudoers grant lifecycle."""
from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from cicdctl.actions import RunOptions
from cicdctl.authorizer import (
    AuthorizationError,
    AuthorizationState,
    GrantValidationError,
    HeadlessRefusedError,
    RestartAuthorizer,
    RestartWrapper,
)
from cicdctl.exit_codes import WrapperExit
from cicdctl.identifiers import InvalidName
from cicdctl.locking import LockManager
from cicdctl.providers.systemd import SystemdError, SystemdProvider
from cicdctl.templates import TemplateEngine
from cicdctl.whitelist import ServiceWhitelist


class FakeVisudo:
    """Records visudo invocations and replays scripted exit codes."""

    def __init__(self, codes: Sequence[int] = ()) -> None:
        self.codes = list(codes)
        self.calls: list[list[str]] = []

    def __call__(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        code = self.codes.pop(0) if self.codes else 0
        stderr = "parse error near line 2" if code else ""
        return subprocess.CompletedProcess(list(args), returncode=code, stdout="", stderr=stderr)


def _lookup(name: str) -> object:
    if name == "ghost":
        raise KeyError(name)
    return object()


@pytest.fixture
def visudo(monkeypatch: pytest.MonkeyPatch) -> FakeVisudo:
    """Replace visudo with a recorder that accepts every grant."""
    fake = FakeVisudo()
    monkeypatch.setattr(RestartAuthorizer, "_run_command", fake)
    return fake


@pytest.fixture
def build(root: Path, make_stub: Callable[..., Path]) -> Callable[..., RestartAuthorizer]:
    """Return a factory for authorizers rooted in the temporary directory."""
    systemctl = make_stub("systemctl")

    def _build(options: RunOptions = RunOptions()) -> RestartAuthorizer:
        whitelist = ServiceWhitelist(root / "whitelist" / "allowed_services", options=options)
        return RestartAuthorizer(
            whitelist=whitelist,
            templates=TemplateEngine.with_overrides(None),
            systemd=SystemdProvider(systemctl_bin=str(systemctl)),
            wrapper_path=root / "sbin" / "cicd_restart_service",
            grant_path=root / "sudoers.d" / "cicd_restart_service",
            options=options,
            locks=LockManager(root / "run", default_timeout=1.0),
            user_lookup=_lookup,
        )

    return _build


def _mode(path: Path) -> int:
    return path.stat().st_mode & 0o7777


def test_install_writes_wrapper_then_validated_grant(
    build: Callable[..., RestartAuthorizer], visudo: FakeVisudo
) -> None:
    """Install writes both artifacts and validates the staged grant."""
    authorizer = build()
    authorizer.whitelist.add("nginx")
    authorizer.whitelist.add("postgresql")

    result = authorizer.install("deploy")

    assert result.services == ("nginx", "postgresql")
    assert _mode(authorizer.wrapper_path) == 0o750
    assert _mode(authorizer.grant_path) == 0o440
    grant = authorizer.grant_path.read_text()
    assert f"deploy ALL=(root) NOPASSWD: {authorizer.wrapper_path} nginx" in grant
    assert f"deploy ALL=(root) NOPASSWD: {authorizer.wrapper_path} postgresql" in grant
    assert "ALL=(root) NOPASSWD: ALL" not in grant

    staged = Path(visudo.calls[0][-1])
    assert visudo.calls[0][:3] == ["visudo", "-c", "-f"]
    assert staged.parent == authorizer.grant_path.parent
    assert staged.name.startswith(".cicd_restart_service.")
    assert not staged.exists()

    assert result.status is not None
    assert result.status.state is AuthorizationState.ACTIVE
    assert result.status.principal == "deploy"
    assert result.status.granted == ("nginx", "postgresql")
    assert result.status.stale is False


def test_headless_install_requires_allow_sudoers(
    build: Callable[..., RestartAuthorizer], visudo: FakeVisudo
) -> None:
    """Headless runs refuse to touch sudoers without explicit consent."""
    authorizer = build(RunOptions(headless=True))
    authorizer.whitelist.add("nginx")

    with pytest.raises(HeadlessRefusedError):
        authorizer.install("deploy")

    assert not authorizer.wrapper_path.exists()
    assert not authorizer.grant_path.exists()
    assert visudo.calls == []

    allowed = build(RunOptions(headless=True, allow_sudoers=True))
    allowed.install("deploy")
    assert allowed.status().active


def test_rejected_grant_rolls_back_new_wrapper(
    build: Callable[..., RestartAuthorizer], monkeypatch: pytest.MonkeyPatch
) -> None:
    """A grant visudo rejects is never installed and the new wrapper is removed."""
    monkeypatch.setattr(RestartAuthorizer, "_run_command", FakeVisudo([1]))
    authorizer = build()
    authorizer.whitelist.add("nginx")

    with pytest.raises(GrantValidationError, match="parse error"):
        authorizer.install("deploy")

    assert not authorizer.wrapper_path.exists()
    assert not authorizer.grant_path.exists()
    assert list(authorizer.grant_path.parent.iterdir()) == []
    assert authorizer.status().state is AuthorizationState.NOT_INSTALLED


def test_rejected_grant_restores_previous_wrapper(
    build: Callable[..., RestartAuthorizer], monkeypatch: pytest.MonkeyPatch
) -> None:
    """An existing wrapper is put back byte for byte, mode included."""
    monkeypatch.setattr(RestartAuthorizer, "_run_command", FakeVisudo([1]))
    authorizer = build()
    authorizer.whitelist.add("nginx")
    authorizer.wrapper_path.parent.mkdir(parents=True)
    authorizer.wrapper_path.write_text("#!/bin/bash\n# previous\n")
    authorizer.wrapper_path.chmod(0o700)

    with pytest.raises(GrantValidationError):
        authorizer.install("deploy")

    assert authorizer.wrapper_path.read_text() == "#!/bin/bash\n# previous\n"
    assert _mode(authorizer.wrapper_path) == 0o700


def test_install_refuses_empty_whitelist_and_unknown_user(
    build: Callable[..., RestartAuthorizer], visudo: FakeVisudo
) -> None:
    """An empty whitelist or a missing account stops install before any write."""
    authorizer = build()

    with pytest.raises(AuthorizationError, match="whitelist is empty"):
        authorizer.install("deploy")

    authorizer.whitelist.add("nginx")
    with pytest.raises(AuthorizationError, match="does not exist"):
        authorizer.install("ghost")
    with pytest.raises(AuthorizationError):
        authorizer.install("Bad User")

    assert not authorizer.wrapper_path.exists()
    assert visudo.calls == []


def test_preflight_reports_services_without_touching_disk(
    build: Callable[..., RestartAuthorizer], root: Path, visudo: FakeVisudo
) -> None:
    """Preflight raises the same refusals as install and returns the covered services."""
    ServiceWhitelist(root / "whitelist" / "allowed_services").add("redis")
    ServiceWhitelist(root / "whitelist" / "allowed_services").add("nginx")

    assert build().preflight("deploy") == ("nginx", "redis")
    with pytest.raises(HeadlessRefusedError):
        build(RunOptions(headless=True)).preflight("deploy")
    with pytest.raises(AuthorizationError, match="does not exist"):
        build().preflight("ghost")

    assert not (root / "sbin").exists()
    assert not (root / "sudoers.d").exists()
    assert visudo.calls == []


def test_dry_run_install_plans_without_writing(
    build: Callable[..., RestartAuthorizer], root: Path, visudo: FakeVisudo
) -> None:
    """Dry-run reports the wrapper, grant and validation steps only."""
    ServiceWhitelist(root / "whitelist" / "allowed_services").add("nginx")
    authorizer = build(RunOptions(dry_run=True))

    result = authorizer.install("deploy")

    assert [action.kind for action in result.actions] == ["write", "write", "exec"]
    assert result.status is None
    assert not authorizer.wrapper_path.exists()
    assert not authorizer.grant_path.exists()
    assert visudo.calls == []


def test_status_reports_partial_and_stale_states(
    build: Callable[..., RestartAuthorizer], visudo: FakeVisudo
) -> None:
    """Status distinguishes wrapper-only, active and stale installations."""
    authorizer = build()
    assert authorizer.status().state is AuthorizationState.NOT_INSTALLED

    authorizer.wrapper_path.parent.mkdir(parents=True)
    authorizer.wrapper_path.write_text("#!/bin/bash\n")
    assert authorizer.status().state is AuthorizationState.WRAPPER_WRITTEN

    authorizer.whitelist.add("nginx")
    authorizer.install("deploy")
    authorizer.whitelist.add("redis")

    status = authorizer.status()
    assert status.state is AuthorizationState.ACTIVE
    assert status.stale is True
    assert status.granted == ("nginx",)
    assert status.whitelisted == ("nginx", "redis")
    assert status.to_dict()["stale"] is True


def test_status_flags_grant_failing_validation(
    build: Callable[..., RestartAuthorizer], monkeypatch: pytest.MonkeyPatch
) -> None:
    """A grant that no longer passes visudo leaves the state short of active."""
    monkeypatch.setattr(RestartAuthorizer, "_run_command", FakeVisudo([0, 0, 1]))
    authorizer = build()
    authorizer.whitelist.add("nginx")
    authorizer.install("deploy")

    status = authorizer.status()

    assert status.state is AuthorizationState.GRANT_WRITTEN
    assert any("failed validation" in problem for problem in status.problems)


def test_remove_deletes_both_artifacts(
    build: Callable[..., RestartAuthorizer], visudo: FakeVisudo
) -> None:
    """Remove is idempotent and leaves nothing behind."""
    authorizer = build()
    authorizer.whitelist.add("nginx")
    authorizer.install("deploy")

    result = authorizer.remove()

    assert {action.target for action in result.actions} == {
        str(authorizer.grant_path),
        str(authorizer.wrapper_path),
    }
    assert not authorizer.wrapper_path.exists()
    assert not authorizer.grant_path.exists()
    assert authorizer.remove().actions == ()


def test_render_grant_validates_inputs(build: Callable[..., RestartAuthorizer]) -> None:
    """Principals and service names are validated before rendering."""
    authorizer = build()

    with pytest.raises(InvalidName):
        authorizer.render_grant("root ALL", ["nginx"])
    with pytest.raises(InvalidName):
        authorizer.render_grant("deploy", ["nginx, /bin/sh"])
    with pytest.raises(AuthorizationError):
        authorizer.render_grant("deploy", [])


class FakeSystemd:
    """In-memory systemd used by wrapper decision tests."""

    def __init__(self, units: dict[str, bool], *, restart_error: bool = False) -> None:
        self.units = units
        self.restart_error = restart_error
        self.restarted: list[str] = []
        self.systemctl_bin = "/usr/bin/systemctl"

    def unit_exists(self, unit: str) -> bool:
        return unit in self.units

    def is_active(self, unit: str) -> bool:
        return self.units[unit]

    def restart(self, unit: str) -> None:
        if self.restart_error:
            raise SystemdError(f"restart of {unit} failed")
        self.restarted.append(unit)


def _wrapper(
    tmp_path: Path, systemd: FakeSystemd, options: RunOptions = RunOptions()
) -> RestartWrapper:
    whitelist = ServiceWhitelist(tmp_path / "allowed_services")
    whitelist.add("nginx")
    whitelist.add("ghost")
    whitelist.add("flaky")
    return RestartWrapper(whitelist, systemd, options=options)  # type: ignore[arg-type]


def test_wrapper_decision_sequence(tmp_path: Path) -> None:
    """Each policy step maps to its own exit code."""
    systemd = FakeSystemd({"nginx": True, "flaky": False, "sshd": True})
    wrapper = _wrapper(tmp_path, systemd)

    assert wrapper.invoke("nginx").exit_code is WrapperExit.OK
    assert wrapper.invoke("sshd").exit_code is WrapperExit.NOT_ALLOWED
    assert wrapper.invoke("nginx-evil").exit_code is WrapperExit.NOT_ALLOWED
    assert wrapper.invoke("ghost").exit_code is WrapperExit.UNIT_NOT_FOUND
    assert wrapper.invoke("flaky").exit_code is WrapperExit.RESTART_FAILED
    assert wrapper.invoke("a;b").exit_code is WrapperExit.USAGE
    assert systemd.restarted == ["nginx", "flaky"]


def test_wrapper_restart_error_and_dry_run(tmp_path: Path) -> None:
    """systemctl failures map to RESTART_FAILED; dry-run never restarts."""
    failing = _wrapper(tmp_path / "a", FakeSystemd({"nginx": True}, restart_error=True))
    assert failing.invoke("nginx").exit_code is WrapperExit.RESTART_FAILED

    systemd = FakeSystemd({"nginx": True})
    dry = _wrapper(tmp_path / "b", systemd, RunOptions(dry_run=True))
    outcome = dry.invoke("nginx")
    assert outcome.ok
    assert outcome.message == "Would restart 'nginx'."
    assert systemd.restarted == []
