"""Privilege boundary for restarting whitelisted systemd units.

Two artifacts make up the boundary:

* a root-owned wrapper script that accepts exactly one service name, checks
  it against the whitelist file on every call, confirms systemd knows the
  unit, restarts it and reports whether it came back active;
* a sudoers drop-in granting the automation principal the right to run that
  wrapper, and only that wrapper, with one rule per whitelisted service.

The grant enumerates the services and the wrapper re-checks the whitelist, so
a grant left behind after the whitelist shrinks still cannot restart a
revoked unit.

Install order is wrapper first, then grant. The grant is written to a
temporary file beside its destination, validated with ``visudo -c -f`` and
only then moved into place. Any failure on the grant side discards the
temporary file and rolls the wrapper back to what was there before.
"""
from __future__ import annotations

import logging
import os
import pwd
import re
import subprocess
import tempfile
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .actions import PlannedAction, RunOptions
from .exit_codes import WrapperExit
from .identifiers import (
    InvalidName,
    validate_absolute_path,
    validate_principal,
    validate_service_name,
)
from .locking import LockManager
from .providers.systemd import SystemdError, SystemdProvider
from .templates import TemplateEngine, TemplateError, write_atomic
from .whitelist import ServiceWhitelist

LOGGER = logging.getLogger(__name__)

WRAPPER_TEMPLATE = "restart/wrapper.sh.j2"
GRANT_TEMPLATE = "sudoers/restart.j2"
WRAPPER_MODE = 0o750
GRANT_MODE = 0o440

_GRANT_LINE_RE = re.compile(
    r"^(?P<principal>\S+)\s+ALL=\(root\)\s+NOPASSWD:\s+"
    r"(?P<command>(?:\\.|\S)+)\s+(?P<arg>(?:\\.|\S)+)\s*$"
)


class AuthorizationError(RuntimeError):
    """Raised when the restart authorization cannot be installed or removed."""


class HeadlessRefusedError(AuthorizationError):
    """Raised when headless mode tries to widen privileges without consent."""


class WrapperInstallError(AuthorizationError):
    """Raised when the restart wrapper cannot be written."""


class GrantValidationError(AuthorizationError):
    """Raised when the rendered grant fails ``visudo`` validation."""


class AuthorizationState(Enum):
    """Lifecycle of the wrapper and grant pair."""

    NOT_INSTALLED = "not-installed"
    WRAPPER_WRITTEN = "wrapper-written"
    GRANT_WRITTEN = "grant-written"
    ACTIVE = "active"


@dataclass(frozen=True)
class AuthorizationStatus:
    """Observed state of the restart authorization on disk."""

    state: AuthorizationState
    wrapper_present: bool
    grant_present: bool
    principal: str | None = None
    granted: tuple[str, ...] = ()
    whitelisted: tuple[str, ...] = ()
    problems: tuple[str, ...] = ()

    @property
    def active(self) -> bool:
        """Return True only when both artifacts are installed and valid."""
        return self.state is AuthorizationState.ACTIVE

    @property
    def stale(self) -> bool:
        """Return True when the grant no longer matches the whitelist."""
        return self.grant_present and set(self.granted) != set(self.whitelisted)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "active": self.active,
            "wrapper_present": self.wrapper_present,
            "grant_present": self.grant_present,
            "principal": self.principal,
            "granted": list(self.granted),
            "whitelisted": list(self.whitelisted),
            "stale": self.stale,
            "problems": list(self.problems),
        }


@dataclass(frozen=True)
class RestartOutcome:
    """Result of a policy-checked restart request."""

    service: str
    exit_code: WrapperExit
    message: str

    @property
    def ok(self) -> bool:
        """Return True when the unit was restarted and is active."""
        return self.exit_code is WrapperExit.OK


class RestartWrapper:
    """In-process mirror of the installed wrapper's decision sequence."""

    def __init__(
        self,
        whitelist: ServiceWhitelist,
        systemd: SystemdProvider,
        *,
        options: RunOptions = RunOptions(),
    ) -> None:
        self.whitelist = whitelist
        self.systemd = systemd
        self.options = options

    def invoke(self, service: str) -> RestartOutcome:
        """Restart *service* if policy allows it."""
        try:
            name = validate_service_name(service)
        except InvalidName as exc:
            return RestartOutcome(str(service), WrapperExit.USAGE, str(exc))

        if not self.whitelist.contains(name):
            return RestartOutcome(
                name,
                WrapperExit.NOT_ALLOWED,
                f"Service '{name}' is not allowed to be restarted by this helper.",
            )
        try:
            exists = self.systemd.unit_exists(name)
        except SystemdError as exc:
            return RestartOutcome(name, WrapperExit.UNIT_NOT_FOUND, str(exc))
        if not exists:
            return RestartOutcome(
                name, WrapperExit.UNIT_NOT_FOUND, f"Service unit '{name}' not found on systemd."
            )
        if self.options.dry_run:
            return RestartOutcome(name, WrapperExit.OK, f"Would restart '{name}'.")

        try:
            self.systemd.restart(name)
        except SystemdError as exc:
            return RestartOutcome(name, WrapperExit.RESTART_FAILED, str(exc))
        if self.systemd.is_active(name):
            return RestartOutcome(name, WrapperExit.OK, f"Service '{name}' restarted and active.")
        return RestartOutcome(
            name,
            WrapperExit.RESTART_FAILED,
            f"Service '{name}' failed to become active after restart.",
        )


@dataclass(frozen=True)
class InstallResult:
    """Outcome of :meth:`RestartAuthorizer.install` or :meth:`RestartAuthorizer.remove`."""

    actions: tuple[PlannedAction, ...]
    status: AuthorizationStatus | None
    services: tuple[str, ...] = ()


class RestartAuthorizer:
    """Install, inspect and remove the restart wrapper and its sudoers grant."""

    def __init__(
        self,
        *,
        whitelist: ServiceWhitelist,
        templates: TemplateEngine,
        systemd: SystemdProvider,
        wrapper_path: Path,
        grant_path: Path,
        options: RunOptions = RunOptions(),
        locks: LockManager | None = None,
        visudo_bin: str = "visudo",
        user_lookup: Callable[[str], object] = pwd.getpwnam,
    ) -> None:
        self.whitelist = whitelist
        self.templates = templates
        self.systemd = systemd
        self.wrapper_path = Path(wrapper_path)
        self.grant_path = Path(grant_path)
        self.options = options
        self.locks = locks
        self.visudo_bin = visudo_bin
        self.user_lookup = user_lookup
        self.wrapper = RestartWrapper(whitelist, systemd, options=options)

    # Rendering --------------------------------------------------------
    def render_wrapper(self) -> str:
        """Return the wrapper script text."""
        validate_absolute_path(self.whitelist.path, label="Whitelist path")
        validate_absolute_path(self.systemd.systemctl_bin, label="systemctl path")
        return self.templates.render_to_string(
            WRAPPER_TEMPLATE,
            {
                "allowed_file": str(self.whitelist.path),
                "systemctl": self.systemd.systemctl_bin,
                "exit_ok": int(WrapperExit.OK),
                "exit_usage": int(WrapperExit.USAGE),
                "exit_not_allowed": int(WrapperExit.NOT_ALLOWED),
                "exit_unit_not_found": int(WrapperExit.UNIT_NOT_FOUND),
                "exit_restart_failed": int(WrapperExit.RESTART_FAILED),
            },
        )

    def render_grant(self, principal: str, services: Sequence[str]) -> str:
        """Return the sudoers text granting *principal* one rule per service."""
        validate_principal(principal)
        validate_absolute_path(self.wrapper_path, label="Wrapper path")
        names = sorted({validate_service_name(service) for service in services})
        if not names:
            raise AuthorizationError("Refusing to render a grant for an empty whitelist.")
        return self.templates.render_to_string(
            GRANT_TEMPLATE,
            {
                "principal": principal,
                "wrapper_path": str(self.wrapper_path),
                "services": names,
            },
        )

    # Lifecycle --------------------------------------------------------
    def preflight(self, principal: str) -> tuple[str, ...]:
        """Check that an install for *principal* may proceed.

        Returns the services the grant would cover. Nothing on disk is touched,
        so callers can run this before taking snapshots or asking for
        confirmation.
        """
        if self.options.headless and not self.options.allow_sudoers:
            raise HeadlessRefusedError(
                "Headless mode requires --allow-sudoers to install the restart grant."
            )
        try:
            validate_principal(principal)
            validate_absolute_path(self.wrapper_path, label="Wrapper path")
            validate_absolute_path(self.grant_path, label="Grant path")
        except InvalidName as exc:
            raise AuthorizationError(str(exc)) from exc
        try:
            self.user_lookup(principal)
        except KeyError as exc:
            raise AuthorizationError(f"User '{principal}' does not exist on this system.") from exc

        services = sorted(self.whitelist.list())
        if not services:
            raise AuthorizationError(
                "The whitelist is empty; add at least one service before installing the grant."
            )
        return tuple(services)

    def install(self, principal: str) -> InstallResult:
        """Install or refresh the wrapper and grant for *principal*."""
        services = self.preflight(principal)
        try:
            wrapper_text = self.render_wrapper()
            grant_text = self.render_grant(principal, services)
        except InvalidName as exc:
            raise AuthorizationError(str(exc)) from exc

        actions = (
            PlannedAction("write", str(self.wrapper_path), f"mode {WRAPPER_MODE:04o}"),
            PlannedAction(
                "write",
                str(self.grant_path),
                f"mode {GRANT_MODE:04o}, {principal} -> {', '.join(services)}",
            ),
            PlannedAction("exec", f"{self.visudo_bin} -c -f <staged {self.grant_path.name}>"),
        )
        if self.options.dry_run:
            return InstallResult(actions=actions, status=None, services=tuple(services))

        with self._locked():
            previous = _snapshot_file(self.wrapper_path)
            self._write_wrapper(wrapper_text)
            try:
                self._install_grant(grant_text)
            except BaseException:
                self._restore_wrapper(previous)
                raise
        LOGGER.info("Installed restart grant for %s covering %s.", principal, ", ".join(services))
        return InstallResult(actions=actions, status=self.status(), services=tuple(services))

    def remove(self) -> InstallResult:
        """Delete the grant and the wrapper; absent files are not an error."""
        actions = tuple(
            PlannedAction("delete", str(path))
            for path in (self.grant_path, self.wrapper_path)
            if path.exists() or path.is_symlink()
        )
        if self.options.dry_run:
            return InstallResult(actions=actions, status=None)
        with self._locked():
            for path in (self.grant_path, self.wrapper_path):
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    raise AuthorizationError(f"Failed to remove {path}: {exc}") from exc
        return InstallResult(actions=actions, status=self.status())

    def status(self) -> AuthorizationStatus:
        """Classify what is currently installed."""
        wrapper_present = self.wrapper_path.is_file()
        grant_present = self.grant_path.is_file()
        whitelisted = tuple(sorted(self.whitelist.list()))
        problems: list[str] = []
        principal: str | None = None
        granted: tuple[str, ...] = ()

        if grant_present:
            try:
                principal, granted = self._parse_grant(self.grant_path.read_text(encoding="utf-8"))
            except OSError as exc:
                problems.append(f"Grant unreadable: {exc}")

        if not wrapper_present:
            if grant_present:
                problems.append("Grant present without a wrapper; re-run install or remove.")
            return AuthorizationStatus(
                state=AuthorizationState.NOT_INSTALLED,
                wrapper_present=False,
                grant_present=grant_present,
                principal=principal,
                granted=granted,
                whitelisted=whitelisted,
                problems=tuple(problems),
            )
        if not grant_present:
            return AuthorizationStatus(
                state=AuthorizationState.WRAPPER_WRITTEN,
                wrapper_present=True,
                grant_present=False,
                whitelisted=whitelisted,
                problems=("Wrapper present without a grant.",),
            )

        if not os.access(self.wrapper_path, os.X_OK):
            problems.append(f"Wrapper {self.wrapper_path} is not executable.")
        try:
            validation = self._validate_grant(self.grant_path)
        except AuthorizationError as exc:
            problems.append(str(exc))
        else:
            if validation.returncode != 0:
                problems.append(f"Grant failed validation: {_command_output(validation)}")
        if not granted:
            problems.append("Grant contains no rules for the wrapper.")

        state = AuthorizationState.GRANT_WRITTEN if problems else AuthorizationState.ACTIVE
        return AuthorizationStatus(
            state=state,
            wrapper_present=True,
            grant_present=True,
            principal=principal,
            granted=granted,
            whitelisted=whitelisted,
            problems=tuple(problems),
        )

    # Internals --------------------------------------------------------
    def _write_wrapper(self, text: str) -> None:
        try:
            write_atomic(self.wrapper_path, text, mode=WRAPPER_MODE)
            _chown_root(self.wrapper_path)
        except (TemplateError, OSError) as exc:
            message = f"Failed to install wrapper {self.wrapper_path}: {exc}"
            raise WrapperInstallError(message) from exc

    def _install_grant(self, text: str) -> None:
        # sudo ignores includedir entries containing '.', so the staged file is inert.
        try:
            self.grant_path.parent.mkdir(parents=True, exist_ok=True, mode=0o750)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.grant_path.parent), prefix=f".{self.grant_path.name}."
            )
        except OSError as exc:
            raise AuthorizationError(f"Failed to stage grant {self.grant_path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.chmod(tmp_path, GRANT_MODE)
            _chown_root(tmp_path)
            result = self._validate_grant(tmp_path)
            if result.returncode != 0:
                raise GrantValidationError(
                    f"visudo rejected the grant; nothing installed: {_command_output(result)}"
                )
            os.replace(tmp_path, self.grant_path)
        except OSError as exc:
            raise AuthorizationError(f"Failed to write grant {self.grant_path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def _restore_wrapper(self, previous: tuple[str, int] | None) -> None:
        try:
            if previous is None:
                self.wrapper_path.unlink(missing_ok=True)
                LOGGER.warning("Rolled back wrapper %s after grant failure.", self.wrapper_path)
            else:
                content, mode = previous
                write_atomic(self.wrapper_path, content, mode=mode)
                _chown_root(self.wrapper_path)
                LOGGER.warning(
                    "Restored previous wrapper %s after grant failure.", self.wrapper_path
                )
        except (TemplateError, OSError) as exc:
            LOGGER.error("Wrapper rollback failed for %s: %s", self.wrapper_path, exc)

    def _validate_grant(self, path: Path) -> subprocess.CompletedProcess[str]:
        return self._run_command([self.visudo_bin, "-c", "-f", str(path)])

    def _parse_grant(self, text: str) -> tuple[str | None, tuple[str, ...]]:
        principal: str | None = None
        services: list[str] = []
        for line in text.splitlines():
            match = _GRANT_LINE_RE.match(line.strip())
            if match is None:
                continue
            if _unescape(match.group("command")) != str(self.wrapper_path):
                continue
            principal = principal or match.group("principal")
            services.append(_unescape(match.group("arg")))
        return principal, tuple(sorted(set(services)))

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self.locks is None:
            yield
            return
        with self.locks.mutation_lock():
            yield

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise AuthorizationError(f"{args[0]} not found: {exc}") from exc


def _snapshot_file(path: Path) -> tuple[str, int] | None:
    try:
        return path.read_text(encoding="utf-8"), path.stat().st_mode & 0o7777
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise WrapperInstallError(f"Unable to read existing wrapper {path}: {exc}") from exc


def _chown_root(path: Path) -> None:
    if os.geteuid() == 0:
        os.chown(path, 0, 0)


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


def _command_output(result: subprocess.CompletedProcess[str]) -> str:
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    return stderr or stdout or f"exit {result.returncode}"


__all__ = [
    "AuthorizationError",
    "AuthorizationState",
    "AuthorizationStatus",
    "GrantValidationError",
    "HeadlessRefusedError",
    "InstallResult",
    "RestartAuthorizer",
    "RestartOutcome",
    "RestartWrapper",
    "WrapperInstallError",
]
