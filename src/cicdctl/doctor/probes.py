"""Probe registration entry point for the doctor command."""

from __future__ import annotations

import os
import shutil
import stat
from collections.abc import Callable, Sequence
from pathlib import Path

from ..authorizer import AuthorizationState
from ..backups import BackupError
from ..credentials import SecretStoreError
from ..layout import artifact_layout, plan_directories
from ..whitelist import WhitelistError
from .models import (
    DoctorImpact,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
)


def collect_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    """Return the set of probes that should run for the current context."""
    probes: list[ProbeDefinition] = []
    probes.extend(_env_probes(context))
    probes.append(_make_probe("fs-artifacts", "fs", _probe_artifact_layout))
    probes.append(_make_probe("secrets-modes", "secrets", _probe_secret_modes))
    probes.append(_make_probe("whitelist-entries", "whitelist", _probe_whitelist))
    probes.append(_make_probe("authorization-state", "authorization", _probe_authorization))
    probes.append(_make_probe("backups-retention", "backups", _probe_retention))
    return tuple(probes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProbeContext], ProbeResult],
) -> ProbeDefinition:
    return ProbeDefinition(id=probe_id, category=category, run=handler)


def _command_exists(command: str) -> bool:
    path = Path(command)
    if path.is_absolute() or str(path.parent) not in {"", "."}:
        return path.exists() and os.access(path, os.X_OK)
    resolved = shutil.which(command)
    return resolved is not None and os.access(resolved, os.X_OK)


def _format_permissions(path: Path) -> str:
    try:
        info = path.stat()
    except FileNotFoundError:
        return "missing"
    return f"{stat.S_IMODE(info.st_mode):04o}"


# ---------------------------------------------------------------------------
# Environment probes
# ---------------------------------------------------------------------------


def _env_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    config = context.config
    return (
        _make_probe(
            "env-systemctl", "env", _probe_env_command(config.systemd.systemctl_bin, fatal=True)
        ),
        _make_probe(
            "env-visudo", "env", _probe_env_command(config.authorization.visudo_bin, fatal=True)
        ),
        _make_probe("env-tar", "env", _probe_env_command("tar", fatal=True)),
        _make_probe("env-ss", "env", _probe_env_command(config.ports.ss_bin, fatal=False)),
        _make_probe("env-zstd", "env", _probe_env_command("zstd", fatal=False)),
    )


def _probe_env_command(command: str, *, fatal: bool) -> Callable[[ProbeContext], ProbeResult]:
    name = Path(command).name

    def _run(_context: ProbeContext) -> ProbeResult:
        if _command_exists(command):
            return ProbeResult(
                id=f"env-{name}",
                category="env",
                status=ProbeStatus.GREEN,
                impact=DoctorImpact.OK,
                message=f"Binary '{command}' available.",
            )
        if fatal:
            return ProbeResult(
                id=f"env-{name}",
                category="env",
                status=ProbeStatus.RED,
                impact=DoctorImpact.ENVIRONMENT,
                message=f"Required binary '{command}' not found.",
            )
        return ProbeResult(
            id=f"env-{name}",
            category="env",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Optional binary '{command}' not found; a fallback will be used.",
            warnings=(f"missing:{name}",),
        )

    return _run


# ---------------------------------------------------------------------------
# Artifact root probes
# ---------------------------------------------------------------------------


def _probe_artifact_layout(context: ProbeContext) -> ProbeResult:
    config = context.config
    specs = artifact_layout(config.artifact_root, logs_dir=config.logs_dir)
    plan = plan_directories(specs)
    permissions = {str(spec.path): _format_permissions(Path(spec.path)) for spec in specs}
    missing = [str(action.path) for action in plan.actions if action.kind == "mkdir"]
    drifted = [str(action.path) for action in plan.actions if action.kind == "chmod"]

    if missing or plan.warnings:
        detail = ", ".join(missing) if missing else "; ".join(plan.warnings)
        return ProbeResult(
            id="fs-artifacts",
            category="fs",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=f"Artifact layout incomplete: {detail}.",
            remediation="Run 'cicdctl init'.",
            data={"permissions": permissions},
        )
    if drifted:
        return ProbeResult(
            id="fs-artifacts",
            category="fs",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Unexpected directory modes: {', '.join(drifted)}.",
            remediation="Run 'cicdctl init' to restore directory modes.",
            data={"permissions": permissions},
        )
    return ProbeResult(
        id="fs-artifacts",
        category="fs",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message="Artifact directories exist with expected modes.",
        data={"permissions": permissions},
    )


def _probe_secret_modes(context: ProbeContext) -> ProbeResult:
    try:
        entries = context.secrets.list()
    except (OSError, SecretStoreError) as exc:
        return ProbeResult(
            id="secrets-modes",
            category="secrets",
            status=ProbeStatus.RED,
            impact=DoctorImpact.ENVIRONMENT,
            message=f"Unable to inspect credentials: {exc}",
        )

    exposed: list[str] = []
    empty: list[str] = []
    for key, size in entries.items():
        path = context.secrets.root / key
        if stat.S_IMODE(path.stat().st_mode) & 0o077:
            exposed.append(key)
        if size == 0:
            empty.append(key)

    if exposed:
        return ProbeResult(
            id="secrets-modes",
            category="secrets",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=f"Secrets readable beyond their owner: {', '.join(exposed)}.",
            remediation=f"chmod 0600 the listed files under {context.secrets.root}.",
            data={"exposed": exposed},
        )
    if empty:
        return ProbeResult(
            id="secrets-modes",
            category="secrets",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Empty secret files: {', '.join(empty)}.",
            remediation="Rotate the listed secrets.",
            data={"empty": empty},
        )
    return ProbeResult(
        id="secrets-modes",
        category="secrets",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"{len(entries)} secret(s) stored with owner-only access.",
    )


def _probe_whitelist(context: ProbeContext) -> ProbeResult:
    try:
        invalid = context.whitelist.invalid_lines()
        entries = sorted(context.whitelist.list())
    except WhitelistError as exc:
        return ProbeResult(
            id="whitelist-entries",
            category="whitelist",
            status=ProbeStatus.RED,
            impact=DoctorImpact.ENVIRONMENT,
            message=str(exc),
        )
    if invalid:
        return ProbeResult(
            id="whitelist-entries",
            category="whitelist",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Whitelist contains {len(invalid)} invalid line(s); they are ignored.",
            remediation=f"Edit {context.whitelist.path} or re-add the services.",
            data={"invalid": invalid, "services": entries},
        )
    if not entries:
        return ProbeResult(
            id="whitelist-entries",
            category="whitelist",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Whitelist is empty; no service can be restarted.",
            remediation="Run 'cicdctl whitelist add <service>'.",
        )
    return ProbeResult(
        id="whitelist-entries",
        category="whitelist",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"{len(entries)} service(s) whitelisted.",
        data={"services": entries},
    )


def _probe_authorization(context: ProbeContext) -> ProbeResult:
    status = context.authorizer.status()
    data = status.to_dict()
    if status.state is AuthorizationState.NOT_INSTALLED and not status.problems:
        return ProbeResult(
            id="authorization-state",
            category="authorization",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Restart authorization is not installed.",
            remediation="Run 'cicdctl sudoers install --user <runner>'.",
            data=data,
        )
    if status.state is not AuthorizationState.ACTIVE:
        return ProbeResult(
            id="authorization-state",
            category="authorization",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=(
                f"Restart authorization is {status.state.value}: {'; '.join(status.problems)}"
            ),
            remediation="Re-run 'cicdctl sudoers install' or 'cicdctl sudoers remove'.",
            data=data,
        )
    if status.stale:
        return ProbeResult(
            id="authorization-state",
            category="authorization",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Sudoers grant does not match the current whitelist.",
            remediation="Re-run 'cicdctl sudoers install' to refresh the grant.",
            data=data,
        )
    return ProbeResult(
        id="authorization-state",
        category="authorization",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Restart authorization active for {status.principal}.",
        data=data,
    )


def _probe_retention(context: ProbeContext) -> ProbeResult:
    try:
        policy = context.backups.get_retention()
        families = context.backups.families()
    except (BackupError, OSError) as exc:
        return ProbeResult(
            id="backups-retention",
            category="backups",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=f"Retention policy unusable: {exc}",
            remediation="Run 'cicdctl backup retention' to store a valid policy.",
        )
    data = {"policy": policy.to_dict(), "families": families}
    if policy.value == 0:
        return ProbeResult(
            id="backups-retention",
            category="backups",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Retention '{policy.describe()}' keeps only the newest snapshot per family.",
            data=data,
        )
    return ProbeResult(
        id="backups-retention",
        category="backups",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Retention: {policy.describe()} ({len(families)} family(ies)).",
        data=data,
    )


__all__ = ["collect_probes"]
