"""Typer-powered command line for ``cicdctl``.

Every mutating component receives the same :class:`RunOptions`, so
``--dry-run`` is honoured inside the components themselves and the CLI only
prints the planned actions they return. Component errors are translated to
:class:`ExitCode` values in one place (:func:`exit_code_for`).
"""
from __future__ import annotations

import textwrap
from collections.abc import Iterable, Mapping, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .actions import PlannedAction, RunOptions
from .authorizer import (
    AuthorizationError,
    GrantValidationError,
    HeadlessRefusedError,
    RestartAuthorizer,
)
from .backups import (
    BackupError,
    BackupManager,
    RetentionPolicy,
    SnapshotNotFoundError,
    SnapshotResult,
)
from .config import AppConfig, ConfigError, load_config
from .credentials import (
    DEFAULT_SECRET_LENGTH,
    InvalidSecretError,
    SecretNotFoundError,
    SecretStore,
    SecretStoreError,
    generate_secret,
)
from .doctor import (
    PROBE_CATEGORY_VALUES,
    DoctorEngine,
    DoctorImpact,
    DoctorReport,
    ProbeContext,
    ProbeStatus,
    collect_probes,
)
from .exit_codes import ExitCode
from .identifiers import InvalidName
from .layout import LayoutError, apply_directory_plan, artifact_layout, plan_directories
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .ports import (
    InvalidPortError,
    PortAllocator,
    PortConflictAborted,
    PortsRegistry,
    PortsRegistryError,
)
from .prompts import ConsolePrompter
from .providers import SystemdError, SystemdProvider
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine, TemplateError
from .versions import UnknownSoftwareError, VersionResolver
from .whitelist import ServiceWhitelist, WhitelistEntryNotFound, WhitelistError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to cicdctl's YAML config file.",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Confirm the action without prompting (required in headless mode).",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")

WRAPPER_BACKUP_FAMILY = "restart-wrapper"
GRANT_BACKUP_FAMILY = "restart-grant"

# Ordered most-specific first; subclasses must precede their bases.
_ERROR_EXIT_CODES: tuple[tuple[type[Exception], ExitCode], ...] = (
    (InvalidName, ExitCode.VALIDATION),
    (InvalidPortError, ExitCode.VALIDATION),
    (InvalidSecretError, ExitCode.VALIDATION),
    (UnknownSoftwareError, ExitCode.VALIDATION),
    (SecretNotFoundError, ExitCode.VALIDATION),
    (SnapshotNotFoundError, ExitCode.VALIDATION),
    (WhitelistEntryNotFound, ExitCode.VALIDATION),
    (PortsRegistryError, ExitCode.VALIDATION),
    (HeadlessRefusedError, ExitCode.ENVIRONMENT),
    (PortConflictAborted, ExitCode.ENVIRONMENT),
    (LockError, ExitCode.ENVIRONMENT),
    (GrantValidationError, ExitCode.PROVIDER),
    (AuthorizationError, ExitCode.PROVIDER),
    (BackupError, ExitCode.PROVIDER),
    (SecretStoreError, ExitCode.PROVIDER),
    (WhitelistError, ExitCode.PROVIDER),
    (StateRegistryError, ExitCode.PROVIDER),
    (LayoutError, ExitCode.PROVIDER),
    (TemplateError, ExitCode.PROVIDER),
    (SystemdError, ExitCode.PROVIDER),
)
_HANDLED_ERRORS = tuple(error for error, _ in _ERROR_EXIT_CODES)

_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]PASS[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]FAIL[/red]",
}
_DOCTOR_IMPACT_MESSAGES = {
    DoctorImpact.OK: "Doctor run completed successfully.",
    DoctorImpact.VALIDATION: "Doctor detected configuration or layout problems.",
    DoctorImpact.ENVIRONMENT: "Doctor detected missing system dependencies.",
    DoctorImpact.PROVIDER: "Doctor detected a broken restart authorization.",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provisioning core for VPS CI/CD hosts.

        Manages secrets, version discovery, port conflicts, pre-change
        backups, the restart whitelist and the sudoers-backed restart helper.
        """
    ).strip(),
)
secrets_app = typer.Typer(help="Manage stored secrets.")
versions_app = typer.Typer(help="Discover installable software versions.")
ports_app = typer.Typer(help="Check ports and manage reservations.")
backups_app = typer.Typer(help="Create, list, prune and restore snapshots.")
whitelist_app = typer.Typer(help="Manage services approved for restart.")
sudoers_app = typer.Typer(help="Install and inspect the restart authorization.")
service_app = typer.Typer(help="Operate on whitelisted services.")

app.add_typer(secrets_app, name="secrets")
app.add_typer(versions_app, name="versions")
app.add_typer(ports_app, name="ports")
app.add_typer(backups_app, name="backup")
app.add_typer(whitelist_app, name="whitelist")
app.add_typer(sudoers_app, name="sudoers")
app.add_typer(service_app, name="service")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    options: RunOptions
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    state: StateRegistry
    secrets: SecretStore
    versions: VersionResolver
    ports: PortsRegistry
    allocator: PortAllocator
    backups: BackupManager
    whitelist: ServiceWhitelist
    systemd: SystemdProvider
    authorizer: RestartAuthorizer


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    options: RunOptions,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    locks = LockManager(config.runtime_dir, default_timeout=config.lock_timeout)
    logger = StructuredLogger(config.logs_dir, create=not options.dry_run)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    state = StateRegistry(config.state_dir)
    whitelist = ServiceWhitelist(config.whitelist_file, options=options, locks=locks)
    systemd = SystemdProvider(systemctl_bin=config.systemd.systemctl_bin)
    authorization = config.authorization
    runtime = RuntimeContext(
        config=config,
        options=options,
        locks=locks,
        logger=logger,
        templates=templates,
        state=state,
        secrets=SecretStore(config.credentials_dir, options=options),
        versions=VersionResolver(
            timeout=config.versions.timeout,
            offline=config.versions.offline,
            limit=config.versions.limit,
            apt_cache_bin=config.versions.apt_cache_bin,
        ),
        ports=PortsRegistry(state, options=options),
        allocator=PortAllocator(
            options=options,
            prompter=None if options.headless else ConsolePrompter(console),
            ss_bin=config.ports.ss_bin,
            search_limit=config.ports.search_limit,
        ),
        backups=BackupManager(
            config.backups_dir,
            state,
            options=options,
            compression=config.backups.compression,
            compression_level=config.backups.compression_level,
            default_retention=config.backups.retention,
        ),
        whitelist=whitelist,
        systemd=systemd,
        authorizer=RestartAuthorizer(
            whitelist=whitelist,
            templates=templates,
            systemd=systemd,
            wrapper_path=authorization.wrapper_path,
            grant_path=authorization.grant_path,
            options=options,
            locks=locks,
            visudo_bin=authorization.visudo_bin,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, RunOptions())


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the cicdctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report the actions that would be taken without changing anything.",
    ),
    headless: bool = typer.Option(
        False,
        "--headless",
        "--auto",
        help="Never prompt; use defaults and refuse unconfirmed destructive actions.",
    ),
    allow_sudoers: bool = typer.Option(
        False,
        "--allow-sudoers",
        help="Permit headless runs to install or update the restart grant.",
    ),
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    options = RunOptions(dry_run=dry_run, headless=headless, allow_sudoers=allow_sudoers)
    if version:
        console.print(f"cicdctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, options, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code for a component error."""
    for error_type, code in _ERROR_EXIT_CODES:
        if isinstance(exc, error_type):
            return code
    return ExitCode.PROVIDER


def _operation(
    runtime: RuntimeContext,
    command: str,
    *,
    args: Mapping[str, object] | None = None,
    target: Mapping[str, object] | None = None,
) -> AbstractContextManager[OperationScope]:
    payload = dict(args or {})
    payload["dry_run"] = runtime.options.dry_run
    payload["headless"] = runtime.options.headless
    return runtime.logger.operation(command, args=payload, target=target)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    _command_error(op, str(exc), rc=exit_code_for(exc))


def _confirm(
    runtime: RuntimeContext,
    op: OperationScope,
    prompt: str,
    *,
    yes: bool,
    skip_in_dry_run: bool = True,
) -> None:
    """Require an explicit confirmation that defaults to no."""
    if yes or (skip_in_dry_run and runtime.options.dry_run):
        op.add_step("confirm", status="info", detail="auto")
        return
    if runtime.options.headless:
        _command_error(
            op,
            "Refusing to proceed in headless mode without --yes.",
            rc=ExitCode.ENVIRONMENT,
        )
    if not typer.confirm(prompt, default=False):
        op.add_step("confirm", status="warning", detail="declined")
        _command_error(op, "Cancelled by operator.", rc=ExitCode.ENVIRONMENT)
    op.add_step("confirm", status="success", detail="accepted")


def _print_actions(actions: Iterable[PlannedAction]) -> None:
    for action in actions:
        console.print(f"  {action.describe()}", markup=False, highlight=False)


def _finish(
    runtime: RuntimeContext,
    op: OperationScope,
    actions: Sequence[PlannedAction],
    message: str,
    *,
    backups: Iterable[object] | None = None,
) -> None:
    """Report the outcome of a mutating command."""
    context = {"actions": [action.to_dict() for action in actions]}
    if runtime.options.dry_run:
        console.print(f"[yellow]Dry run[/yellow]: {message}")
        if actions:
            _print_actions(actions)
        else:
            console.print("  nothing to do")
        op.success("Dry run complete.", changed=0, context=context)
        return
    console.print(f"[green]{message}[/green]")
    op.success(message, changed=len(actions), backups=backups, context=context)


def _snapshot_before_change(
    runtime: RuntimeContext,
    op: OperationScope,
    sources: Sequence[tuple[Path, str]],
) -> list[PlannedAction]:
    """Snapshot each tracked path; any failure aborts the command."""
    actions: list[PlannedAction] = []
    for source, family in sources:
        try:
            result = runtime.backups.snapshot(source, family=family)
        except BackupError as exc:
            _fail(op, exc)
        op.add_step(f"backup.{family}", status=result.status, detail=_snapshot_detail(result))
        actions.extend(result.actions)
    return actions


def _snapshot_detail(result: SnapshotResult) -> str:
    if result.snapshot is None:
        return f"{result.source_path} missing"
    return str(result.snapshot.archive_path)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


@app.command()
def init(ctx: typer.Context) -> None:
    """Create the artifact root directory layout."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with _operation(
        runtime, "init", target={"kind": "layout", "root": str(config.artifact_root)}
    ) as op:
        plan = plan_directories(artifact_layout(config.artifact_root, logs_dir=config.logs_dir))
        if plan.warnings:
            _command_error(op, "; ".join(plan.warnings), rc=ExitCode.ENVIRONMENT)
        actions = [action.as_planned() for action in plan.actions]
        if not runtime.options.dry_run:
            try:
                apply_directory_plan(plan)
            except LayoutError as exc:
                _fail(op, exc)
        _finish(runtime, op, actions, f"Artifact root ready at {config.artifact_root}.")


# ---------------------------------------------------------------------------
# secrets
# ---------------------------------------------------------------------------


@secrets_app.command("list")
def secrets_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List stored secrets with masked values."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "secrets list", args={"json": json_output}) as op:
        try:
            entries = runtime.secrets.list()
        except (OSError, SecretStoreError) as exc:
            _command_error(op, f"Unable to list secrets: {exc}", rc=ExitCode.PROVIDER)
        if json_output:
            console.print_json(
                data={"secrets": [{"key": key, "bytes": size} for key, size in entries.items()]}
            )
            op.success("Reported secrets as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_column("Bytes", justify="right")
        if not entries:
            table.add_row("(none)", "", "")
        for key, size in entries.items():
            table.add_row(key, "********", str(size))
        console.print(table)
        op.success("Reported secrets.", changed=0)


@secrets_app.command("show")
def secrets_show(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Secret key."),
    yes: bool = YES_OPTION,
) -> None:
    """Print a secret value after an explicit confirmation."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "secrets show", target={"kind": "secret", "key": key}) as op:
        _confirm(
            runtime,
            op,
            f"Display secret '{key}' in plain text?",
            yes=yes,
            skip_in_dry_run=False,
        )
        try:
            value = runtime.secrets.get(key)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(value, markup=False, highlight=False, soft_wrap=True)
        op.success("Displayed secret.", changed=0)


@secrets_app.command("set")
def secrets_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Secret key."),
    value: str | None = typer.Option(
        None,
        "--value",
        help="Secret value; prompted for (hidden) when omitted.",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Store a secret, prompting for the value when not supplied."""
    runtime = _get_runtime(ctx)
    with _operation(
        runtime,
        "secrets set",
        args={"value_supplied": value is not None},
        target={"kind": "secret", "key": key},
    ) as op:
        try:
            exists = runtime.secrets.exists(key)
        except InvalidName as exc:
            _fail(op, exc)
        if exists:
            _confirm(runtime, op, f"Secret '{key}' exists. Overwrite it?", yes=yes)
        if value is None:
            if runtime.options.headless:
                _command_error(op, "--value is required in headless mode.", rc=ExitCode.VALIDATION)
            value = typer.prompt(
                f"Value for '{key}'", hide_input=True, confirmation_prompt=True, default=""
            )
        try:
            actions = runtime.secrets.put(key, value)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Stored secret '{key}'.")


@secrets_app.command("generate")
def secrets_generate(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Secret key."),
    length: int = typer.Option(
        DEFAULT_SECRET_LENGTH, "--length", min=8, help="Number of characters to generate."
    ),
) -> None:
    """Store a random secret under a new key."""
    runtime = _get_runtime(ctx)
    with _operation(
        runtime, "secrets generate", args={"length": length}, target={"kind": "secret", "key": key}
    ) as op:
        try:
            if runtime.secrets.exists(key):
                _command_error(
                    op,
                    f"Secret '{key}' already exists; use 'cicdctl secrets rotate'.",
                    rc=ExitCode.VALIDATION,
                )
            actions = runtime.secrets.put(key, generate_secret(length))
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Generated secret '{key}'.")


@secrets_app.command("rotate")
def secrets_rotate(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Secret key."),
    value: str | None = typer.Option(
        None, "--value", help="New value; a random one is generated when omitted."
    ),
    length: int = typer.Option(
        DEFAULT_SECRET_LENGTH, "--length", min=8, help="Length of a generated value."
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Replace a secret; the previous value cannot be recovered."""
    runtime = _get_runtime(ctx)
    with _operation(
        runtime,
        "secrets rotate",
        args={"value_supplied": value is not None, "length": length},
        target={"kind": "secret", "key": key},
    ) as op:
        _confirm(runtime, op, f"Rotate secret '{key}'? The old value will be lost.", yes=yes)
        try:
            actions = runtime.secrets.rotate(
                key, value if value is not None else (lambda: generate_secret(length))
            )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Rotated secret '{key}'.")


@secrets_app.command("delete")
def secrets_delete(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Secret key."),
    yes: bool = YES_OPTION,
) -> None:
    """Delete a secret."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "secrets delete", target={"kind": "secret", "key": key}) as op:
        _confirm(runtime, op, f"Delete secret '{key}'?", yes=yes)
        try:
            actions = runtime.secrets.delete(key)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Secret '{key}' removed.")


@secrets_app.command("wipe")
def secrets_wipe(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Delete every stored secret."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "secrets wipe", target={"kind": "secret", "scope": "all"}) as op:
        _confirm(runtime, op, "Delete ALL stored secrets?", yes=yes)
        try:
            actions = runtime.secrets.wipe_all()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Removed {len(actions)} secret(s).")


# ---------------------------------------------------------------------------
# versions
# ---------------------------------------------------------------------------


@versions_app.command("list")
def versions_list(
    ctx: typer.Context,
    software: str | None = typer.Argument(None, help="Software id (omit to list known ids)."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the versions available for a piece of software."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "versions list", args={"software": software}) as op:
        if software is None:
            known = runtime.versions.known()
            if json_output:
                console.print_json(data={"software": known})
            else:
                console.print("\n".join(known))
            op.success("Reported known software.", changed=0)
            return
        try:
            catalog = runtime.versions.resolve(software)
        except UnknownSoftwareError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=catalog.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Version", style="bold")
            table.add_column("Source")
            for version in catalog.versions:
                table.add_row(version, catalog.source)
            console.print(table)
            if catalog.is_fallback:
                console.print(
                    "[yellow]Live sources unavailable; showing the built-in list.[/yellow]"
                )
        if catalog.is_fallback:
            op.warning(
                "Reported built-in versions.",
                warnings=[f"{software}:hardcoded"],
                context=catalog.to_dict(),
            )
            return
        op.success("Reported versions.", changed=0, context=catalog.to_dict())


@versions_app.command("check")
def versions_check(
    ctx: typer.Context,
    software: str = typer.Argument(..., help="Software id."),
    version: str | None = typer.Argument(None, help="Version to validate (prompted when omitted)."),
) -> None:
    """Validate a version, or choose one interactively."""
    runtime = _get_runtime(ctx)
    with _operation(
        runtime, "versions check", args={"software": software, "version": version}
    ) as op:
        try:
            catalog = runtime.versions.resolve(software)
        except UnknownSoftwareError as exc:
            _fail(op, exc)
        op.add_step("resolve", status="success", detail=catalog.source)

        if version is None:
            if runtime.options.headless:
                version = catalog.latest
                op.add_step("select", status="info", detail="latest (headless)")
            else:
                version = ConsolePrompter(console).choose_version(catalog)
                if version is None:
                    _command_error(op, "Version selection cancelled.", rc=ExitCode.ENVIRONMENT)
        elif not runtime.versions.validate(version, catalog):
            _command_error(
                op,
                f"{software} {version} is not available. Choose one of: "
                f"{', '.join(catalog.versions)}.",
                rc=ExitCode.VALIDATION,
            )

        if catalog.is_fallback:
            console.print("[yellow]Validated against the built-in version list.[/yellow]")
        console.print(f"[green]{software} {version}[/green] ({catalog.source})")
        op.success(
            "Version accepted.",
            changed=0,
            context={"software": software, "version": version, "source": catalog.source},
        )


# ---------------------------------------------------------------------------
# ports
# ---------------------------------------------------------------------------


@ports_app.command("check")
def ports_check(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Requested port (1-65535)."),
    purpose: str = typer.Option("service", "--purpose", help="What the port is for."),
    reserve: bool = typer.Option(
        False, "--reserve", help="Record the resolved port for this purpose."
    ),
) -> None:
    """Check a port and resolve a conflict if it is already in use."""
    runtime = _get_runtime(ctx)
    with _operation(
        runtime,
        "ports check",
        args={"port": port, "purpose": purpose, "reserve": reserve},
        target={"kind": "port", "purpose": purpose},
    ) as op:
        try:
            resolution = runtime.allocator.resolve_conflict(port, purpose)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if resolution.forced:
            console.print(
                f"[yellow]Port {resolution.port} forced for {purpose} despite a listener.[/yellow]"
            )
        elif resolution.reassigned:
            console.print(f"[yellow]Port {port} busy; using {resolution.port}.[/yellow]")
        else:
            console.print(f"[green]Port {resolution.port} is available.[/green]")
        context = {
            "port": resolution.port,
            "forced": resolution.forced,
            "reassigned": resolution.reassigned,
        }
        if not reserve:
            op.success("Port resolved.", changed=0, context=context)
            return
        try:
            actions = runtime.ports.reserve(purpose, resolution.port, forced=resolution.forced)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Reserved port {resolution.port} for {purpose}.")


@ports_app.command("list")
def ports_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List port reservations."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "ports list", args={"json": json_output}) as op:
        try:
            entries = runtime.ports.list_entries()
        except StateRegistryError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported port reservations as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Purpose", style="bold")
        table.add_column("Port")
        table.add_column("Forced")
        if not entries:
            table.add_row("(none)", "", "")
        for entry in entries:
            table.add_row(entry["name"], str(entry["port"]), "yes" if entry["forced"] else "")
        console.print(table)
        op.success("Reported port reservations.", changed=0)


@ports_app.command("release")
def ports_release(
    ctx: typer.Context,
    purpose: str = typer.Argument(..., help="Purpose whose reservation to drop."),
) -> None:
    """Release a port reservation."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "ports release", target={"kind": "port", "purpose": purpose}) as op:
        try:
            actions = runtime.ports.release(purpose)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Released port reservation for {purpose}.")


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    paths: list[Path] = typer.Argument(..., help="Files or directories to snapshot."),
) -> None:
    """Snapshot paths and apply retention to their families."""
    runtime = _get_runtime(ctx)
    with _operation(
        runtime, "backup create", args={"paths": [str(path) for path in paths]}
    ) as op:
        actions: list[PlannedAction] = []
        created: list[str] = []
        for path in paths:
            try:
                result = runtime.backups.snapshot(path)
            except BackupError as exc:
                _fail(op, exc)
            op.add_step(
                f"snapshot.{path.name}", status=result.status, detail=_snapshot_detail(result)
            )
            if result.skipped:
                console.print(f"[yellow]Skipped {path}: it does not exist.[/yellow]")
                continue
            actions.extend(result.actions)
            if result.status == "created" and result.snapshot is not None:
                created.append(str(result.snapshot.archive_path))
                console.print(f"Created {result.snapshot.archive_path}")
                for pruned in result.pruned:
                    console.print(f"  pruned {pruned}")
        summary = f"Snapshot run complete ({len(created)} created)."
        _finish(runtime, op, actions, summary, backups=created)


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    family: str | None = typer.Argument(None, help="Snapshot family (defaults to all)."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List snapshots, newest first."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "backup list", args={"family": family, "json": json_output}) as op:
        try:
            families = [family] if family else runtime.backups.families()
            snapshots = [
                snapshot for name in families for snapshot in runtime.backups.list_snapshots(name)
            ]
        except BackupError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"snapshots": [snapshot.to_dict() for snapshot in snapshots]})
            op.success("Reported snapshots as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Family", style="bold")
        table.add_column("Created (UTC)")
        table.add_column("Archive")
        table.add_column("Retained")
        if not snapshots:
            table.add_row("(none)", "", "", "")
        for snapshot in snapshots:
            table.add_row(
                snapshot.family,
                snapshot.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                snapshot.archive_path.name,
                "yes" if snapshot.retained else "[yellow]expired[/yellow]",
            )
        console.print(table)
        op.success("Reported snapshots.", changed=0)


@backups_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    family: str | None = typer.Argument(None, help="Snapshot family (defaults to all)."),
    yes: bool = YES_OPTION,
) -> None:
    """Delete snapshots beyond the retention policy."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "backup prune", args={"family": family}) as op:
        try:
            policy = runtime.backups.get_retention()
            families = [family] if family else runtime.backups.families()
        except BackupError as exc:
            _fail(op, exc)
        _confirm(runtime, op, f"Prune snapshots using '{policy.describe()}'?", yes=yes)
        actions: list[PlannedAction] = []
        for name in families:
            try:
                removed = runtime.backups.prune(name)
            except BackupError as exc:
                _fail(op, exc)
            actions.extend(PlannedAction("delete", str(path)) for path in removed)
        _finish(runtime, op, actions, f"Pruned {len(actions)} snapshot(s) ({policy.describe()}).")


@backups_app.command("retention")
def backup_retention(
    ctx: typer.Context,
    keep_last: int | None = typer.Option(
        None, "--keep-last", min=0, help="Keep the newest N snapshots per family."
    ),
    keep_days: int | None = typer.Option(
        None, "--keep-days", min=0, help="Keep snapshots younger than D days."
    ),
) -> None:
    """Show or change the retention policy."""
    runtime = _get_runtime(ctx)
    with _operation(
        runtime, "backup retention", args={"keep_last": keep_last, "keep_days": keep_days}
    ) as op:
        if keep_last is not None and keep_days is not None:
            _command_error(op, "Use either --keep-last or --keep-days, not both.")
        try:
            if keep_last is None and keep_days is None:
                policy = runtime.backups.get_retention()
                console.print(f"Retention: {policy.describe()}")
                op.success("Reported retention policy.", changed=0, context=policy.to_dict())
                return
            policy = (
                RetentionPolicy.keep_last(keep_last)
                if keep_last is not None
                else RetentionPolicy.keep_days(keep_days or 0)
            )
            actions = runtime.backups.set_retention(policy)
        except BackupError as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Retention set to {policy.describe()}.")


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    family: str = typer.Argument(..., help="Snapshot family to restore."),
    at: str | None = typer.Option(
        None, "--at", help="Snapshot timestamp (YYYYmmddHHMMSS[-ffffff]); defaults to newest."
    ),
    destination: Path | None = typer.Option(
        None, "--to", help="Restore here instead of the recorded source path."
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Restore a snapshot over its source, snapshotting the current copy first."""
    runtime = _get_runtime(ctx)
    sudoers_family = family in {WRAPPER_BACKUP_FAMILY, GRANT_BACKUP_FAMILY}
    with _operation(
        runtime,
        "backup restore",
        args={"family": family, "at": at, "to": str(destination) if destination else None},
    ) as op:
        try:
            snapshot = runtime.backups.find_snapshot(family, at)
            target = runtime.backups.restore_target(family, destination)
        except BackupError as exc:
            _fail(op, exc)
        _confirm(
            runtime,
            op,
            f"Replace {target} with {snapshot.archive_path.name}?",
            yes=yes,
        )
        try:
            if sudoers_family and not runtime.options.dry_run:
                with runtime.locks.mutation_lock():
                    result = runtime.backups.restore(snapshot, destination=destination)
            else:
                result = runtime.backups.restore(snapshot, destination=destination)
        except (BackupError, LockError) as exc:
            _fail(op, exc)
        op.add_step(
            "backup.restore",
            status=result.status,
            detail=f"{snapshot.archive_path} -> {result.destination}",
        )
        safety = result.safety.snapshot if result.safety else None
        _finish(
            runtime,
            op,
            list(result.actions),
            f"Restored {result.destination} from {snapshot.archive_path.name}.",
            backups=[str(safety.archive_path)] if safety and result.status == "restored" else [],
        )
        if sudoers_family and not runtime.options.dry_run:
            status = runtime.authorizer.status()
            console.print(f"Restart authorization is now {status.state.value}.")


# ---------------------------------------------------------------------------
# whitelist
# ---------------------------------------------------------------------------


@whitelist_app.command("add")
def whitelist_add(
    ctx: typer.Context,
    services: list[str] = typer.Argument(..., help="Service unit names."),
) -> None:
    """Approve services for restart."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "whitelist add", args={"services": services}) as op:
        actions: list[PlannedAction] = []
        for service in services:
            try:
                actions.extend(runtime.whitelist.add(service))
            except _HANDLED_ERRORS as exc:
                _fail(op, exc)
        _finish(runtime, op, actions, f"Whitelist updated ({len(actions)} added).")
        _hint_stale_grant(runtime)


@whitelist_app.command("remove")
def whitelist_remove(
    ctx: typer.Context,
    service: str = typer.Argument(..., help="Service unit name."),
) -> None:
    """Revoke restart approval for a service."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "whitelist remove", target={"kind": "service", "name": service}) as op:
        try:
            actions = runtime.whitelist.remove(service)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, actions, f"Removed '{service}' from the whitelist.")
        _hint_stale_grant(runtime)


@whitelist_app.command("list")
def whitelist_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List whitelisted services."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "whitelist list", args={"json": json_output}) as op:
        try:
            services = sorted(runtime.whitelist.list())
        except WhitelistError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"services": services})
        elif services:
            console.print("\n".join(services), markup=False, highlight=False)
        else:
            console.print("(no services whitelisted)")
        op.success("Reported whitelist.", changed=0)


def _hint_stale_grant(runtime: RuntimeContext) -> None:
    if runtime.options.dry_run or not runtime.authorizer.grant_path.exists():
        return
    if runtime.authorizer.status().stale:
        console.print(
            "[yellow]The sudoers grant no longer matches the whitelist; "
            "run 'cicdctl sudoers install' to refresh it.[/yellow]"
        )


# ---------------------------------------------------------------------------
# sudoers
# ---------------------------------------------------------------------------


@sudoers_app.command("install")
def sudoers_install(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="Account allowed to restart services."),
    yes: bool = YES_OPTION,
) -> None:
    """Install or refresh the restart wrapper and its sudoers grant."""
    runtime = _get_runtime(ctx)
    authorizer = runtime.authorizer
    with _operation(
        runtime,
        "sudoers install",
        args={"user": user, "allow_sudoers": runtime.options.allow_sudoers},
        target={"kind": "sudoers", "path": str(authorizer.grant_path)},
    ) as op:
        try:
            authorizer.preflight(user)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _confirm(
            runtime,
            op,
            f"Grant '{user}' passwordless restart of whitelisted services?",
            yes=yes,
        )
        backup_actions = _snapshot_before_change(
            runtime,
            op,
            [
                (authorizer.wrapper_path, WRAPPER_BACKUP_FAMILY),
                (authorizer.grant_path, GRANT_BACKUP_FAMILY),
            ],
        )
        try:
            result = authorizer.install(user)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        actions = [*backup_actions, *result.actions]
        _finish(
            runtime,
            op,
            actions,
            f"Restart authorization for '{user}' covers: {', '.join(result.services)}.",
        )


@sudoers_app.command("remove")
def sudoers_remove(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Remove the sudoers grant and the restart wrapper."""
    runtime = _get_runtime(ctx)
    authorizer = runtime.authorizer
    with _operation(
        runtime, "sudoers remove", target={"kind": "sudoers", "path": str(authorizer.grant_path)}
    ) as op:
        _confirm(runtime, op, "Remove the restart authorization?", yes=yes)
        backup_actions = _snapshot_before_change(
            runtime,
            op,
            [
                (authorizer.wrapper_path, WRAPPER_BACKUP_FAMILY),
                (authorizer.grant_path, GRANT_BACKUP_FAMILY),
            ],
        )
        try:
            result = authorizer.remove()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _finish(runtime, op, [*backup_actions, *result.actions], "Restart authorization removed.")


@sudoers_app.command("status")
def sudoers_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report the installed state of the restart authorization."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "sudoers status", args={"json": json_output}) as op:
        try:
            status = runtime.authorizer.status()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        payload = status.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=False)
            table.add_column("Field", style="bold")
            table.add_column("Value")
            table.add_row("State", status.state.value)
            table.add_row("Principal", status.principal or "-")
            table.add_row("Granted", ", ".join(status.granted) or "-")
            table.add_row("Whitelisted", ", ".join(status.whitelisted) or "-")
            table.add_row("Stale", "yes" if status.stale else "no")
            console.print(table)
            for problem in status.problems:
                console.print(f"[yellow]{problem}[/yellow]")
        op.success("Reported restart authorization.", changed=0, context=payload)


@sudoers_app.command("render")
def sudoers_render(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="Account named in the grant."),
    wrapper: bool = typer.Option(False, "--wrapper", help="Print the wrapper script instead."),
) -> None:
    """Print the grant (or wrapper) that install would write."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "sudoers render", args={"user": user, "wrapper": wrapper}) as op:
        try:
            if wrapper:
                text = runtime.authorizer.render_wrapper()
            else:
                text = runtime.authorizer.render_grant(user, sorted(runtime.whitelist.list()))
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(text, markup=False, highlight=False, end="")
        op.success("Rendered template.", changed=0)


# ---------------------------------------------------------------------------
# service
# ---------------------------------------------------------------------------


@service_app.command("restart")
def service_restart(
    ctx: typer.Context,
    service: str = typer.Argument(..., help="Whitelisted service unit name."),
) -> None:
    """Restart a service through the whitelist policy."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "service restart", target={"kind": "service", "name": service}) as op:
        try:
            outcome = runtime.authorizer.wrapper.invoke(service)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        code = int(outcome.exit_code)
        context = {"exit_code": code, "wrapper_exit": outcome.exit_code.name.lower()}
        if not outcome.ok:
            console.print(f"[red]{outcome.message}[/red]")
            op.error(outcome.message, rc=code, context=context)
            raise typer.Exit(code=code)
        style = "yellow" if runtime.options.dry_run else "green"
        console.print(f"[{style}]{outcome.message}[/{style}]")
        op.success(outcome.message, changed=0 if runtime.options.dry_run else 1, context=context)


# ---------------------------------------------------------------------------
# doctor
# ---------------------------------------------------------------------------


def _render_doctor_report(report: DoctorReport) -> None:
    summary = report.summary
    totals = summary.totals
    console.print(
        f"Doctor summary: {_PROBE_STATUS_STYLE[summary.status]} "
        f"(impact={summary.impact.name.lower()}, exit={summary.exit_code})"
    )
    console.print(
        f"Totals: green={totals.get(ProbeStatus.GREEN, 0)} "
        f"warn={totals.get(ProbeStatus.YELLOW, 0)} "
        f"red={totals.get(ProbeStatus.RED, 0)}"
    )
    console.print()
    for result in report.results:
        console.print(
            f"{_PROBE_STATUS_STYLE[result.status]} [{result.category}] {result.id}: "
            f"{result.message}",
            highlight=False,
        )
        if result.remediation:
            console.print(f"  remediation: {result.remediation}", highlight=False)


@app.command()
def doctor(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit a JSON doctor report."),
    only: str | None = typer.Option(
        None,
        "--only",
        metavar="CATEGORY[,CATEGORY...]",
        help=f"Comma-separated probe categories to run ({', '.join(PROBE_CATEGORY_VALUES)}).",
    ),
) -> None:
    """Run environment, permission and authorization health checks."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "doctor", args={"json": json_output, "only": only}) as op:
        categories = {item.strip() for item in (only or "").split(",") if item.strip()}
        unknown = categories - set(PROBE_CATEGORY_VALUES)
        if unknown:
            _command_error(op, f"Unknown probe categories: {', '.join(sorted(unknown))}")

        context = ProbeContext(
            config=runtime.config,
            whitelist=runtime.whitelist,
            authorizer=runtime.authorizer,
            secrets=runtime.secrets,
            backups=runtime.backups,
        )
        probes = [
            probe
            for probe in collect_probes(context)
            if not categories or probe.category in categories
        ]
        report = DoctorEngine(context).run(probes, metadata={"only": sorted(categories) or None})
        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_doctor_report(report)

        summary = report.summary
        message = _DOCTOR_IMPACT_MESSAGES[summary.impact]
        warnings = [result.id for result in report.results if result.status is ProbeStatus.YELLOW]
        if summary.exit_code == 0:
            if warnings:
                op.warning("Doctor completed with warnings.", warnings=warnings, context=payload)
            else:
                op.success(message, context=payload)
            return
        errors = [result.id for result in report.results if result.is_failure]
        if not json_output:
            console.print(f"[red]{message}[/red]")
        op.error(message, rc=summary.exit_code, errors=errors, context=payload)
        raise typer.Exit(code=summary.exit_code)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "exit_code_for", "main"]
