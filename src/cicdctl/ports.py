"""Port availability checks, conflict resolution and reservations."""
from __future__ import annotations

import errno
import logging
import socket
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from .actions import PlannedAction, RunOptions
from .state import StateRegistry

LOGGER = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535
PORTS_FILE = "ports.yml"


class PortError(RuntimeError):
    """Raised when port probing or conflict resolution fails."""


class PortConflictAborted(PortError):
    """Raised when the operator aborts conflict resolution."""


class PortsRegistryError(RuntimeError):
    """Raised when port reservation or release fails."""


class InvalidPortError(ValueError):
    """Raised when a port value is not an integer within 1-65535."""


def validate_port(value: object) -> int:
    """Return *value* as an int port or raise :class:`InvalidPortError`."""
    if isinstance(value, bool):
        raise InvalidPortError(f"Port must be an integer, got {value!r}.")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str) and value.strip().isdigit():
        port = int(value.strip())
    else:
        raise InvalidPortError(f"Port must be an integer, got {value!r}.")
    if not MIN_PORT <= port <= MAX_PORT:
        raise InvalidPortError(f"Port {port} is outside the range {MIN_PORT}-{MAX_PORT}.")
    return port


class ConflictChoice(Enum):
    """Operator choices when a requested port is already in use."""

    REASSIGN = "reassign"
    FORCE = "force"
    ABORT = "abort"


class ConflictPrompter(Protocol):
    """Interactive hooks used by :meth:`PortAllocator.resolve_conflict`."""

    def choose_conflict_action(self, port: int, purpose: str) -> ConflictChoice: ...

    def ask_port(self, purpose: str, suggestion: int) -> str: ...

    def confirm_force(self, port: int, purpose: str) -> bool: ...

    def notify(self, message: str) -> None: ...


@dataclass(frozen=True)
class PortResolution:
    """Outcome of conflict resolution."""

    port: int
    forced: bool = False
    reassigned: bool = False


class PortAllocator:
    """Detect listening sockets and resolve conflicts for requested ports."""

    def __init__(
        self,
        *,
        options: RunOptions = RunOptions(),
        prompter: ConflictPrompter | None = None,
        ss_bin: str = "ss",
        search_limit: int = 100,
    ) -> None:
        self.options = options
        self.prompter = prompter
        self.ss_bin = ss_bin
        self.search_limit = search_limit

    def is_available(self, port: int) -> bool:
        """Return True when nothing is listening on *port*."""
        checked = validate_port(port)
        listening = self.listening_ports()
        if listening is not None:
            return checked not in listening
        return self._bind_probe(checked)

    def listening_ports(self) -> set[int] | None:
        """Return listening TCP/UDP ports via ``ss -tuln`` (None when unavailable)."""
        try:
            result = self._run_command([self.ss_bin, "-tuln"])
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.debug("ss unavailable, falling back to bind probe: %s", exc)
            return None
        if result.returncode != 0:
            return None
        return parse_ss_output(result.stdout or "")

    def next_free(self, start: int) -> int | None:
        """Return the first free port at or above *start* within the search limit."""
        begin = validate_port(start)
        listening = self.listening_ports()
        end = min(MAX_PORT, begin + self.search_limit - 1)
        for candidate in range(begin, end + 1):
            if listening is not None:
                if candidate not in listening:
                    return candidate
            elif self._bind_probe(candidate):
                return candidate
        return None

    def resolve_conflict(self, port: int, purpose: str) -> PortResolution:
        """Return a usable port for *purpose*, starting from *port*.

        Headless runs never force a conflict; they move to the next free port.
        Interactive runs let the operator reassign, force or abort.
        """
        current = validate_port(port)
        if self.is_available(current):
            return PortResolution(port=current)

        if self.options.headless or self.prompter is None:
            start = current + 1 if current < MAX_PORT else MIN_PORT
            candidate = self.next_free(start)
            if candidate is None:
                raise PortConflictAborted(
                    f"No free port found near {current} for {purpose}."
                )
            LOGGER.info("Port %s busy; using %s for %s.", current, candidate, purpose)
            return PortResolution(port=candidate, reassigned=True)

        prompter = self.prompter
        reassigned = False
        while True:
            choice = prompter.choose_conflict_action(current, purpose)
            if choice is ConflictChoice.ABORT:
                raise PortConflictAborted(f"Port selection for {purpose} aborted by operator.")
            if choice is ConflictChoice.FORCE:
                if prompter.confirm_force(current, purpose):
                    LOGGER.warning(
                        "Forcing port %s for %s despite an existing listener.", current, purpose
                    )
                    return PortResolution(port=current, forced=True, reassigned=reassigned)
                continue

            suggestion = current + 1 if current < MAX_PORT else MIN_PORT
            raw = prompter.ask_port(purpose, suggestion)
            try:
                candidate = validate_port(raw)
            except InvalidPortError as exc:
                prompter.notify(str(exc))
                continue
            reassigned = True
            if self.is_available(candidate):
                return PortResolution(port=candidate, reassigned=True)
            prompter.notify(f"Port {candidate} is also in use.")
            current = candidate

    # ------------------------------------------------------------------
    def _bind_probe(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("0.0.0.0", port))  # noqa: S104
            except OSError as exc:
                return exc.errno != errno.EADDRINUSE
        return True

    def _run_command(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(  # noqa: S603, S607
            args,
            capture_output=True,
            text=True,
            check=False,
        )


def parse_ss_output(output: str) -> set[int]:
    """Return the local ports found in ``ss -tuln`` output."""
    ports: set[int] = set()
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 5 or fields[0].lower() == "netid":
            continue
        local = fields[4]
        _, _, port_text = local.rpartition(":")
        if port_text.isdigit():
            ports.add(int(port_text))
    return ports


@dataclass(slots=True)
class PortsRegistry:
    """Record which port each purpose was given, in ``state/ports.yml``."""

    registry: StateRegistry
    options: RunOptions = RunOptions()

    def list_entries(self) -> list[dict[str, Any]]:
        """Return the current port reservations sorted by port."""
        raw = self.registry.read(PORTS_FILE, default={"ports": []})
        ports = raw.get("ports", []) if isinstance(raw, dict) else []
        entries: list[dict[str, Any]] = []
        if isinstance(ports, Iterable):
            for item in ports:
                if not isinstance(item, dict):
                    continue
                name = str(item.get("name", "")).strip()
                if not name:
                    continue
                try:
                    port = validate_port(item.get("port"))
                except InvalidPortError:
                    continue
                entries.append({"name": name, "port": port, "forced": bool(item.get("forced"))})
        entries.sort(key=lambda entry: entry["port"])
        return entries

    def get_port(self, name: str) -> int | None:
        """Return the reserved port for *name*, if present."""
        normalized = _normalize_name(name)
        for entry in self.list_entries():
            if entry["name"] == normalized:
                return entry["port"]
        return None

    def reserve(self, name: str, port: int, *, forced: bool = False) -> list[PlannedAction]:
        """Record *port* for *name*, replacing any previous reservation for it."""
        normalized = _normalize_name(name)
        checked = validate_port(port)
        entries = [entry for entry in self.list_entries() if entry["name"] != normalized]
        holder = next((entry for entry in entries if entry["port"] == checked), None)
        if holder is not None and not forced:
            raise PortsRegistryError(
                f"Port {checked} is already reserved for '{holder['name']}'."
            )
        entries.append({"name": normalized, "port": checked, "forced": forced})
        entries.sort(key=lambda entry: entry["port"])
        actions = [
            PlannedAction(
                "write", str(self.registry.path_for(PORTS_FILE)), f"{normalized}={checked}"
            )
        ]
        if not self.options.dry_run:
            self.registry.write(PORTS_FILE, {"ports": entries})
        return actions

    def release(self, name: str) -> list[PlannedAction]:
        """Release the port reserved for *name*."""
        normalized = _normalize_name(name)
        entries = self.list_entries()
        filtered = [entry for entry in entries if entry["name"] != normalized]
        if len(filtered) == len(entries):
            raise PortsRegistryError(f"No port reservation found for '{normalized}'.")
        actions = [
            PlannedAction("write", str(self.registry.path_for(PORTS_FILE)), f"release {normalized}")
        ]
        if not self.options.dry_run:
            self.registry.write(PORTS_FILE, {"ports": filtered})
        return actions


def _normalize_name(name: str) -> str:
    """Return a normalised purpose name."""
    normalized = name.strip()
    if not normalized:
        raise PortsRegistryError("Port purpose must be a non-empty string.")
    return normalized


__all__ = [
    "ConflictChoice",
    "ConflictPrompter",
    "InvalidPortError",
    "PortAllocator",
    "PortConflictAborted",
    "PortError",
    "PortResolution",
    "PortsRegistry",
    "PortsRegistryError",
    "parse_ss_output",
    "validate_port",
]
