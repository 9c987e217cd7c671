"""Tests for port availability checks, conflict resolution and reservations."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from cicdctl.actions import RunOptions
from cicdctl.ports import (
    ConflictChoice,
    InvalidPortError,
    PortAllocator,
    PortConflictAborted,
    PortsRegistry,
    PortsRegistryError,
    parse_ss_output,
    validate_port,
)
from cicdctl.state import StateRegistry

SS_OUTPUT = """\
Netid State  Recv-Q Send-Q Local Address:Port  Peer Address:Port Process
udp   UNCONN 0      0      127.0.0.53%lo:53         0.0.0.0:*
tcp   LISTEN 0      4096         0.0.0.0:22         0.0.0.0:*
tcp   LISTEN 0      511          0.0.0.0:8080       0.0.0.0:*
tcp   LISTEN 0      511          0.0.0.0:8081       0.0.0.0:*
tcp   LISTEN 0      4096            [::]:5432          [::]:*
"""


class FakePrompter:
    """Scripted stand-in for the console prompter."""

    def __init__(
        self,
        choices: list[ConflictChoice],
        ports: list[str] | None = None,
        confirms: list[bool] | None = None,
    ) -> None:
        self.choices = list(choices)
        self.ports = list(ports or [])
        self.confirms = list(confirms or [])
        self.messages: list[str] = []

    def choose_conflict_action(self, port: int, purpose: str) -> ConflictChoice:
        return self.choices.pop(0)

    def ask_port(self, purpose: str, suggestion: int) -> str:
        return self.ports.pop(0)

    def confirm_force(self, port: int, purpose: str) -> bool:
        return self.confirms.pop(0)

    def notify(self, message: str) -> None:
        self.messages.append(message)


@pytest.fixture(autouse=True)
def fake_ss(monkeypatch: pytest.MonkeyPatch) -> None:
    """Serve canned ``ss -tuln`` output to every allocator."""

    def fake_run(self: PortAllocator, args: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args, returncode=0, stdout=SS_OUTPUT, stderr="")

    monkeypatch.setattr(PortAllocator, "_run_command", fake_run)


def test_parse_ss_output_extracts_local_ports() -> None:
    """IPv4, IPv6 and interface-scoped addresses are all parsed."""
    assert parse_ss_output(SS_OUTPUT) == {53, 22, 8080, 8081, 5432}


@pytest.mark.parametrize("value", [0, 65536, -1, "abc", "80.5", True, None])
def test_validate_port_rejects_out_of_range(value: object) -> None:
    """Ports must be integers in 1-65535."""
    with pytest.raises(InvalidPortError):
        validate_port(value)


def test_validate_port_accepts_numeric_strings() -> None:
    """Numeric strings are accepted as typed by an operator."""
    assert validate_port(" 8443 ") == 8443


def test_free_port_resolves_without_prompting() -> None:
    """A free port is returned unchanged."""
    prompter = FakePrompter([])
    allocator = PortAllocator(prompter=prompter)

    resolution = allocator.resolve_conflict(9000, "web")

    assert resolution.port == 9000
    assert resolution.forced is False
    assert resolution.reassigned is False


def test_headless_reassigns_to_next_free_port() -> None:
    """Headless runs skip busy neighbours and never force."""
    allocator = PortAllocator(options=RunOptions(headless=True))

    resolution = allocator.resolve_conflict(8080, "web")

    assert resolution.port == 8082
    assert resolution.reassigned is True
    assert resolution.forced is False


def test_headless_gives_up_after_search_limit() -> None:
    """An exhausted search window aborts instead of forcing."""
    allocator = PortAllocator(options=RunOptions(headless=True), search_limit=1)

    with pytest.raises(PortConflictAborted):
        allocator.resolve_conflict(8080, "web")


def test_interactive_reassign_revalidates_new_port() -> None:
    """Invalid and busy replacements are rejected until a free one is typed."""
    prompter = FakePrompter(
        [ConflictChoice.REASSIGN, ConflictChoice.REASSIGN, ConflictChoice.REASSIGN],
        ports=["99999", "8081", "9090"],
    )
    allocator = PortAllocator(prompter=prompter)

    resolution = allocator.resolve_conflict(8080, "api")

    assert resolution.port == 9090
    assert resolution.reassigned is True
    assert any("outside the range" in message for message in prompter.messages)
    assert "Port 8081 is also in use." in prompter.messages


def test_interactive_force_requires_confirmation() -> None:
    """Force needs a second yes; a declined force returns to the menu."""
    prompter = FakePrompter(
        [ConflictChoice.FORCE, ConflictChoice.FORCE],
        confirms=[False, True],
    )
    allocator = PortAllocator(prompter=prompter)

    resolution = allocator.resolve_conflict(5432, "db")

    assert resolution.port == 5432
    assert resolution.forced is True


def test_interactive_abort_raises() -> None:
    """Abort stops resolution with PortConflictAborted."""
    allocator = PortAllocator(prompter=FakePrompter([ConflictChoice.ABORT]))

    with pytest.raises(PortConflictAborted):
        allocator.resolve_conflict(22, "ssh")


def test_bind_probe_used_when_ss_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without ``ss`` the allocator falls back to a bind probe."""

    def no_ss(self: PortAllocator, args: list[str]) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("ss")

    probed: list[int] = []

    def fake_bind(self: PortAllocator, port: int) -> bool:
        probed.append(port)
        return port != 7000

    monkeypatch.setattr(PortAllocator, "_run_command", no_ss)
    monkeypatch.setattr(PortAllocator, "_bind_probe", fake_bind)
    allocator = PortAllocator(options=RunOptions(headless=True))

    assert allocator.listening_ports() is None
    assert allocator.resolve_conflict(7000, "web").port == 7001
    assert probed == [7000, 7001]


def test_registry_reserve_and_release(tmp_path: Path) -> None:
    """Reservations persist to ports.yml and can be released."""
    registry = PortsRegistry(StateRegistry(tmp_path))

    registry.reserve("web", 8082)
    registry.reserve("db", 5433)

    assert registry.list_entries() == [
        {"name": "db", "port": 5433, "forced": False},
        {"name": "web", "port": 8082, "forced": False},
    ]
    assert registry.get_port("web") == 8082

    registry.release("web")

    assert registry.get_port("web") is None
    with pytest.raises(PortsRegistryError):
        registry.release("web")


def test_registry_rejects_double_booking_unless_forced(tmp_path: Path) -> None:
    """A port held by another purpose needs an explicit force."""
    registry = PortsRegistry(StateRegistry(tmp_path))
    registry.reserve("web", 8082)

    with pytest.raises(PortsRegistryError):
        registry.reserve("api", 8082)

    registry.reserve("api", 8082, forced=True)
    assert {entry["name"] for entry in registry.list_entries()} == {"web", "api"}


def test_registry_dry_run_writes_nothing(tmp_path: Path) -> None:
    """Dry-run reservations return an action without creating the file."""
    registry = PortsRegistry(StateRegistry(tmp_path / "state"), options=RunOptions(dry_run=True))

    actions = registry.reserve("web", 8082)

    assert actions[0].kind == "write"
    assert not (tmp_path / "state").exists()
