"""Interactive prompts used by the CLI when not running headless."""
from __future__ import annotations

import typer
from rich.console import Console

from .ports import ConflictChoice
from .versions import VersionCatalog, VersionResolver

_CHOICES = {
    "r": ConflictChoice.REASSIGN,
    "f": ConflictChoice.FORCE,
    "a": ConflictChoice.ABORT,
}


class ConsolePrompter:
    """Terminal implementation of :class:`cicdctl.ports.ConflictPrompter`."""

    def __init__(self, console: Console) -> None:
        self.console = console

    def choose_conflict_action(self, port: int, purpose: str) -> ConflictChoice:
        """Ask how to handle a busy *port*."""
        self.notify(f"Port {port} requested for {purpose} is already in use.")
        while True:
            answer = typer.prompt("[r]eassign, [f]orce or [a]bort?", default="r")
            choice = _CHOICES.get(answer.strip().lower()[:1])
            if choice is not None:
                return choice
            self.console.print("Please answer r, f or a.")

    def ask_port(self, purpose: str, suggestion: int) -> str:
        """Return the operator's replacement port as typed."""
        return typer.prompt(f"New port for {purpose}", default=str(suggestion))

    def confirm_force(self, port: int, purpose: str) -> bool:
        """Require an explicit yes before reusing a busy port."""
        return typer.confirm(
            f"Force {purpose} onto port {port}? The existing listener will conflict.",
            default=False,
        )

    def notify(self, message: str) -> None:
        """Show *message* to the operator."""
        self.console.print(f"[yellow]{message}[/yellow]")

    def choose_version(self, catalog: VersionCatalog) -> str | None:
        """Prompt until a version from *catalog* is entered; empty input cancels."""
        if catalog.is_fallback:
            self.notify(
                f"Could not reach any live source for {catalog.software_id}; "
                "showing the built-in list."
            )
        available = ", ".join(catalog.versions)
        self.console.print(f"Available {catalog.software_id} versions: {available}")
        while True:
            answer = typer.prompt(
                f"{catalog.software_id} version (latest {catalog.latest}, empty to cancel)",
                default="",
                show_default=False,
            ).strip()
            if not answer:
                return None
            if VersionResolver.validate(answer, catalog):
                return answer
            self.notify(f"'{answer}' is not one of: {', '.join(catalog.versions)}.")


__all__ = ["ConsolePrompter"]
