"""Operator interaction (secret entry and confirmations)."""
from __future__ import annotations

from typing import Protocol

import typer


class OperatorInteraction(Protocol):
    """Prompts the lifecycle controller may put to the operator."""

    def prompt_secret(self, message: str) -> str: ...

    def confirm(self, message: str) -> bool: ...


class ConsoleInteraction:
    """Interactive prompts on the controlling terminal."""

    def __init__(self, *, assume_yes: bool = False) -> None:
        """Optionally auto-confirm every question (non-interactive mode)."""
        self.assume_yes = assume_yes

    def prompt_secret(self, message: str) -> str:
        """Read a secret without echoing it."""
        return str(typer.prompt(message, hide_input=True, default="", show_default=False))

    def confirm(self, message: str) -> bool:
        """Ask a yes/no question defaulting to no."""
        if self.assume_yes:
            return True
        return bool(typer.confirm(message, default=False))


__all__ = ["ConsoleInteraction", "OperatorInteraction"]
