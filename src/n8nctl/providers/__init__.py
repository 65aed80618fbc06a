"""Provider interfaces for n8nctl."""
from __future__ import annotations

from .compose import ComposeExecutor, RunningUnit, parse_published_port
from .interaction import ConsoleInteraction, OperatorInteraction
from .postgres import PostgresAdmin

__all__ = [
    "ComposeExecutor",
    "ConsoleInteraction",
    "OperatorInteraction",
    "PostgresAdmin",
    "RunningUnit",
    "parse_published_port",
]
