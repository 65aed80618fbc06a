"""Error taxonomy shared by the lifecycle subsystem.

Every error carries the CLI exit code it maps to so commands can terminate
with a consistent status without re-classifying exceptions.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class N8nctlError(RuntimeError):
    """Base class for all expected n8nctl failures."""

    exit_code: int = ExitCode.ENVIRONMENT


class ValidationError(N8nctlError):
    """Raised when user-supplied identifiers are malformed."""

    exit_code = ExitCode.VALIDATION


class PreconditionError(N8nctlError):
    """Raised before any side effect when a required precondition is missing."""

    exit_code = ExitCode.ENVIRONMENT


class AllocationError(N8nctlError):
    """Raised when no free resource could be allocated."""

    exit_code = ExitCode.ENVIRONMENT


class AdministrativeCommandError(N8nctlError):
    """Raised when a database administrative command fails.

    Resources created by earlier commands in the same invocation are left in
    place; nothing is rolled back.
    """

    exit_code = ExitCode.PROVIDER


class ExecutorError(N8nctlError):
    """Raised when the container executor reports a failure."""

    exit_code = ExitCode.PROVIDER


class HealthTimeoutError(N8nctlError):
    """Raised when a service never reports healthy within the retry budget."""

    exit_code = ExitCode.PROVIDER

    def __init__(self, unit_id: str, service: str, attempts: int, logs: str = "") -> None:
        """Store the failing service details alongside its log output."""
        super().__init__(
            f"Service '{service}' in project '{unit_id}' did not become healthy "
            f"after {attempts} attempts."
        )
        self.unit_id = unit_id
        self.service = service
        self.attempts = attempts
        self.logs = logs


class NotProvisionedError(N8nctlError):
    """Raised when an operation requires an instance that has no record."""

    exit_code = ExitCode.VALIDATION


class StateStoreError(N8nctlError):
    """Raised when a persisted record cannot be read or written."""

    exit_code = ExitCode.ENVIRONMENT


__all__ = [
    "AdministrativeCommandError",
    "AllocationError",
    "ExecutorError",
    "HealthTimeoutError",
    "N8nctlError",
    "NotProvisionedError",
    "PreconditionError",
    "StateStoreError",
    "ValidationError",
]
