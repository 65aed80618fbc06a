"""Structured operation logging for n8nctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which writes
a single JSON object to ``operations.jsonl`` once the command finishes. The
record captures the command, its arguments, the steps executed and the final
result. Values are converted to JSON-safe primitives and anything that looks
like a secret is redacted before it reaches disk, because the operations log
may be shared or aggregated.

Logging must never break a command: if the log directory cannot be created or
a write fails, the logger disables itself and later operations become no-ops.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

REDACTED = "***"
_SECRET_MARKERS = ("password", "pass", "secret", "token", "key")


class OperationScope:
    """Mutable record for a single logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.operation_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self.started_at = datetime.now(UTC)
        self._started = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            context=context,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            context=context,
            errors=list(errors or [message]),
            rc=rc,
        )

    @property
    def completed(self) -> bool:
        """Return ``True`` once a result has been recorded."""
        return self.result is not None

    def to_record(self) -> dict[str, object]:
        """Return the JSON-safe log record for this scope."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        record: dict[str, object] = {
            "op_id": self.operation_id,
            "ts": self.started_at.isoformat(),
            "user": _current_user(),
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": _sanitise(self.steps),
            "result": _sanitise(self.result or {"status": "unknown"}),
            "duration_ms": duration_ms,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
        **extra: object,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        result.update(extra)
        if context:
            result["context"] = dict(context)
        self.result = result


class StructuredLogger:
    """Append-only JSONL writer for operation records."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger if that fails."""
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling operation log; cannot create %s: %s", logs_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if not scope.completed:
                message = str(exc) or exc.__class__.__name__
                code = getattr(exc, "exit_code", None)
                if isinstance(code, int) and code == 0:
                    scope.success("Completed.")
                else:
                    scope.error(message, rc=code if isinstance(code, int) else 1)
            raise
        finally:
            if not scope.completed:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            LOGGER.debug("Disabling operation log after write failure: %s", exc)
            self._enabled = False


def is_secret_key(name: str) -> bool:
    """Return ``True`` when *name* looks like it holds a secret value."""
    lowered = name.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def _sanitise(value: object, *, key: str | None = None) -> object:
    if key is not None and is_secret_key(key) and value not in (None, ""):
        return REDACTED
    if isinstance(value, Mapping):
        return {str(k): _sanitise(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def _current_user() -> str:
    try:
        return os.getlogin()
    except OSError:
        return os.environ.get("USER", "unknown")


__all__ = ["OperationScope", "StructuredLogger", "is_secret_key", "REDACTED"]
