"""Advisory file locks serialising mutating n8nctl commands.

Allocation reads the full record set, decides on a port and a Redis index and
then persists the new record. Two operators running ``instance up`` at once
would race on that read-then-decide step, so mutating commands hold the
global lock followed by the per-instance lock for the duration of the change.
Lock files live under the runtime directory and are left behind after
release with JSON metadata describing the last holder.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import N8nctlError

GLOBAL_LOCK_NAME = "n8nctl"
_POLL_INTERVAL = 0.05
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class LockTimeoutError(N8nctlError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and how long it took to obtain."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait across all locks in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-instance locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide lock."""
        with self._acquire(self.runtime_dir / f"{GLOBAL_LOCK_NAME}.lock", timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for the instance called *name*."""
        path = self.runtime_dir / f"{_safe_name(name)}.lock"
        with self._acquire(path, timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each instance lock in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


def _safe_name(name: str) -> str:
    safe = _UNSAFE_CHARS.sub("_", name.strip())
    return safe or "_"


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
