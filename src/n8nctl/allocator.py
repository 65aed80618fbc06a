"""Collision-free allocation of per-instance resources.

Ports and Redis database indexes are scarce, host-wide resources. Both are
derived from the *current* record set handed in by the caller, never from a
cached view, so manual edits to the state directory are respected. The
allocator itself holds no lock; see :mod:`n8nctl.locking`.
"""
from __future__ import annotations

import logging
import re
import secrets
import socket
import string
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .errors import AllocationError
from .state import InstanceIdentity, InstanceKey

LOGGER = logging.getLogger(__name__)

SECRET_ALPHABET = string.ascii_letters + string.digits
SECRET_LENGTH = 32
MAX_PORT = 65535
MAX_IDENTIFIER_LENGTH = 63
_UNSAFE_IDENTIFIER = re.compile(r"[^a-z0-9_]")


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Return ``True`` when nothing listens on *port* and it can be bound."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.settimeout(0.5)
        if probe.connect_ex((host, port)) == 0:
            return False
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def generate_secret(length: int = SECRET_LENGTH) -> str:
    """Return a random alphanumeric secret drawn from :mod:`secrets`."""
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def database_identity(key: InstanceKey) -> str:
    """Return the database and role name for *key*."""
    lowered = key.unit_id.lower()
    return _UNSAFE_IDENTIFIER.sub("_", lowered)[:MAX_IDENTIFIER_LENGTH]


@dataclass(slots=True)
class ResourceAllocator:
    """Derive fresh, globally unique identities."""

    base_port: int = 5678
    max_attempts: int = 1000
    cache_floor: int = 2
    port_probe: Callable[[int], bool] = field(default=is_port_free)
    secret_factory: Callable[[], str] = field(default=generate_secret)

    def allocate(
        self,
        key: InstanceKey,
        records: Sequence[InstanceIdentity],
        *,
        preferred_port: int | None = None,
    ) -> InstanceIdentity:
        """Return a new identity for *key* that collides with none of *records*."""
        name = database_identity(key)
        for record in records:
            if name in (record.database_name, record.database_user):
                raise AllocationError(
                    f"Database identity {name!r} for '{key.display}' is already used by "
                    f"'{record.key.display}'. Choose a server or instance name that "
                    "differs by more than case or '-' versus '_'."
                )
        identity = InstanceIdentity(
            key=key,
            database_name=name,
            database_user=name,
            database_password=self.secret_factory(),
            cache_namespace_index=self.next_cache_index(records),
            service_port=self.next_port(records, preferred_port),
            encryption_key=self.secret_factory(),
        )
        LOGGER.debug(
            "Allocated port %s and redis db %s for %s",
            identity.service_port,
            identity.cache_namespace_index,
            key.display,
        )
        return identity

    def next_port(
        self,
        records: Sequence[InstanceIdentity],
        preferred_port: int | None = None,
    ) -> int:
        """Probe upward from the preferred port for one that is unrecorded and free."""
        start = self.base_port if preferred_port is None else preferred_port
        if not 1 <= start <= MAX_PORT:
            raise AllocationError(f"Port {start} is outside the valid range 1-{MAX_PORT}.")
        recorded = {record.service_port for record in records}
        candidate = start
        for _ in range(self.max_attempts):
            if candidate > MAX_PORT:
                break
            if candidate not in recorded and self.port_probe(candidate):
                return candidate
            candidate += 1
        raise AllocationError(
            f"No free port found starting at {start} after {self.max_attempts} attempts."
        )

    def next_cache_index(self, records: Sequence[InstanceIdentity]) -> int:
        """Return one more than the highest recorded Redis index (or the floor)."""
        highest = max(
            (record.cache_namespace_index for record in records),
            default=self.cache_floor,
        )
        return max(highest, self.cache_floor) + 1


__all__ = [
    "ResourceAllocator",
    "database_identity",
    "generate_secret",
    "is_port_free",
]
