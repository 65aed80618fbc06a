"""Record types persisted by the state store."""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

from ..errors import ValidationError

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*$")


@dataclass(frozen=True, order=True, slots=True)
class InstanceKey:
    """Identify an instance by server and instance name."""

    server_name: str
    instance_name: str

    def __post_init__(self) -> None:
        """Reject names that cannot round-trip through filenames and projects."""
        for label, value in (("server", self.server_name), ("instance", self.instance_name)):
            if not value or not _NAME_PATTERN.match(value):
                raise ValidationError(
                    f"Invalid {label} name {value!r}: use letters, digits and hyphens, "
                    "starting with a letter or digit."
                )

    @property
    def unit_id(self) -> str:
        """Return the compose project name for the instance."""
        return f"{self.server_name}_{self.instance_name}"

    @property
    def display(self) -> str:
        """Return the operator-facing ``server/instance`` form."""
        return f"{self.server_name}/{self.instance_name}"

    @classmethod
    def from_unit_id(cls, unit_id: str) -> InstanceKey:
        """Split a ``server_instance`` project name back into a key."""
        server, sep, instance = unit_id.partition("_")
        if not sep:
            raise ValidationError(f"Project name {unit_id!r} does not contain a separator.")
        return cls(server, instance)


@dataclass(frozen=True, slots=True)
class InstanceIdentity:
    """Durable identity allocated to one instance."""

    key: InstanceKey
    database_name: str
    database_user: str
    database_password: str
    cache_namespace_index: int
    service_port: int
    encryption_key: str

    def to_fields(self) -> dict[str, str]:
        """Return the ordered ``KEY=value`` fields used on disk."""
        return {
            "SERVER_NAME": self.key.server_name,
            "INSTANCE_NAME": self.key.instance_name,
            "DB_NAME": self.database_name,
            "DB_USER": self.database_user,
            "DB_PASS": self.database_password,
            "REDIS_DB": str(self.cache_namespace_index),
            "N8N_ENCRYPTION_KEY": self.encryption_key,
            "N8N_PORT": str(self.service_port),
        }

    @classmethod
    def from_fields(
        cls,
        fields: Mapping[str, str],
        *,
        fallback_key: InstanceKey | None = None,
    ) -> InstanceIdentity:
        """Build an identity from parsed fields.

        Raises ``KeyError`` for missing fields and ``ValueError`` for
        non-integer numbers; callers translate those into their own errors.
        """
        server = fields.get("SERVER_NAME")
        instance = fields.get("INSTANCE_NAME")
        if server and instance:
            key = InstanceKey(server, instance)
        elif fallback_key is not None:
            key = fallback_key
        else:
            raise KeyError("SERVER_NAME")
        return cls(
            key=key,
            database_name=fields["DB_NAME"],
            database_user=fields["DB_USER"],
            database_password=fields["DB_PASS"],
            cache_namespace_index=int(fields["REDIS_DB"]),
            service_port=int(fields["N8N_PORT"]),
            encryption_key=fields["N8N_ENCRYPTION_KEY"],
        )


@dataclass(frozen=True, slots=True)
class SharedInfrastructureState:
    """Master credential for the shared Postgres/Redis tier."""

    postgres_password: str

    def to_fields(self) -> dict[str, str]:
        """Return the ``KEY=value`` fields used on disk."""
        return {"POSTGRES_PASSWORD": self.postgres_password}

    @classmethod
    def from_fields(cls, fields: Mapping[str, str]) -> SharedInfrastructureState:
        """Build the shared state from parsed fields."""
        return cls(postgres_password=fields["POSTGRES_PASSWORD"])


__all__ = ["InstanceIdentity", "InstanceKey", "SharedInfrastructureState"]
