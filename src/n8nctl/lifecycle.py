"""Instance lifecycle orchestration.

The controller is the only component with multi-step orchestration. Steps run
strictly in sequence: administrative database commands, then executor
commands, then health probes. Nothing is rolled back on failure; an
interrupted invocation leaves whatever was already persisted and the next
``activate`` reuses it.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Protocol

from .allocator import ResourceAllocator
from .errors import (
    HealthTimeoutError,
    NotProvisionedError,
    PreconditionError,
    StateStoreError,
)
from .health import HealthGate, HealthResult
from .locking import LockManager
from .logging import OperationScope
from .providers.compose import RunningUnit, parse_published_port
from .providers.interaction import OperatorInteraction
from .state import InstanceIdentity, InstanceKey, SharedInfrastructureState

LOGGER = logging.getLogger(__name__)

DEFAULT_SERVICES = ("editor", "webhook", "worker")


class IdentityStore(Protocol):
    """Persistence contract consumed by the controller."""

    def get(self, key: InstanceKey) -> InstanceIdentity | None: ...

    def put(self, identity: InstanceIdentity) -> None: ...

    def delete(self, key: InstanceKey) -> None: ...

    def list(self) -> list[InstanceIdentity]: ...

    def list_keys(self) -> list[InstanceKey]: ...

    def get_shared(self) -> SharedInfrastructureState | None: ...

    def put_shared(self, state: SharedInfrastructureState) -> None: ...

    def delete_shared(self) -> None: ...


class DatabaseAdmin(Protocol):
    """Administrative command surface of the shared database tier."""

    def create_database(self, name: str) -> None: ...

    def create_role(self, name: str, password: str) -> None: ...

    def grant_all(self, database: str, role: str) -> None: ...

    def drop_database(self, name: str) -> None: ...

    def drop_role(self, name: str) -> None: ...


class Executor(Protocol):
    """Container executor verbs consumed by the controller."""

    def start(self, unit_id: str, config: Mapping[str, str]) -> object: ...

    def stop(
        self,
        unit_id: str,
        *,
        remove_volumes: bool = False,
        config: Mapping[str, str] | None = None,
    ) -> object: ...

    def pull(
        self,
        unit_id: str,
        services: Sequence[str],
        *,
        config: Mapping[str, str] | None = None,
    ) -> object: ...

    def probe_health(self, unit_id: str, service: str) -> str | None: ...

    def fetch_logs(self, unit_id: str, service: str) -> str: ...

    def follow_logs(
        self,
        unit_id: str,
        *,
        follow: bool = True,
        config: Mapping[str, str] | None = None,
    ) -> int: ...

    def list_running_units(self, name_prefix: str) -> list[RunningUnit]: ...


@dataclass(frozen=True, slots=True)
class UnitConfig:
    """Configuration handed to the executor when starting an instance."""

    server_name: str
    instance_name: str
    database_name: str
    database_user: str
    database_password: str
    cache_namespace_index: int
    encryption_key: str
    service_port: int

    @classmethod
    def from_identity(cls, identity: InstanceIdentity) -> UnitConfig:
        """Derive the executor configuration from *identity*."""
        return cls(
            server_name=identity.key.server_name,
            instance_name=identity.key.instance_name,
            database_name=identity.database_name,
            database_user=identity.database_user,
            database_password=identity.database_password,
            cache_namespace_index=identity.cache_namespace_index,
            encryption_key=identity.encryption_key,
            service_port=identity.service_port,
        )

    def as_mapping(self) -> dict[str, str]:
        """Return the variables the compose file interpolates."""
        return {
            "SERVER_NAME": self.server_name,
            "INSTANCE_NAME": self.instance_name,
            "DB_NAME": self.database_name,
            "DB_USER": self.database_user,
            "DB_PASS": self.database_password,
            "REDIS_DB": str(self.cache_namespace_index),
            "N8N_ENCRYPTION_KEY": self.encryption_key,
            "N8N_PORT": str(self.service_port),
        }


@dataclass(slots=True)
class ProvisionResult:
    """Identity returned by provision-or-reuse."""

    identity: InstanceIdentity
    created: bool


@dataclass(slots=True)
class ActivationReport:
    """Outcome of a successful activation or update."""

    identity: InstanceIdentity
    created: bool
    health: list[HealthResult] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RunningInstance:
    """A live deployment unit as reported by the executor."""

    instance_id: str
    state: str
    port: int | None


@dataclass(slots=True)
class LifecycleController:
    """Provision, activate, update and tear down instances."""

    store: IdentityStore
    allocator: ResourceAllocator
    executor: Executor
    shared_executor: Executor
    admin_factory: Callable[[SharedInfrastructureState], DatabaseAdmin]
    health: HealthGate
    interaction: OperatorInteraction
    locks: LockManager | None = None
    services: tuple[str, ...] = DEFAULT_SERVICES
    shared_project: str = "n8n_shared"
    container_prefix: str = "editor_"
    container_port: int = 5678

    # ------------------------------------------------------------------
    # Shared infrastructure
    # ------------------------------------------------------------------
    def shared_up(self, *, op: OperationScope | None = None) -> bool:
        """Start the shared tier, creating its record on first use.

        Returns ``True`` when the master credential was created by this call.
        """
        state = self.store.get_shared()
        created = False
        if state is None:
            password = self.interaction.prompt_secret(
                "Enter a strong password for the main Postgres user"
            ).strip()
            if not password:
                raise PreconditionError("Postgres password cannot be empty.")
            state = SharedInfrastructureState(postgres_password=password)
            self.store.put_shared(state)
            created = True
            _step(op, "shared.state.create")
        else:
            _step(op, "shared.state.create", status="skipped", detail="exists")
        self.shared_executor.start(
            self.shared_project, {"POSTGRES_PASSWORD": state.postgres_password}
        )
        _step(op, "executor.start", detail=self.shared_project)
        return created

    def shared_down(self, *, force: bool = False, op: OperationScope | None = None) -> bool:
        """Stop the shared tier and wipe its storage after confirmation.

        Returns ``False`` when the operator declined.
        """
        known = self.store.list_keys()
        if known and not force:
            names = ", ".join(key.display for key in known)
            raise PreconditionError(
                f"{len(known)} instance(s) still depend on the shared tier ({names}). "
                "Bring them down first or pass --force."
            )
        confirmed = self.interaction.confirm(
            "This will stop Postgres and Redis, shutting down ALL n8n instances. Are you sure?"
        )
        if not confirmed:
            _step(op, "operator.confirm", status="skipped", detail="declined")
            return False
        state = self.store.get_shared()
        config = {"POSTGRES_PASSWORD": state.postgres_password} if state else None
        self.shared_executor.stop(self.shared_project, remove_volumes=True, config=config)
        _step(op, "executor.stop", detail=f"{self.shared_project} volumes=removed")
        self.store.delete_shared()
        _step(op, "shared.state.delete")
        return True

    def shared_logs(self, *, follow: bool = True) -> int:
        """Stream the shared tier logs."""
        return self.shared_executor.follow_logs(self.shared_project, follow=follow)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------
    def provision(
        self,
        key: InstanceKey,
        *,
        preferred_port: int | None = None,
        op: OperationScope | None = None,
    ) -> ProvisionResult:
        """Return the stored identity for *key*, allocating one if absent."""
        shared = self._require_shared()
        with self._locked(key) as wait_ms:
            if op is not None and wait_ms is not None:
                op.set_lock_wait_ms(wait_ms)
            existing = self.store.get(key)
            if existing is not None:
                _step(op, "identity.allocate", status="skipped", detail="reused")
                return ProvisionResult(identity=existing, created=False)

            records = self.store.list()
            unreadable = set(self.store.list_keys()) - {record.key for record in records}
            if unreadable:
                names = ", ".join(sorted(k.display for k in unreadable))
                raise StateStoreError(
                    f"Cannot allocate while state records are unreadable ({names}). "
                    "Repair or remove them first."
                )
            identity = self.allocator.allocate(key, records, preferred_port=preferred_port)
            _step(
                op,
                "identity.allocate",
                detail=f"port={identity.service_port} redis_db={identity.cache_namespace_index}",
            )
            # A failure below leaves earlier objects behind; there is no rollback.
            admin = self.admin_factory(shared)
            admin.create_database(identity.database_name)
            _step(op, "database.create", detail=identity.database_name)
            admin.create_role(identity.database_user, identity.database_password)
            _step(op, "database.role.create", detail=identity.database_user)
            admin.grant_all(identity.database_name, identity.database_user)
            _step(op, "database.grant")
            self.store.put(identity)
            _step(op, "identity.persist")
            LOGGER.debug("Provisioned new identity for %s", key.display)
            return ProvisionResult(identity=identity, created=True)

    def activate(
        self,
        key: InstanceKey,
        *,
        preferred_port: int | None = None,
        op: OperationScope | None = None,
    ) -> ActivationReport:
        """Provision-or-reuse, start the unit and wait for every service."""
        self._require_shared()
        provisioned = self.provision(key, preferred_port=preferred_port, op=op)
        identity = provisioned.identity
        self.executor.start(key.unit_id, UnitConfig.from_identity(identity).as_mapping())
        _step(op, "executor.start", detail=key.unit_id)
        results = self._verify(key, op)
        return ActivationReport(identity=identity, created=provisioned.created, health=results)

    def update(self, key: InstanceKey, *, op: OperationScope | None = None) -> ActivationReport:
        """Pull newer images, recreate the unit and re-verify health."""
        identity = self.store.get(key)
        if identity is None:
            raise NotProvisionedError(
                f"No state found for instance '{key.display}'. Cannot update."
            )
        config = UnitConfig.from_identity(identity).as_mapping()
        self.executor.pull(key.unit_id, self.services, config=config)
        _step(op, "executor.pull", detail=" ".join(self.services))
        self.executor.start(key.unit_id, config)
        _step(op, "executor.start", detail=key.unit_id)
        results = self._verify(key, op)
        return ActivationReport(identity=identity, created=False, health=results)

    def deactivate(self, key: InstanceKey, *, op: OperationScope | None = None) -> bool:
        """Tear the instance down completely.

        Returns ``False`` when no record exists (already down).
        """
        with self._locked(key) as wait_ms:
            if op is not None and wait_ms is not None:
                op.set_lock_wait_ms(wait_ms)
            identity = self.store.get(key)
            if identity is None:
                _step(op, "identity.lookup", status="skipped", detail="not-provisioned")
                return False
            shared = self._require_shared()
            self.executor.stop(
                key.unit_id,
                remove_volumes=True,
                config=UnitConfig.from_identity(identity).as_mapping(),
            )
            _step(op, "executor.stop", detail=f"{key.unit_id} volumes=removed")
            admin = self.admin_factory(shared)
            admin.drop_database(identity.database_name)
            _step(op, "database.drop", detail=identity.database_name)
            admin.drop_role(identity.database_user)
            _step(op, "database.role.drop", detail=identity.database_user)
            self.store.delete(key)
            _step(op, "identity.delete")
            return True

    def instance_logs(self, key: InstanceKey, *, follow: bool = True) -> int:
        """Stream the logs of every service in the instance."""
        config = {"SERVER_NAME": key.server_name, "INSTANCE_NAME": key.instance_name}
        identity = self.store.get(key)
        if identity is not None:
            config = UnitConfig.from_identity(identity).as_mapping()
        return self.executor.follow_logs(key.unit_id, follow=follow, config=config)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def enumerate_running(self) -> list[RunningInstance]:
        """Return live units reported by the executor, regardless of records."""
        running: list[RunningInstance] = []
        for unit in self.executor.list_running_units(self.container_prefix):
            project = unit.name[len(self.container_prefix) :]
            instance_id = project.replace("_", "/", 1)
            running.append(
                RunningInstance(
                    instance_id=instance_id,
                    state=unit.state,
                    port=parse_published_port(unit.ports, self.container_port),
                )
            )
        running.sort(key=lambda item: item.instance_id)
        return running

    def enumerate_known(self) -> list[InstanceIdentity]:
        """Return every persisted identity, regardless of runtime status."""
        return self.store.list()

    # Internal helpers -------------------------------------------------
    def _require_shared(self) -> SharedInfrastructureState:
        state = self.store.get_shared()
        if state is None:
            raise PreconditionError(
                "Shared infrastructure not running. Run 'n8nctl shared up' first."
            )
        return state

    def _verify(self, key: InstanceKey, op: OperationScope | None) -> list[HealthResult]:
        results: list[HealthResult] = []
        for service in self.services:
            try:
                result = self.health.wait(key.unit_id, service)
            except HealthTimeoutError as exc:
                _step(op, f"health.{service}", status="error", detail=f"attempts={exc.attempts}")
                raise
            _step(op, f"health.{service}", detail=f"attempts={result.attempts}")
            results.append(result)
        return results

    @contextmanager
    def _locked(self, key: InstanceKey) -> Iterator[int | None]:
        if self.locks is None:
            yield None
            return
        with self.locks.mutate_instances([key.unit_id]) as bundle:
            yield bundle.wait_ms


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: str | None = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "ActivationReport",
    "DatabaseAdmin",
    "Executor",
    "IdentityStore",
    "LifecycleController",
    "ProvisionResult",
    "RunningInstance",
    "UnitConfig",
]
