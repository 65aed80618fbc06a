"""Detection and interactive removal of orphaned instance volumes."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from .lifecycle import IdentityStore
from .logging import OperationScope
from .providers.interaction import OperatorInteraction


class StorageInventory(Protocol):
    """Executor verbs for listing and deleting storage resources."""

    def list_storage_resources(self, suffixes: Iterable[str]) -> list[str]: ...

    def delete_storage_resource(self, name: str) -> object: ...


@dataclass(slots=True)
class PruneReport:
    """Orphans found during a prune and what happened to each."""

    orphans: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Reconciler:
    """Compare recorded identities with the volumes that actually exist."""

    store: IdentityStore
    inventory: StorageInventory
    interaction: OperatorInteraction
    suffixes: tuple[str, ...] = ("n8n_data", "repo_temp")

    def expected_resources(self) -> set[str]:
        """Return the volume names every recorded instance is entitled to.

        Derived from record filenames, so a damaged record still protects its
        volumes.
        """
        return {
            f"{key.unit_id}_{suffix}" for key in self.store.list_keys() for suffix in self.suffixes
        }

    def actual_resources(self) -> set[str]:
        """Return the volumes following this tool's naming convention."""
        return set(self.inventory.list_storage_resources(self.suffixes))

    def find_orphans(self) -> list[str]:
        """Return volumes with no matching identity, sorted by name."""
        return sorted(self.actual_resources() - self.expected_resources())

    def prune(self, *, op: OperationScope | None = None) -> PruneReport:
        """Offer every orphan for deletion; nothing is removed without a yes."""
        report = PruneReport(orphans=self.find_orphans())
        for name in report.orphans:
            if self.interaction.confirm(f"Orphaned volume found: {name}. Delete this volume?"):
                self.inventory.delete_storage_resource(name)
                report.deleted.append(name)
                if op is not None:
                    op.add_step("volume.delete", detail=name)
            else:
                report.kept.append(name)
                if op is not None:
                    op.add_step("volume.delete", status="skipped", detail=name)
        return report


__all__ = ["PruneReport", "Reconciler", "StorageInventory"]
