"""State store package."""
from __future__ import annotations

from .records import InstanceIdentity, InstanceKey, SharedInfrastructureState
from .store import StateStore

__all__ = ["InstanceIdentity", "InstanceKey", "SharedInfrastructureState", "StateStore"]
