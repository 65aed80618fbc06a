"""Bounded health verification for freshly started services."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .errors import HealthTimeoutError

LOGGER = logging.getLogger(__name__)

HEALTHY_STATUS = "healthy"


class HealthProbe(Protocol):
    """Subset of the executor used by the health gate."""

    def probe_health(self, unit_id: str, service: str) -> str | None: ...

    def fetch_logs(self, unit_id: str, service: str) -> str: ...


class HealthState(str, Enum):
    """Health gate states."""

    PENDING = "pending"
    HEALTHY = "healthy"
    FAILED = "failed"


@dataclass(slots=True)
class HealthResult:
    """Outcome of waiting on a single service."""

    service: str
    state: HealthState
    attempts: int
    elapsed_ms: int
    last_status: str | None = None


@dataclass(slots=True)
class HealthGate:
    """Poll a service until it reports healthy or the attempt budget runs out."""

    executor: HealthProbe
    max_attempts: int = 30
    interval: float = 5.0
    sleep: Callable[[float], None] = field(default=time.sleep)
    clock: Callable[[], float] = field(default=time.monotonic)
    on_attempt: Callable[[str, int, int, str | None], None] | None = None
    state: HealthState = HealthState.PENDING

    def wait(self, unit_id: str, service: str) -> HealthResult:
        """Block until *service* is healthy.

        Exactly ``max_attempts`` probes are issued, separated by ``interval``.
        When the budget is exhausted the service logs are collected and
        :class:`HealthTimeoutError` is raised.
        """
        self.state = HealthState.PENDING
        started = self.clock()
        status: str | None = None
        for attempt in range(1, self.max_attempts + 1):
            status = self.executor.probe_health(unit_id, service)
            if status == HEALTHY_STATUS:
                self.state = HealthState.HEALTHY
                return HealthResult(
                    service=service,
                    state=self.state,
                    attempts=attempt,
                    elapsed_ms=int((self.clock() - started) * 1000),
                    last_status=status,
                )
            LOGGER.debug(
                "Service %s in %s reported %r (attempt %d/%d)",
                service,
                unit_id,
                status,
                attempt,
                self.max_attempts,
            )
            if self.on_attempt is not None:
                self.on_attempt(service, attempt, self.max_attempts, status)
            if attempt < self.max_attempts:
                self.sleep(self.interval)

        self.state = HealthState.FAILED
        logs = self.executor.fetch_logs(unit_id, service)
        raise HealthTimeoutError(unit_id, service, self.max_attempts, logs=logs)

    def wait_all(self, unit_id: str, services: Iterable[str]) -> list[HealthResult]:
        """Wait for each service in order; the first failure aborts the sequence."""
        return [self.wait(unit_id, service) for service in services]


__all__ = ["HEALTHY_STATUS", "HealthGate", "HealthProbe", "HealthResult", "HealthState"]
