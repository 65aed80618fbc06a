"""Health gate tests."""
from __future__ import annotations

import pytest

from n8nctl.errors import HealthTimeoutError
from n8nctl.health import HealthGate, HealthState

from fakes import FakeExecutor


def test_healthy_on_third_attempt() -> None:
    """The gate returns once the probe reports healthy."""
    executor = FakeExecutor()
    executor.health["editor"] = [None, "starting", "healthy"]
    sleeps: list[float] = []
    gate = HealthGate(executor=executor, sleep=sleeps.append)

    result = gate.wait("acme_prod", "editor")

    assert result.state is HealthState.HEALTHY
    assert result.attempts == 3
    assert sleeps == [5.0, 5.0]
    assert gate.state is HealthState.HEALTHY


def test_timeout_issues_exactly_max_attempts_probes() -> None:
    """A never-healthy service gets 30 probes, 29 waits and its logs attached."""
    executor = FakeExecutor()
    executor.default_health = "starting"
    executor.logs["webhook"] = "boom: cannot connect"
    sleeps: list[float] = []
    gate = HealthGate(executor=executor, sleep=sleeps.append)

    with pytest.raises(HealthTimeoutError) as excinfo:
        gate.wait("acme_prod", "webhook")

    probes = [call for call in executor.calls if call[0] == "probe"]
    assert len(probes) == 30
    assert sleeps == [5.0] * 29
    assert excinfo.value.logs == "boom: cannot connect"
    assert excinfo.value.service == "webhook"
    assert "30 attempts" in str(excinfo.value)
    assert gate.state is HealthState.FAILED


def test_on_attempt_reports_progress() -> None:
    """Each unhealthy probe is reported through the callback."""
    executor = FakeExecutor()
    executor.health["worker"] = ["starting", "healthy"]
    seen: list[tuple[str, int, int, str | None]] = []
    gate = HealthGate(
        executor=executor,
        max_attempts=3,
        interval=0.1,
        sleep=lambda _: None,
        on_attempt=lambda *args: seen.append(args),
    )

    gate.wait("acme_prod", "worker")

    assert seen == [("worker", 1, 3, "starting")]


def test_wait_all_stops_at_first_failure() -> None:
    """Later services are not probed once one fails."""
    executor = FakeExecutor()
    executor.health["editor"] = ["healthy"]
    executor.health["webhook"] = [None]
    executor.default_health = None
    gate = HealthGate(executor=executor, max_attempts=1, sleep=lambda _: None)

    with pytest.raises(HealthTimeoutError):
        gate.wait_all("acme_prod", ["editor", "webhook", "worker"])

    probed = [call[2] for call in executor.calls if call[0] == "probe"]
    assert probed == ["editor", "webhook"]
