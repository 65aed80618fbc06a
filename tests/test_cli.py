"""Tests for the n8nctl command line."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner, Result

from fakes import Harness
from n8nctl import __version__
from n8nctl.cli import RuntimeContext, app, build_runtime
from n8nctl.config import load_config
from n8nctl.locking import LockManager
from n8nctl.logging import StructuredLogger
from n8nctl.providers.compose import ComposeExecutor, RunningUnit
from n8nctl.state import InstanceKey

runner = CliRunner()


@pytest.fixture
def cli(tmp_path: Path) -> tuple[Harness, RuntimeContext]:
    """Return a harness and a runtime context wired to its doubles."""
    harness = Harness(tmp_path / "state")
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
        },
    )
    runtime = RuntimeContext(
        config=config,
        store=harness.store,
        locks=LockManager(tmp_path / "run", default_timeout=1.0),
        logger=StructuredLogger(tmp_path / "logs"),
        controller=harness.controller,
        reconciler=harness.reconciler,
    )
    return harness, runtime


def _invoke(runtime: RuntimeContext, *args: str) -> Result:
    return runner.invoke(app, list(args), obj=runtime)


def _flat(result: Result) -> str:
    return " ".join(result.output.split())


def _operations(runtime: RuntimeContext) -> list[dict[str, object]]:
    lines = runtime.logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_version_flag() -> None:
    """--version prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_invalid_config_file_exits_with_validation_code(tmp_path: Path) -> None:
    """A broken config file is reported before any command runs."""
    cfg = tmp_path / "n8nctl.yml"
    cfg.write_text("unknown_key: 1\n")

    result = runner.invoke(app, ["--config-file", str(cfg), "instance", "list"])

    assert result.exit_code == 2
    assert "unknown_key" in _flat(result)


def test_instance_up_requires_shared_tier(cli: tuple[Harness, RuntimeContext]) -> None:
    """Without the shared record the command fails with an environment error."""
    harness, runtime = cli

    result = _invoke(runtime, "instance", "up", "-s", "acme", "-i", "prod")

    assert result.exit_code == 3
    assert "n8nctl shared up" in _flat(result)
    assert harness.store.list() == []
    [record] = _operations(runtime)
    assert record["command"] == "instance up"
    assert record["result"]["status"] == "error"  # type: ignore[index]


def test_shared_then_instance_up_masks_password(cli: tuple[Harness, RuntimeContext]) -> None:
    """The happy path provisions, starts and reports the port without the password."""
    harness, runtime = cli
    harness.interaction.secrets = ["master-pass"]

    shared = _invoke(runtime, "shared", "up")
    assert shared.exit_code == 0, shared.output

    result = _invoke(runtime, "instance", "up", "-s", "acme", "-i", "prod")

    assert result.exit_code == 0, result.output
    identity = harness.store.get(InstanceKey("acme", "prod"))
    assert identity is not None
    output = _flat(result)
    assert "running on port 5678" in output
    assert "DB User: acme_prod" in output
    assert identity.database_password not in result.output
    assert "--show-secrets" in output
    log_text = runtime.logger.path.read_text(encoding="utf-8")
    assert identity.database_password not in log_text
    assert "master-pass" not in log_text


def test_show_secrets_reveals_password(cli: tuple[Harness, RuntimeContext]) -> None:
    """--show-secrets prints the database password."""
    harness, runtime = cli
    harness.bring_shared_up()

    result = _invoke(
        runtime, "instance", "up", "-s", "acme", "-i", "prod", "--show-secrets"
    )

    assert result.exit_code == 0, result.output
    identity = harness.store.get(InstanceKey("acme", "prod"))
    assert identity is not None
    assert identity.database_password in result.output


def test_instance_up_with_preferred_port(cli: tuple[Harness, RuntimeContext]) -> None:
    """-p sets the starting point of the port search."""
    harness, runtime = cli
    harness.bring_shared_up()

    result = _invoke(runtime, "instance", "up", "-s", "acme", "-i", "prod", "-p", "6000")

    assert result.exit_code == 0, result.output
    identity = harness.store.get(InstanceKey("acme", "prod"))
    assert identity is not None and identity.service_port == 6000


def test_invalid_instance_name(cli: tuple[Harness, RuntimeContext]) -> None:
    """Names with underscores are rejected with a validation error."""
    _, runtime = cli

    result = _invoke(runtime, "instance", "up", "-s", "acme", "-i", "bad_name")

    assert result.exit_code == 2
    assert "Invalid instance name" in _flat(result)


def test_health_timeout_prints_logs(cli: tuple[Harness, RuntimeContext]) -> None:
    """A health failure exits non-zero and shows the failing service's logs."""
    harness, runtime = cli
    harness.bring_shared_up()
    harness.executor.health["editor"] = ["starting"] * 30
    harness.executor.logs["editor"] = "Error: connect ECONNREFUSED"

    result = _invoke(runtime, "instance", "up", "-s", "acme", "-i", "prod")

    assert result.exit_code == 4
    output = _flat(result)
    assert "did not become healthy after 30 attempts" in output
    assert "connect ECONNREFUSED" in output
    assert harness.store.get(InstanceKey("acme", "prod")) is not None


def test_missing_dependency_fails_preflight(cli: tuple[Harness, RuntimeContext]) -> None:
    """Commands touching the host check their tools first."""
    harness, runtime = cli
    runtime.required_binaries = ("n8nctl-definitely-missing-tool",)
    harness.bring_shared_up()

    result = _invoke(runtime, "instance", "up", "-s", "acme", "-i", "prod")

    assert result.exit_code == 3
    assert "n8nctl-definitely-missing-tool" in _flat(result)
    assert harness.executor.calls == []


def test_list_json_omits_secrets(cli: tuple[Harness, RuntimeContext]) -> None:
    """The JSON listing carries ports and names but never secrets."""
    harness, runtime = cli
    harness.bring_shared_up()
    identity = harness.controller.provision(InstanceKey("acme", "prod")).identity

    result = _invoke(runtime, "instance", "list", "--json")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload == {
        "instances": [
            {
                "instance": "acme/prod",
                "port": 5678,
                "db_name": "acme_prod",
                "db_user": "acme_prod",
                "redis_db": 3,
            }
        ]
    }
    assert identity.database_password not in result.output
    assert identity.encryption_key not in result.output


def test_list_table_and_empty(cli: tuple[Harness, RuntimeContext]) -> None:
    """The table view lists known instances or warns when there are none."""
    harness, runtime = cli

    empty = _invoke(runtime, "instance", "list")
    assert empty.exit_code == 0
    assert "No known n8n instances found" in _flat(empty)

    harness.bring_shared_up()
    harness.controller.provision(InstanceKey("acme", "prod"))
    result = _invoke(runtime, "instance", "list")
    assert result.exit_code == 0
    assert "acme/prod" in result.output
    assert "5678" in result.output


def test_status_lists_running_units(cli: tuple[Harness, RuntimeContext]) -> None:
    """Status reports live units with their published ports."""
    harness, runtime = cli
    harness.executor.running = [
        RunningUnit("editor_acme_prod", "running", "0.0.0.0:5679->5678/tcp"),
    ]

    result = _invoke(runtime, "instance", "status", "--json")

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {
        "instances": [{"instance": "acme/prod", "state": "running", "port": 5679}]
    }

    table = _invoke(runtime, "instance", "status")
    assert "acme/prod" in table.output
    assert "5679" in table.output


def test_status_without_running_units(cli: tuple[Harness, RuntimeContext]) -> None:
    """An idle host prints a warning."""
    _, runtime = cli

    result = _invoke(runtime, "instance", "status")

    assert result.exit_code == 0
    assert "No running n8n instances found" in _flat(result)


def test_down_then_down_again(cli: tuple[Harness, RuntimeContext]) -> None:
    """Teardown removes the record; repeating it reports already-down."""
    harness, runtime = cli
    harness.bring_shared_up()
    harness.controller.provision(InstanceKey("acme", "prod"))

    first = _invoke(runtime, "instance", "down", "-s", "acme", "-i", "prod")
    second = _invoke(runtime, "instance", "down", "-s", "acme", "-i", "prod")

    assert first.exit_code == 0, first.output
    assert "cleanup complete" in _flat(first)
    assert second.exit_code == 0
    assert "already down" in _flat(second)
    assert ("drop_database", "acme_prod") in harness.journal


def test_update_unknown_instance(cli: tuple[Harness, RuntimeContext]) -> None:
    """Updating without a record is a validation error."""
    _, runtime = cli

    result = _invoke(runtime, "instance", "update", "-s", "acme", "-i", "prod")

    assert result.exit_code == 2
    assert "Cannot update" in _flat(result)


def test_prune_deletes_confirmed_orphans(cli: tuple[Harness, RuntimeContext]) -> None:
    """Prune removes orphans the operator confirms."""
    harness, runtime = cli
    harness.executor.volumes = ["srv_gone_n8n_data"]
    harness.interaction.answers = [True]

    result = _invoke(runtime, "instance", "prune")

    assert result.exit_code == 0, result.output
    assert "srv_gone_n8n_data" in result.output
    assert harness.executor.volumes == []


def test_prune_nothing_to_do(cli: tuple[Harness, RuntimeContext]) -> None:
    """Prune on a clean host says so."""
    _, runtime = cli

    result = _invoke(runtime, "instance", "prune")

    assert result.exit_code == 0
    assert "No orphaned instance volumes found" in _flat(result)


def test_shared_down_blocked_then_forced(cli: tuple[Harness, RuntimeContext]) -> None:
    """Known instances block shared teardown unless --force is given."""
    harness, runtime = cli
    harness.bring_shared_up()
    harness.controller.provision(InstanceKey("acme", "prod"))

    blocked = _invoke(runtime, "shared", "down")
    assert blocked.exit_code == 3
    assert "--force" in _flat(blocked)

    harness.interaction.answers = [True]
    forced = _invoke(runtime, "shared", "down", "--force")
    assert forced.exit_code == 0, forced.output
    assert harness.store.get_shared() is None


def test_shared_down_cancelled(cli: tuple[Harness, RuntimeContext]) -> None:
    """Declining the confirmation keeps the shared tier."""
    harness, runtime = cli
    harness.bring_shared_up()

    result = _invoke(runtime, "shared", "down")

    assert result.exit_code == 0
    assert "Cancelled" in result.output
    assert harness.store.get_shared() is not None


def test_logs_commands_delegate(cli: tuple[Harness, RuntimeContext]) -> None:
    """Log commands stream through the executors."""
    harness, runtime = cli

    instance = _invoke(runtime, "instance", "logs", "-s", "acme", "-i", "prod", "--no-follow")
    shared = _invoke(runtime, "shared", "logs")

    assert instance.exit_code == 0
    assert shared.exit_code == 0
    assert ("follow_logs", "acme_prod", False) in harness.executor.calls
    assert ("follow_logs", "n8n_shared", True) in harness.shared_executor.calls


def test_build_runtime_wires_configuration(tmp_path: Path) -> None:
    """Production wiring honours the configured paths and binaries."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={
            "N8NCTL_STATE_DIR": str(tmp_path / "state"),
            "N8NCTL_LOGS_DIR": str(tmp_path / "logs"),
            "N8NCTL_RUNTIME_DIR": str(tmp_path / "run"),
            "N8NCTL_COMPOSE__COMPOSE_BIN": "podman-compose",
        },
    )

    runtime = build_runtime(config)

    assert runtime.store.root == tmp_path / "state"
    assert runtime.logger.path == tmp_path / "logs" / "operations.jsonl"
    assert runtime.required_binaries == ("docker", "podman-compose", "psql")
    executor = runtime.controller.executor
    assert isinstance(executor, ComposeExecutor)
    assert executor.compose_bin == "podman-compose"
    assert runtime.controller.health.max_attempts == 30
    assert runtime.reconciler.suffixes == ("n8n_data", "repo_temp")
