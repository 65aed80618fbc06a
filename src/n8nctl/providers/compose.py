"""docker-compose provider acting as the container executor."""
from __future__ import annotations

import os
import re
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExecutorError


@dataclass(frozen=True, slots=True)
class RunningUnit:
    """A live container reported by ``docker ps``."""

    name: str
    state: str
    ports: str


@dataclass(slots=True)
class ComposeExecutor:
    """Start, stop and inspect compose projects for one compose file."""

    compose_file: Path
    compose_bin: str = "docker-compose"
    docker_bin: str = "docker"

    def start(self, unit_id: str, config: Mapping[str, str]) -> subprocess.CompletedProcess[str]:
        """Bring the project up (recreating changed containers) with *config*."""
        return self._compose(
            unit_id,
            ["up", "-d", "--remove-orphans"],
            config=config,
        )

    def stop(
        self,
        unit_id: str,
        *,
        remove_volumes: bool = False,
        config: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Stop and remove the project containers (and volumes when asked)."""
        args = ["down"]
        if remove_volumes:
            args.append("--volumes")
        return self._compose(unit_id, args, config=config)

    def pull(
        self,
        unit_id: str,
        services: Sequence[str],
        *,
        config: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Pull newer images for *services*."""
        return self._compose(unit_id, ["pull", *services], config=config)

    def probe_health(self, unit_id: str, service: str) -> str | None:
        """Return the container health status, or ``None`` when not reporting."""
        ps = self._compose(unit_id, ["ps", "-q", service], check=False)
        container_ids = (ps.stdout or "").split()
        if ps.returncode != 0 or not container_ids:
            return None
        inspect = self._run_command(
            [self.docker_bin, "inspect", "-f", "{{.State.Health.Status}}", container_ids[0]],
            check=False,
            error_prefix=f"{self.docker_bin} inspect",
        )
        status = (inspect.stdout or "").strip()
        if inspect.returncode != 0 or not status or status == "<no value>":
            return None
        return status

    def fetch_logs(self, unit_id: str, service: str) -> str:
        """Return the captured log output for *service*."""
        result = self._compose(unit_id, ["logs", "--no-color", service], check=False)
        return ((result.stdout or "") + (result.stderr or "")).strip()

    def follow_logs(
        self,
        unit_id: str,
        *,
        follow: bool = True,
        config: Mapping[str, str] | None = None,
    ) -> int:
        """Stream project logs to the terminal and return the exit status."""
        args = ["logs"]
        if follow:
            args.append("-f")
        result = self._compose(
            unit_id, args, config=config, check=False, capture_output=False
        )
        return result.returncode

    def list_running_units(self, name_prefix: str) -> list[RunningUnit]:
        """Return running containers whose name starts with *name_prefix*."""
        result = self._run_command(
            [self.docker_bin, "ps", "--format", "{{.Names}}\t{{.State}}\t{{.Ports}}"],
            check=True,
            error_prefix=f"{self.docker_bin} ps",
        )
        units: list[RunningUnit] = []
        for line in (result.stdout or "").splitlines():
            parts = line.split("\t")
            if not parts or not parts[0].startswith(name_prefix):
                continue
            parts += [""] * (3 - len(parts))
            units.append(RunningUnit(name=parts[0], state=parts[1], ports=parts[2]))
        return units

    def list_storage_resources(self, suffixes: Iterable[str]) -> list[str]:
        """Return volume names ending in one of ``_<suffix>``."""
        endings = tuple(f"_{suffix}" for suffix in suffixes)
        result = self._run_command(
            [self.docker_bin, "volume", "ls", "--format", "{{.Name}}"],
            check=True,
            error_prefix=f"{self.docker_bin} volume ls",
        )
        names = (line.strip() for line in (result.stdout or "").splitlines())
        return sorted(name for name in names if name and name.endswith(endings))

    def delete_storage_resource(self, name: str) -> subprocess.CompletedProcess[str]:
        """Remove the volume called *name*."""
        return self._run_command(
            [self.docker_bin, "volume", "rm", name],
            check=True,
            error_prefix=f"{self.docker_bin} volume rm {name}",
        )

    # ------------------------------------------------------------------
    def _compose(
        self,
        unit_id: str,
        args: Sequence[str],
        *,
        config: Mapping[str, str] | None = None,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.compose_bin, "-f", str(self.compose_file), "-p", unit_id, *args]
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.compose_bin} -p {unit_id} {args[0]}",
            capture_output=capture_output,
            config=config,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        capture_output: bool = True,
        config: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        env = None
        if config:
            env = {**os.environ, **{key: str(value) for key, value in config.items()}}
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=capture_output,
                text=True,
                check=False,
                env=env,
            )
        except FileNotFoundError as exc:
            raise ExecutorError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ExecutorError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def parse_published_port(ports: str, container_port: int) -> int | None:
    """Extract the host port mapped to *container_port* from ``docker ps`` output."""
    match = re.search(rf":(\d+)->{container_port}/tcp", ports)
    return int(match.group(1)) if match else None


__all__ = ["ComposeExecutor", "RunningUnit", "parse_published_port"]
