"""Administrative Postgres commands issued through ``psql``."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..errors import AdministrativeCommandError


def quote_identifier(name: str) -> str:
    """Return *name* as a double-quoted SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Return *value* as a single-quoted SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


@dataclass(slots=True)
class PostgresAdmin:
    """Create and drop per-instance databases and login roles."""

    password: str = field(repr=False)
    host: str = "localhost"
    user: str = "postgres"
    database: str = "postgres"
    psql_bin: str = "psql"

    def create_database(self, name: str) -> None:
        """Create the database *name*."""
        self.execute(f"CREATE DATABASE {quote_identifier(name)};", label="create database")

    def create_role(self, name: str, password: str) -> None:
        """Create the login role *name* with *password*."""
        self.execute(
            f"CREATE USER {quote_identifier(name)} WITH PASSWORD {quote_literal(password)};",
            label="create role",
        )

    def grant_all(self, database: str, role: str) -> None:
        """Grant every privilege on *database* to *role*."""
        self.execute(
            f"GRANT ALL PRIVILEGES ON DATABASE {quote_identifier(database)} "
            f"TO {quote_identifier(role)};",
            label="grant privileges",
        )

    def drop_database(self, name: str) -> None:
        """Drop the database *name* if it exists."""
        self.execute(f"DROP DATABASE IF EXISTS {quote_identifier(name)};", label="drop database")

    def drop_role(self, name: str) -> None:
        """Drop the login role *name* if it exists."""
        self.execute(f"DROP USER IF EXISTS {quote_identifier(name)};", label="drop role")

    def execute(self, sql: str, *, label: str) -> subprocess.CompletedProcess[str]:
        """Run a single statement; failures raise :class:`AdministrativeCommandError`.

        The statement text may contain a password, so it is fed on stdin rather
        than argv and never appears in the raised error message.
        """
        args: Sequence[str] = [
            self.psql_bin,
            "-h",
            self.host,
            "-U",
            self.user,
            "-d",
            self.database,
            "-v",
            "ON_ERROR_STOP=1",
            "-f",
            "-",
        ]
        env = {**os.environ, "PGPASSWORD": self.password}
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                input=sql,
                capture_output=True,
                text=True,
                check=False,
                env=env,
            )
        except FileNotFoundError as exc:
            raise AdministrativeCommandError(f"{self.psql_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            raise AdministrativeCommandError(
                f"psql {label} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["PostgresAdmin", "quote_identifier", "quote_literal"]
