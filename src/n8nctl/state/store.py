"""File-backed state store for instance identities.

The store directory (``n8n_local_data/.state`` by default) holds one
``<server>_<instance>.state`` file per instance and a single ``shared.state``
file for the shared tier. Records are plain ``KEY="value"`` lines containing
plaintext secrets, so every file is written owner-only through a temporary
file that is atomically renamed into place.

The store performs no locking of its own. Callers that read the full record
set and then write a new record based on it must serialise through
:class:`n8nctl.locking.LockManager`.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..errors import StateStoreError, ValidationError
from .records import InstanceIdentity, InstanceKey, SharedInfrastructureState

LOGGER = logging.getLogger(__name__)

STATE_SUFFIX = ".state"
SHARED_STATE_NAME = f"shared{STATE_SUFFIX}"
RECORD_MODE = 0o600


@dataclass(frozen=True)
class StateStore:
    """Read and write instance and shared-infrastructure records."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the state directory (owner-only) if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True, mode=0o700)

    def path_for(self, key: InstanceKey) -> Path:
        """Return the record path for *key*."""
        return self.root / f"{key.unit_id}{STATE_SUFFIX}"

    # ------------------------------------------------------------------
    # Instance records
    # ------------------------------------------------------------------
    def get(self, key: InstanceKey) -> InstanceIdentity | None:
        """Return the identity for *key*, or ``None`` when not provisioned."""
        path = self.path_for(key)
        fields = self._read_fields(path)
        if fields is None:
            return None
        try:
            return InstanceIdentity.from_fields(fields, fallback_key=key)
        except (KeyError, ValueError, ValidationError) as exc:
            raise StateStoreError(f"State file {path} is malformed: {exc}") from exc

    def put(self, identity: InstanceIdentity) -> None:
        """Atomically persist *identity*."""
        self._write_fields(self.path_for(identity.key), identity.to_fields())

    def delete(self, key: InstanceKey) -> None:
        """Remove the record for *key*; missing records are ignored."""
        self.path_for(key).unlink(missing_ok=True)

    def list_keys(self) -> list[InstanceKey]:
        """Return the key of every record file, readable or not.

        Keys come from the ``<server>_<instance>.state`` filename alone, so a
        record with a damaged field still counts as a known instance.
        """
        keys: list[InstanceKey] = []
        for path in self._record_paths():
            try:
                keys.append(InstanceKey.from_unit_id(path.stem))
            except ValidationError as exc:
                LOGGER.debug("Ignoring state file with unexpected name %s: %s", path, exc)
        return sorted(keys)

    def list(self) -> list[InstanceIdentity]:
        """Return every readable identity, skipping foreign or malformed files."""
        identities: list[InstanceIdentity] = []
        for path in self._record_paths():
            try:
                fallback = InstanceKey.from_unit_id(path.stem)
            except ValidationError:
                fallback = None
            try:
                fields = self._read_fields(path)
                if fields is None:
                    continue
                identities.append(InstanceIdentity.from_fields(fields, fallback_key=fallback))
            except (KeyError, ValueError, ValidationError, StateStoreError) as exc:
                LOGGER.debug("Skipping unreadable state file %s: %s", path, exc)
        identities.sort(key=lambda identity: identity.key)
        return identities

    # ------------------------------------------------------------------
    # Shared infrastructure record
    # ------------------------------------------------------------------
    def get_shared(self) -> SharedInfrastructureState | None:
        """Return the shared-infrastructure record, if present."""
        path = self.root / SHARED_STATE_NAME
        fields = self._read_fields(path)
        if fields is None:
            return None
        try:
            return SharedInfrastructureState.from_fields(fields)
        except KeyError as exc:
            raise StateStoreError(f"State file {path} is missing {exc}.") from exc

    def put_shared(self, state: SharedInfrastructureState) -> None:
        """Atomically persist the shared-infrastructure record."""
        self._write_fields(self.root / SHARED_STATE_NAME, state.to_fields())

    def delete_shared(self) -> None:
        """Remove the shared-infrastructure record."""
        (self.root / SHARED_STATE_NAME).unlink(missing_ok=True)

    # Internal helpers -------------------------------------------------
    def _record_paths(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return [
            path
            for path in sorted(self.root.iterdir())
            if path.name != SHARED_STATE_NAME
            and not path.name.startswith(".")
            and path.suffix == STATE_SUFFIX
            and path.is_file()
        ]

    def _read_fields(self, path: Path) -> dict[str, str] | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise StateStoreError(f"Failed to read state file {path}: {exc}") from exc
        return parse_record(text)

    def _write_fields(self, path: Path, fields: Mapping[str, str]) -> None:
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            os.fchmod(tmp_fd, RECORD_MODE)
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(render_record(fields))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StateStoreError(f"Failed to write state file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def render_record(fields: Mapping[str, str]) -> str:
    """Render *fields* as ``KEY="value"`` lines."""
    lines = []
    for key, value in fields.items():
        if '"' in value or "\n" in value:
            raise StateStoreError(f"Value for {key} cannot contain quotes or newlines.")
        lines.append(f'{key}="{value}"')
    return "\n".join(lines) + "\n"


def parse_record(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, tolerating optional quotes and comments."""
    fields: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        fields[key.strip()] = value
    return fields


__all__ = ["StateStore", "parse_record", "render_record"]
