"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from n8nctl.locking import LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "acme_prod.lock"
    with manager.instance_lock("acme_prod") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("acme_prod", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("acme_prod"):
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("acme_prod", timeout=0.1):
                pass


def test_mutate_instances_acquires_global_then_instance(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-instance locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["acme_prod", "acme_prod"]) as bundle:
        assert bundle.wait_ms >= 0
        assert len(bundle.handles) == 2
        assert bundle.handles[0].path == tmp_path / "run" / "n8nctl.lock"
        assert (tmp_path / "run" / "acme_prod.lock").exists()


def test_global_lock_blocks_concurrent_mutation(tmp_path: Path) -> None:
    """A held global lock makes another mutation time out."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError, match="n8nctl.lock"):
            with manager.mutate_instances(["acme_other"], timeout=0.1):
                pass


def test_unsafe_names_are_sanitised(tmp_path: Path) -> None:
    """Path separators never escape the runtime directory."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("../evil/name") as handle:
        assert handle.path.parent == tmp_path / "run"
