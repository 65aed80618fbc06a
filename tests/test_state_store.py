"""State store tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from n8nctl.errors import StateStoreError, ValidationError
from n8nctl.state import InstanceIdentity, InstanceKey, SharedInfrastructureState, StateStore
from n8nctl.state.store import parse_record, render_record


def _identity(server: str = "acme", instance: str = "prod", port: int = 5678) -> InstanceIdentity:
    key = InstanceKey(server, instance)
    return InstanceIdentity(
        key=key,
        database_name=key.unit_id.lower(),
        database_user=key.unit_id.lower(),
        database_password="p" * 32,
        cache_namespace_index=3,
        service_port=port,
        encryption_key="k" * 32,
    )


def test_get_missing_returns_none(tmp_path: Path) -> None:
    """An unprovisioned key yields None rather than an error."""
    store = StateStore(tmp_path / "state")

    assert store.get(InstanceKey("acme", "prod")) is None
    assert store.list() == []
    assert store.get_shared() is None


def test_put_get_and_file_layout(tmp_path: Path) -> None:
    """Records are stored owner-only under ``<server>_<instance>.state``."""
    store = StateStore(tmp_path / "state")
    identity = _identity()

    store.put(identity)

    path = tmp_path / "state" / "acme_prod.state"
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o600
    assert (store.root.stat().st_mode & 0o777) == 0o700
    text = path.read_text(encoding="utf-8")
    assert 'DB_NAME="acme_prod"' in text
    assert 'N8N_PORT="5678"' in text
    assert store.get(identity.key) == identity


def test_put_leaves_no_temporary_files(tmp_path: Path) -> None:
    """The atomic write renames its temp file into place."""
    store = StateStore(tmp_path / "state")

    store.put(_identity())
    store.put(_identity())

    assert sorted(p.name for p in store.root.iterdir()) == ["acme_prod.state"]


def test_delete_is_idempotent(tmp_path: Path) -> None:
    """Deleting twice does not raise."""
    store = StateStore(tmp_path / "state")
    identity = _identity()
    store.put(identity)

    store.delete(identity.key)
    store.delete(identity.key)

    assert store.get(identity.key) is None


def test_list_skips_shared_foreign_and_malformed(tmp_path: Path) -> None:
    """Enumeration ignores the shared record, foreign files and broken records."""
    store = StateStore(tmp_path / "state")
    store.put(_identity("zeta", "one", 5680))
    store.put(_identity("acme", "prod", 5678))
    store.put_shared(SharedInfrastructureState(postgres_password="master"))
    (store.root / "notes.txt").write_text("hello\n")
    (store.root / "broken_rec.state").write_text('DB_NAME="only"\n')

    keys = [identity.key.display for identity in store.list()]

    assert keys == ["acme/prod", "zeta/one"]


def test_get_malformed_record_raises(tmp_path: Path) -> None:
    """A malformed record for the requested key is an error, not a silent None."""
    store = StateStore(tmp_path / "state")
    store.ensure_root()
    (store.root / "acme_prod.state").write_text('N8N_PORT="abc"\n')

    with pytest.raises(StateStoreError, match="malformed"):
        store.get(InstanceKey("acme", "prod"))


def test_record_without_names_uses_filename(tmp_path: Path) -> None:
    """Hand-written records without SERVER_NAME/INSTANCE_NAME fall back to the filename."""
    store = StateStore(tmp_path / "state")
    store.ensure_root()
    (store.root / "acme_prod.state").write_text(
        "DB_NAME=acme_prod\nDB_USER=acme_prod\nDB_PASS=x\n"
        "REDIS_DB=4\nN8N_ENCRYPTION_KEY=y\nN8N_PORT=5690\n"
    )

    [identity] = store.list()

    assert identity.key == InstanceKey("acme", "prod")
    assert identity.cache_namespace_index == 4
    assert identity.service_port == 5690


def test_shared_record_roundtrip(tmp_path: Path) -> None:
    """The shared credential lives in ``shared.state``."""
    store = StateStore(tmp_path / "state")

    store.put_shared(SharedInfrastructureState(postgres_password="master"))

    assert (store.root / "shared.state").read_text() == 'POSTGRES_PASSWORD="master"\n'
    assert store.get_shared() == SharedInfrastructureState(postgres_password="master")
    store.delete_shared()
    assert store.get_shared() is None


def test_render_rejects_quotes() -> None:
    """Values that would break the line format are refused."""
    with pytest.raises(StateStoreError):
        render_record({"DB_PASS": 'a"b'})


def test_parse_record_tolerates_comments_and_quotes() -> None:
    """Comments, blank lines and either quote style are accepted."""
    text = "# comment\n\nA=1\nB=\"two\"\nC='three'\nnot a field\n"

    assert parse_record(text) == {"A": "1", "B": "two", "C": "three"}


@pytest.mark.parametrize("name", ["", "has_underscore", "-leading", "sp ace"])
def test_instance_key_rejects_unsafe_names(name: str) -> None:
    """Names must survive the ``server_instance`` project naming."""
    with pytest.raises(ValidationError):
        InstanceKey("acme", name)


def test_instance_key_unit_id_and_display() -> None:
    """unit_id and display forms are derived from both names."""
    key = InstanceKey("acme", "prod-2")

    assert key.unit_id == "acme_prod-2"
    assert key.display == "acme/prod-2"
    assert InstanceKey.from_unit_id("acme_prod-2") == key


def test_list_keys_includes_malformed_records(tmp_path: Path) -> None:
    """Keys come from filenames, so a damaged record is still listed."""
    store = StateStore(tmp_path / "state")
    store.put(_identity("acme", "prod", 5678))
    store.put_shared(SharedInfrastructureState(postgres_password="master"))
    (store.root / "notes.txt").write_text("hello\n")
    (store.root / "noseparator.state").write_text('N8N_PORT="1"\n')
    (store.root / "broken_rec.state").write_text('N8N_PORT=""\n')

    assert store.list_keys() == [InstanceKey("acme", "prod"), InstanceKey("broken", "rec")]
    assert [identity.key for identity in store.list()] == [InstanceKey("acme", "prod")]


def test_list_keys_on_missing_root(tmp_path: Path) -> None:
    """A store that was never written lists nothing."""
    assert StateStore(tmp_path / "absent").list_keys() == []
