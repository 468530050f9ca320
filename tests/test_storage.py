import asyncio

import pytest

from core.errors import CredentialNotFound
from models.host import HostCredential, HostRecord, HostStatus, Protocol
from services.inventory import HostInventory
from services.storage import FileStore


def test_read_write_update(tmp_path):
    store = FileStore(str(tmp_path))
    assert store.read("missing.json") == {}
    assert store.write("a.json", {"x": 1})
    store.update("a.json", lambda d: {**d, "y": 2})
    assert store.read("a.json") == {"x": 1, "y": 2}
    assert store.delete("a.json")
    assert not store.exists("a.json")


def test_records_sorted_newest_first(tmp_path):
    store = FileStore(str(tmp_path))
    for i in range(3):
        store.save_record("tasks", f"t{i}", {"task_id": f"t{i}", "created_at": i})
    assert [r["task_id"] for r in store.list_records("tasks")] == ["t2", "t1", "t0"]
    assert [r["task_id"] for r in store.list_records("tasks", limit=1)] == ["t2"]
    assert store.load_record("tasks", "t1")["created_at"] == 1
    assert store.load_record("tasks", "nope") is None


def test_inventory_resolve_and_status(tmp_path):
    inventory = HostInventory(FileStore(str(tmp_path)))
    inventory.register(HostRecord(
        host_id="db-1",
        name="数据库",
        credential=HostCredential(host_id="db-1", protocol=Protocol.SSH, address="10.0.0.9", password="pw"),
    ))

    credential = asyncio.run(inventory.resolve("db-1"))
    assert credential.address == "10.0.0.9"
    assert not inventory.is_online("db-1")

    inventory.set_status("db-1", HostStatus.ONLINE)
    assert inventory.online_hosts() == ["db-1"]
    assert [r.name for r in inventory.list_hosts()] == ["数据库"]

    with pytest.raises(CredentialNotFound):
        asyncio.run(inventory.resolve("db-2"))


def test_credential_fingerprint_changes_with_secret():
    a = HostCredential(host_id="h", password="one")
    b = HostCredential(host_id="h", password="two")
    assert a.fingerprint() != b.fingerprint()
    assert a.fingerprint() == HostCredential(host_id="h", password="one").fingerprint()
