"""Tests for the SQLite local memory store."""

import pytest

from collabsync.storage.sqlite import SQLiteMemoryStore
from collabsync.types import MemoryRecord, parse_datetime


@pytest.mark.asyncio
async def test_add_and_list_scoped_by_user_and_scope(local_store):
    first = await local_store.add_memory("alice", "file_manager", "Opened report.pdf", memory_type="file_operation")
    await local_store.add_memory("alice", "lyra", "Likes jazz")
    await local_store.add_memory("bob", "file_manager", "Searched for invoices")

    records = await local_store.list_memories("alice", "file_manager")

    assert [r.id for r in records] == [first.id]
    assert records[0].type == "file_operation"
    assert records[0].remote_id is None
    assert records[0].created_at is not None


@pytest.mark.asyncio
async def test_empty_text_rejected(local_store):
    with pytest.raises(ValueError):
        await local_store.add_memory("alice", "file_manager", "   ")


@pytest.mark.asyncio
async def test_insert_memory_keeps_remote_id(local_store):
    remote = MemoryRecord(
        id="remote-1",
        memory="Prefers dark mode",
        created_at=parse_datetime("2024-01-02T03:04:05Z"),
        type="preference",
        metadata={"source": "mem0"},
    )

    stored = await local_store.insert_memory(remote, "alice", "file_manager")

    assert stored.id != "remote-1"
    assert stored.remote_id == "remote-1"
    fetched = await local_store.get_memory(stored.id)
    assert fetched.metadata == {"source": "mem0"}
    assert fetched.created_at == parse_datetime("2024-01-02T03:04:05+00:00")


@pytest.mark.asyncio
async def test_link_remote(local_store):
    record = await local_store.add_memory("alice", "file_manager", "Renamed notes.txt")

    await local_store.link_remote(record.id, "remote-9")

    assert (await local_store.get_memory(record.id)).remote_id == "remote-9"


@pytest.mark.asyncio
async def test_link_unknown_record_raises(local_store):
    with pytest.raises(KeyError):
        await local_store.link_remote("missing", "remote-9")


@pytest.mark.asyncio
async def test_count_and_delete(local_store):
    record = await local_store.add_memory("alice", "file_manager", "One")
    await local_store.add_memory("alice", "file_manager", "Two")

    assert await local_store.count_memories("alice", "file_manager") == 2
    assert await local_store.delete_memory(record.id) is True
    assert await local_store.delete_memory(record.id) is False
    assert await local_store.count_memories("alice", "file_manager") == 1


@pytest.mark.asyncio
async def test_sync_meta_overwrites(local_store):
    assert await local_store.get_sync_meta("last_sync:alice:file_manager") is None

    await local_store.set_sync_meta("last_sync:alice:file_manager", "2024-01-01T00:00:00+00:00")
    await local_store.set_sync_meta("last_sync:alice:file_manager", "2024-02-01T00:00:00+00:00")

    assert await local_store.get_sync_meta("last_sync:alice:file_manager") == "2024-02-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_data_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "memories.db"
    record = await SQLiteMemoryStore(path).add_memory("alice", "file_manager", "Persisted")

    reopened = SQLiteMemoryStore(path)

    assert (await reopened.get_memory(record.id)).memory == "Persisted"
