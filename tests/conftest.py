"""
Pytest fixtures and test configuration for collabsync tests.
"""

import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Set

import pytest

from collabsync.collab.conflicts import ConflictDetector
from collabsync.collab.operations import OperationBroadcaster
from collabsync.collab.sessions import SessionManager
from collabsync.config import get_settings
from collabsync.errors import RemoteMemoryError
from collabsync.storage.sqlite import SQLiteMemoryStore
from collabsync.transport.memory import InMemoryHub, InMemoryTransport
from collabsync.types import MemoryRecord


class FakeRemoteStore:
    """In-memory stand-in for the remote memory API."""

    base_url = "https://mem0.test"

    def __init__(self):
        self.online = True
        self.fail_list = False
        self.fail_texts: Set[str] = set()
        self.records: Dict[str, MemoryRecord] = {}
        self.add_calls: List[str] = []
        self.list_calls = 0

    def seed(self, text: str, local_id: Optional[str] = None, **kwargs) -> MemoryRecord:
        record = MemoryRecord(id=f"remote-{uuid.uuid4().hex[:8]}", memory=text, local_id=local_id, **kwargs)
        self.records[record.id] = record
        return record

    async def check_connection(self) -> bool:
        return self.online

    async def list_memories(self, user_id: str, scope: str) -> List[MemoryRecord]:
        self.list_calls += 1
        if self.fail_list:
            raise RemoteMemoryError("search endpoint exploded", 500)
        return [replace(r) for r in self.records.values()]

    async def add_memory(self, record: MemoryRecord, user_id: str, scope: str) -> Optional[str]:
        self.add_calls.append(record.id)
        if record.memory in self.fail_texts:
            raise RemoteMemoryError("All endpoints failed to add memory: HTTP 500", 500)
        stored = self.seed(record.memory, local_id=record.id, user_id=user_id, scope=scope, type=record.type)
        return stored.id

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached per process; reset between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def hub():
    return InMemoryHub()


@pytest.fixture
def make_participant(hub):
    """Factory for an initialized (SessionManager, OperationBroadcaster) pair on the shared hub."""

    async def _make(user_id: str, name: Optional[str] = None, echo: bool = True, activity=None):
        manager = SessionManager(InMemoryTransport(hub, echo=echo), activity=activity)
        await manager.initialize(user_id, name or user_id.title())
        broadcaster = OperationBroadcaster(manager, ConflictDetector())
        return manager, broadcaster

    return _make


@pytest.fixture
def local_store(tmp_path):
    return SQLiteMemoryStore(tmp_path / "memories.db")


@pytest.fixture
def remote_store():
    return FakeRemoteStore()
