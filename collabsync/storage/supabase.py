"""Supabase table memory store.

Stores memories in the ``ai_family_member_memories`` table the web
application uses. The supabase client is synchronous, so every query runs in
a worker thread.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from collabsync.config import Settings
from collabsync.types import MemoryRecord, format_datetime, parse_datetime, utc_now

logger = logging.getLogger(__name__)

# String identifiers used by the app, mapped to the UUIDs stored in the table
SCOPE_UUID_MAP: Dict[str, str] = {
    "file_manager": "00000000-0000-0000-0000-000000000001",
    "lyra": "00000000-0000-0000-0000-000000000002",
    "sophia": "00000000-0000-0000-0000-000000000003",
    "kara": "00000000-0000-0000-0000-000000000004",
    "stan": "00000000-0000-0000-0000-000000000005",
    "dan": "00000000-0000-0000-0000-000000000006",
    "mem0": "00000000-0000-0000-0000-000000000007",
}

USER_UUID_MAP: Dict[str, str] = {
    "default_user": "00000000-0000-0000-0000-000000000010",
}


def scope_uuid(scope: str) -> str:
    return SCOPE_UUID_MAP.get(scope, scope)


def user_uuid(user_id: str) -> str:
    return USER_UUID_MAP.get(user_id, user_id)


class SupabaseMemoryStore:
    """Local memory store backed by a Supabase table.

    Args:
        client: A synchronous supabase ``Client``.
        table: Memories table name.
        meta_table: Key/value table for sync metadata.
    """

    def __init__(self, client: Any, table: str = "ai_family_member_memories", meta_table: str = "sync_meta"):
        self._client = client
        self.table = table
        self.meta_table = meta_table

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseMemoryStore":
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("COLLABSYNC_SUPABASE_URL and COLLABSYNC_SUPABASE_KEY must be set")

        from supabase import create_client

        client = create_client(settings.supabase_url, settings.supabase_key)
        return cls(client, table=settings.memories_table, meta_table=settings.sync_meta_table)

    def _row_to_record(self, row: Dict[str, Any], user_id: str, scope: str) -> MemoryRecord:
        metadata = row.get("metadata") or {}
        return MemoryRecord(
            id=str(row["id"]),
            memory=row.get("memory") or "",
            user_id=user_id,
            scope=scope,
            created_at=parse_datetime(row.get("created_at")),
            updated_at=parse_datetime(row.get("updated_at")),
            type=row.get("type") or metadata.get("type"),
            metadata=metadata,
            remote_id=row.get("remote_id"),
        )

    async def list_memories(self, user_id: str, scope: str) -> List[MemoryRecord]:
        def _query():
            return (
                self._client.table(self.table)
                .select("*")
                .eq("ai_family_member_id", scope_uuid(scope))
                .eq("user_id", user_uuid(user_id))
                .execute()
            )

        result = await asyncio.to_thread(_query)
        return [self._row_to_record(row, user_id, scope) for row in result.data or []]

    async def _insert_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        def _insert():
            return self._client.table(self.table).insert([row]).execute()

        result = await asyncio.to_thread(_insert)
        if not result.data:
            raise RuntimeError("Memory insert returned no row")
        return result.data[0]

    async def add_memory(
        self,
        user_id: str,
        scope: str,
        text: str,
        memory_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryRecord:
        """Create a new local memory (user/AI interaction)."""
        if not text or not text.strip():
            raise ValueError("Memory text cannot be empty")
        now = format_datetime(utc_now())
        row = {
            "ai_family_member_id": scope_uuid(scope),
            "user_id": user_uuid(user_id),
            "memory": text,
            "created_at": now,
            "updated_at": now,
            "metadata": _metadata_column(metadata or {}, memory_type),
        }
        return self._row_to_record(await self._insert_row(row), user_id, scope)

    async def insert_memory(self, record: MemoryRecord, user_id: str, scope: str) -> MemoryRecord:
        if not record.memory or not record.memory.strip():
            raise ValueError(f"Memory {record.id} has no content")

        created = record.created_at or utc_now()
        row = {
            "ai_family_member_id": scope_uuid(scope),
            "user_id": user_uuid(user_id),
            "memory": record.memory,
            "created_at": format_datetime(created),
            "updated_at": format_datetime(record.updated_at or created),
            "metadata": _metadata_column(record.metadata, record.type),
            "remote_id": record.id,
        }
        return self._row_to_record(await self._insert_row(row), user_id, scope)

    async def link_remote(self, local_id: str, remote_id: str) -> None:
        def _update():
            return (
                self._client.table(self.table)
                .update({"remote_id": remote_id})
                .eq("id", local_id)
                .execute()
            )

        result = await asyncio.to_thread(_update)
        if not result.data:
            raise KeyError(f"No local memory {local_id}")

    async def get_sync_meta(self, key: str) -> Optional[str]:
        def _query():
            return self._client.table(self.meta_table).select("value").eq("key", key).execute()

        result = await asyncio.to_thread(_query)
        return result.data[0]["value"] if result.data else None

    async def set_sync_meta(self, key: str, value: str) -> None:
        def _upsert():
            return (
                self._client.table(self.meta_table)
                .upsert({"key": key, "value": value, "updated_at": utc_now().isoformat()})
                .execute()
            )

        await asyncio.to_thread(_upsert)


def _metadata_column(metadata: Dict[str, Any], memory_type: Optional[str]) -> Optional[Dict[str, Any]]:
    """The table has no type column; the type travels inside metadata."""
    if memory_type:
        return {**metadata, "type": memory_type}
    return dict(metadata) or None
