"""SQLite-backed local memory store.

Connections are opened per operation and closed by the ``_connect`` context
manager. The async API runs the blocking work in a worker thread.
"""

import asyncio
import contextlib
import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from collabsync.types import MemoryRecord, format_datetime, parse_datetime, utc_now

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    scope TEXT NOT NULL,
    memory TEXT NOT NULL,
    type TEXT,
    metadata TEXT,
    remote_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_memories_owner ON memories(user_id, scope);
CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_remote ON memories(remote_id)
    WHERE remote_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT
);
"""


class SQLiteMemoryStore:
    """Local memory store in a single SQLite file.

    Args:
        db_path: Database file. Parent directories are created.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Commit on success, roll back on exception, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def _now(self) -> str:
        return utc_now().isoformat()

    def _to_json(self, data: Any) -> Optional[str]:
        if not data:
            return None
        return json.dumps(data)

    def _from_json(self, s: Optional[str]) -> Dict[str, Any]:
        if not s:
            return {}
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            logger.warning("Ignoring unparseable memory metadata")
            return {}

    def _row_to_record(self, row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            memory=row["memory"],
            user_id=row["user_id"],
            scope=row["scope"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            type=row["type"],
            metadata=self._from_json(row["metadata"]),
            remote_id=row["remote_id"],
        )

    # === Blocking operations ===

    def _list(self, user_id: str, scope: str) -> List[MemoryRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM memories
                   WHERE user_id = ? AND scope = ?
                   ORDER BY created_at, id""",
                (user_id, scope),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def _get(self, memory_id: str) -> Optional[MemoryRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def _insert(self, record: MemoryRecord) -> MemoryRecord:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO memories
                   (id, user_id, scope, memory, type, metadata, remote_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.user_id,
                    record.scope,
                    record.memory,
                    record.type,
                    self._to_json(record.metadata),
                    record.remote_id,
                    format_datetime(record.created_at) or self._now(),
                    format_datetime(record.updated_at),
                ),
            )
        return record

    def _link(self, local_id: str, remote_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE memories SET remote_id = ? WHERE id = ?", (remote_id, local_id)
            )
            if cursor.rowcount == 0:
                raise KeyError(f"No local memory {local_id}")

    def _delete(self, memory_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            return cursor.rowcount > 0

    def _count(self, user_id: str, scope: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM memories WHERE user_id = ? AND scope = ?", (user_id, scope)
            ).fetchone()[0]

    def _get_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, self._now()),
            )

    # === LocalMemoryStore ===

    async def list_memories(self, user_id: str, scope: str) -> List[MemoryRecord]:
        return await asyncio.to_thread(self._list, user_id, scope)

    async def get_memory(self, memory_id: str) -> Optional[MemoryRecord]:
        return await asyncio.to_thread(self._get, memory_id)

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
        now = utc_now()
        record = MemoryRecord(
            id=str(uuid.uuid4()),
            memory=text,
            user_id=user_id,
            scope=scope,
            created_at=now,
            updated_at=now,
            type=memory_type,
            metadata=metadata or {},
        )
        return await asyncio.to_thread(self._insert, record)

    async def insert_memory(self, record: MemoryRecord, user_id: str, scope: str) -> MemoryRecord:
        """Store a copy of a remote record; its id becomes ``remote_id``."""
        if not record.memory or not record.memory.strip():
            raise ValueError(f"Memory {record.id} has no content")
        local = MemoryRecord(
            id=str(uuid.uuid4()),
            memory=record.memory,
            user_id=user_id,
            scope=scope,
            created_at=record.created_at or utc_now(),
            updated_at=record.updated_at or record.created_at,
            type=record.type,
            metadata=dict(record.metadata),
            remote_id=record.id,
        )
        return await asyncio.to_thread(self._insert, local)

    async def link_remote(self, local_id: str, remote_id: str) -> None:
        await asyncio.to_thread(self._link, local_id, remote_id)

    async def delete_memory(self, memory_id: str) -> bool:
        """Explicit deletion. The reconciler never calls this."""
        return await asyncio.to_thread(self._delete, memory_id)

    async def count_memories(self, user_id: str, scope: str) -> int:
        return await asyncio.to_thread(self._count, user_id, scope)

    async def get_sync_meta(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_meta, key)

    async def set_sync_meta(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_meta, key, value)
