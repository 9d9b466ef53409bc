"""
collabsync Protocol Definitions
===============================

Interface contracts for the external collaborators of collabsync.

- Transport:         a publish/subscribe channel system (realtime service).
- LocalMemoryStore:  fast, always-available memory storage.
- RemoteMemoryStore: API-backed memory storage that may be unreachable.
- ActivityRecorder:  best-effort sink for collaboration activity.

Error handling philosophy:
- Transports raise TransportError; the session layer turns it into
  SessionConnectionError for the caller.
- Stores raise whatever their client raises; the reconciler isolates
  per-record failures and never lets them abort a pass.
- Activity recorders may fail freely; callers log and continue.
"""

from __future__ import annotations

from typing import (
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from collabsync.types import MemoryRecord, TransportMessage

MessageHandler = Callable[[TransportMessage], Awaitable[None]]
StatusCallback = Callable[[bool, Optional[str]], Awaitable[None]]


@runtime_checkable
class Transport(Protocol):
    """Publish/subscribe channels keyed by name.

    Delivery is FIFO per channel. Whether a sender receives its own messages
    is transport specific; consumers suppress their own echoes.
    """

    async def connect(self, user_id: str) -> None:
        """Establish the connection. Raises TransportError when unreachable."""
        ...

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        ...

    async def unsubscribe(self, channel: str) -> None:
        ...

    async def publish(self, channel: str, message: TransportMessage) -> None:
        """Send a message. Raises TransportError when not connected."""
        ...

    def on_status(self, callback: StatusCallback) -> Callable[[], None]:
        """Register for (connected, error) updates. Returns an unsubscribe callable."""
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class LocalMemoryStore(Protocol):
    """Local memory storage keyed by (user_id, scope)."""

    async def list_memories(self, user_id: str, scope: str) -> List[MemoryRecord]:
        ...

    async def insert_memory(self, record: MemoryRecord, user_id: str, scope: str) -> MemoryRecord:
        """Store a record pulled from the remote, remembering its remote id."""
        ...

    async def link_remote(self, local_id: str, remote_id: str) -> None:
        """Record that ``local_id`` now has a remote copy ``remote_id``."""
        ...

    async def get_sync_meta(self, key: str) -> Optional[str]:
        ...

    async def set_sync_meta(self, key: str, value: str) -> None:
        ...


@runtime_checkable
class RemoteMemoryStore(Protocol):
    """Remote memory API keyed by (user_id, scope)."""

    async def check_connection(self) -> bool:
        ...

    async def list_memories(self, user_id: str, scope: str) -> List[MemoryRecord]:
        ...

    async def add_memory(self, record: MemoryRecord, user_id: str, scope: str) -> Optional[str]:
        """Push a record. Returns the remote id when the API reports one."""
        ...


@runtime_checkable
class ActivityRecorder(Protocol):
    """Sink for collaboration activity (session lifecycle, operations)."""

    async def record(self, user_id: str, activity: str, detail: str) -> None:
        ...
