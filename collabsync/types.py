"""
Shared types for collabsync.

All session, operation, event and memory dataclasses live here. They are the
vocabulary shared by the collaboration layer, the transports, the stores and
the reconciler, and they know how to turn themselves into the JSON payloads
that travel over a transport channel.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string (or pass a datetime through).

    Naive values are assumed to be UTC. Unparseable input yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime for a JSON payload."""
    return dt.isoformat() if dt else None


# === Enums ===


class OperationType(str, Enum):
    """Kind of text edit carried by a CollaborationOperation."""

    INSERT = "insert"
    DELETE = "delete"


class EventKind(str, Enum):
    """Every event that flows over the local bus or a transport channel."""

    CONNECTION = "connection"
    OPERATION = "operation"
    SESSION_CREATED = "session_created"
    SESSION_JOINED = "session_joined"
    SESSION_UPDATED = "session_updated"
    SESSION_LEFT = "session_left"
    SESSION_DELETED = "session_deleted"
    CONFLICT_DETECTED = "conflict_detected"


class ConnectionState(str, Enum):
    """Transport connectivity as seen by the collaboration layer."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SyncState(str, Enum):
    """Per-record classification computed on every reconciliation pass."""

    SYNCED = "synced"
    LOCAL_ONLY = "local_only"
    REMOTE_ONLY = "remote_only"
    CONFLICT = "conflict"
    FAILED = "failed"


# === Collaboration ===


@dataclass
class CollaborationUser:
    """A participant of a collaboration session."""

    id: str
    name: str
    color: str
    last_active: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "last_active": format_datetime(self.last_active),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollaborationUser":
        return cls(
            id=data["id"],
            name=data.get("name") or "Unknown User",
            color=data.get("color") or "#2196F3",
            last_active=parse_datetime(data.get("last_active")) or utc_now(),
        )


@dataclass
class CollaborationSession:
    """A named editing session scoped to one document.

    ``active_users`` is ordered by join time and never holds two entries with
    the same ``id``. A session with no active users is deleted.
    """

    id: str
    file_id: str
    file_name: str
    owner_id: str
    active_users: List[CollaborationUser] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    def has_user(self, user_id: str) -> bool:
        return any(u.id == user_id for u in self.active_users)

    def add_user(self, user: CollaborationUser) -> bool:
        """Add a participant, or refresh ``last_active`` if already present.

        Returns True when the user was newly added.
        """
        for existing in self.active_users:
            if existing.id == user.id:
                existing.last_active = user.last_active
                return False
        self.active_users.append(user)
        return True

    def remove_user(self, user_id: str) -> bool:
        before = len(self.active_users)
        self.active_users = [u for u in self.active_users if u.id != user_id]
        return len(self.active_users) != before

    @property
    def is_empty(self) -> bool:
        return not self.active_users

    def copy(self) -> "CollaborationSession":
        return replace(self, active_users=[replace(u) for u in self.active_users])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "file_name": self.file_name,
            "owner_id": self.owner_id,
            "active_users": [u.to_dict() for u in self.active_users],
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollaborationSession":
        session = cls(
            id=data["id"],
            file_id=data.get("file_id", "unknown"),
            file_name=data.get("file_name", "Unknown File"),
            owner_id=data.get("owner_id", ""),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
        )
        # add_user keeps the no-duplicate invariant even for malformed payloads
        for user in data.get("active_users", []):
            session.add_user(CollaborationUser.from_dict(user))
        return session


@dataclass
class CollaborationOperation:
    """A single insert/delete edit, attributed to the user who made it."""

    id: str
    session_id: str
    type: OperationType
    position: int
    text: str
    user_id: str
    user_name: str
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def end(self) -> int:
        return self.position + len(self.text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "type": self.type.value,
            "position": self.position,
            "text": self.text,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "timestamp": format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollaborationOperation":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            type=OperationType(data["type"]),
            position=int(data.get("position") or 0),
            text=data.get("text") or "",
            user_id=data["user_id"],
            user_name=data.get("user_name") or "Unknown User",
            timestamp=parse_datetime(data.get("timestamp")) or utc_now(),
        )


# === Event payloads ===


@dataclass
class ConnectionChange:
    """Payload of a ``connection`` event."""

    state: ConnectionState
    error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED


@dataclass
class SessionLeft:
    """Payload of a ``session_left`` event."""

    session_id: str
    user_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "user_id": self.user_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionLeft":
        return cls(session_id=data["session_id"], user_id=data["user_id"])


@dataclass
class SessionDeleted:
    """Payload of a ``session_deleted`` event."""

    session_id: str
    file_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "file_id": self.file_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionDeleted":
        return cls(session_id=data["session_id"], file_id=data.get("file_id"))


@dataclass
class EditConflict:
    """Two or more users edited overlapping text within a short time window."""

    id: str
    session_id: str
    file_id: Optional[str]
    start: int
    end: int
    operations: List[CollaborationOperation]
    severity: ConflictSeverity
    detected_at: datetime = field(default_factory=utc_now)

    @property
    def user_ids(self) -> List[str]:
        seen: List[str] = []
        for op in self.operations:
            if op.user_id not in seen:
                seen.append(op.user_id)
        return seen


@dataclass
class TransportMessage:
    """Envelope for everything sent over a transport channel."""

    event: EventKind
    sender_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event.value, "sender_id": self.sender_id, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransportMessage":
        return cls(
            event=EventKind(data["event"]),
            sender_id=data.get("sender_id", ""),
            payload=data.get("payload") or {},
        )


# === Memory records and sync ===


@dataclass
class MemoryRecord:
    """A memory as held by either the local or the remote store.

    Local records carry ``remote_id`` once they have a remote copy; remote
    records carry ``local_id`` when they were pushed from a local store.
    """

    id: str
    memory: str
    user_id: Optional[str] = None
    scope: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    remote_id: Optional[str] = None
    local_id: Optional[str] = None

    @property
    def content_key(self) -> str:
        """Normalized content used to decide whether two copies are equivalent."""
        return " ".join(self.memory.split())

    @property
    def last_modified(self) -> Optional[datetime]:
        return self.updated_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "memory": self.memory,
            "user_id": self.user_id,
            "scope": self.scope,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "type": self.type,
            "metadata": self.metadata,
            "remote_id": self.remote_id,
            "local_id": self.local_id,
        }


@dataclass
class SyncConflict:
    """A record present on both sides with diverging content. Never auto-resolved."""

    local: MemoryRecord
    remote: MemoryRecord

    @property
    def newer_side(self) -> Optional[str]:
        local_ts, remote_ts = self.local.last_modified, self.remote.last_modified
        if local_ts is None or remote_ts is None or local_ts == remote_ts:
            return None
        return "local" if local_ts > remote_ts else "remote"


@dataclass
class SyncStats:
    """Aggregate result of the last reconciliation pass.

    ``synced + local_only + remote_only + conflicts == total``. ``failed``
    overlays the records whose push/pull errored; those keep their
    classification.
    """

    total: int = 0
    synced: int = 0
    local_only: int = 0
    remote_only: int = 0
    conflicts: int = 0
    failed: int = 0
    pending: int = 0
    in_progress: bool = False
    last_synced_at: Optional[datetime] = None

    @property
    def sync_percentage(self) -> int:
        if self.total == 0:
            return 100
        return round(self.synced * 100 / self.total)

    def copy(self) -> "SyncStats":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "synced": self.synced,
            "local_only": self.local_only,
            "remote_only": self.remote_only,
            "conflicts": self.conflicts,
            "failed": self.failed,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "last_synced_at": format_datetime(self.last_synced_at),
            "sync_percentage": self.sync_percentage,
        }


@dataclass
class SyncResult:
    """Result of ``synchronize_memories``."""

    success: bool
    stats: SyncStats
    errors: List[str] = field(default_factory=list)
    conflicts: List[SyncConflict] = field(default_factory=list)
    remote_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "remote_available": self.remote_available,
            "stats": self.stats.to_dict(),
            "errors": list(self.errors),
            "conflicts": [
                {"local_id": c.local.id, "remote_id": c.remote.id, "newer": c.newer_side}
                for c in self.conflicts
            ],
        }
