"""Exception hierarchy for collabsync.

Session lifecycle errors propagate to the caller, who decides whether to
retry or notify the user. Reconciliation errors are collected into
``SyncResult.errors`` rather than raised.
"""

from typing import Optional


class CollabSyncError(Exception):
    """Base exception for collabsync."""
    pass


# === Collaboration ===


class CollaborationError(CollabSyncError):
    """Base exception for session and operation handling."""
    pass


class InitializationError(CollaborationError):
    """Identity or transport setup failed, or an operation ran before it succeeded."""
    pass


class SessionConnectionError(CollaborationError, ConnectionError):
    """The transport was unreachable during a session operation."""
    pass


class SessionNotFoundError(CollaborationError, LookupError):
    """The referenced session does not exist (anymore)."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class NotSessionOwnerError(CollaborationError):
    """Only the owner may end a session."""

    def __init__(self, session_id: str, user_id: str):
        super().__init__(f"User {user_id} does not own session {session_id}")
        self.session_id = session_id
        self.user_id = user_id


class TransportError(CollabSyncError):
    """Raised by transports when connect/publish/subscribe fails."""
    pass


# === Synchronization ===


class SyncError(CollabSyncError):
    """Base exception for memory synchronization."""
    pass


class RemoteMemoryError(SyncError):
    """The remote memory API rejected or failed a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncRecordError(SyncError):
    """A single record failed to push or pull. Counted, never fatal to the pass."""

    def __init__(self, record_id: str, direction: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to {direction} memory {record_id}{detail}")
        self.record_id = record_id
        self.direction = direction
        self.cause = cause
