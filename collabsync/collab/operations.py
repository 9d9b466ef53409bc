"""Propagation and ingestion of insert/delete operations within a session.

Operations are applied in the order the transport delivers them. There is no
operational transform or CRDT merge: concurrent edits at overlapping
positions may diverge between participants. The ConflictDetector reports
such edits so a human can look at them.
"""

import logging
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Set

from collabsync.collab.conflicts import ConflictDetector
from collabsync.collab.sessions import SessionManager
from collabsync.errors import SessionConnectionError, TransportError
from collabsync.types import (
    CollaborationOperation,
    CollaborationSession,
    EventKind,
    OperationType,
    SessionDeleted,
    SessionLeft,
    TransportMessage,
)

logger = logging.getLogger(__name__)


def session_channel(session_id: str) -> str:
    return f"collab:session:{session_id}"


def apply_operation(text: str, operation: CollaborationOperation) -> str:
    """Apply one operation to a document string.

    Positions outside the document are clamped to its bounds. A delete
    removes ``len(operation.text)`` characters starting at the position.
    """
    pos = max(0, min(operation.position, len(text)))
    if operation.type == OperationType.INSERT:
        return text[:pos] + operation.text + text[pos:]
    return text[:pos] + text[pos + len(operation.text):]


def apply_operations(text: str, operations: Iterable[CollaborationOperation]) -> str:
    for operation in operations:
        text = apply_operation(text, operation)
    return text


class OperationBroadcaster:
    """Sends local operations and ingests remote ones for the sessions the
    local user belongs to.

    Channel subscriptions follow membership: the broadcaster listens to the
    SessionManager's bus and subscribes when the local user creates or joins a
    session, and unsubscribes when they leave or the session is deleted.

    Args:
        sessions: The SessionManager providing identity, membership and the transport.
        detector: Optional conflict detector; remote operations are checked against it.
    """

    def __init__(self, sessions: SessionManager, detector: Optional[ConflictDetector] = None):
        self._sessions = sessions
        self._transport = sessions.transport
        self._bus = sessions.bus
        self.detector = detector
        self._logs: Dict[str, List[CollaborationOperation]] = {}
        self._seen: Dict[str, Set[str]] = {}
        self._subscribed: Set[str] = set()
        self._unsubscribers: List[Callable[[], None]] = [
            self._bus.on(EventKind.SESSION_CREATED, self._on_membership_change),
            self._bus.on(EventKind.SESSION_JOINED, self._on_membership_change),
            self._bus.on(EventKind.SESSION_LEFT, self._on_session_left),
            self._bus.on(EventKind.SESSION_DELETED, self._on_session_deleted),
        ]

    # === Public API ===

    def get_operation_log(self, session_id: str) -> List[CollaborationOperation]:
        """Remote operations received for a session, in arrival order."""
        return list(self._logs.get(session_id, []))

    def is_subscribed(self, session_id: str) -> bool:
        return session_id in self._subscribed

    def on_operation(self, listener: Callable[[CollaborationOperation], None]) -> Callable[[], None]:
        """Register an editor binding for remote operations."""
        return self._bus.on(EventKind.OPERATION, listener)

    async def send_operation(
        self, session_id: str, op_type: str, position: int, text: str
    ) -> Optional[CollaborationOperation]:
        """Publish a local edit to the other participants.

        Returns the sent operation, or None when there is no active session
        (the user may type before the session handshake completes).

        Raises:
            ValueError: unknown operation type or negative position.
            SessionConnectionError: the transport rejected the publish.
        """
        op_type = OperationType(op_type)
        if position < 0:
            raise ValueError(f"Operation position must be >= 0, got {position}")

        user = self._sessions.user
        if user is None or not self._sessions.is_member(session_id):
            logger.warning(f"No active session {session_id}; {op_type.value} operation not sent")
            return None

        operation = CollaborationOperation(
            id=str(uuid.uuid4()),
            session_id=session_id,
            type=op_type,
            position=position,
            text=text,
            user_id=user.id,
            user_name=user.name,
        )
        message = TransportMessage(event=EventKind.OPERATION, sender_id=user.id, payload=operation.to_dict())
        try:
            await self._transport.publish(session_channel(session_id), message)
        except TransportError as e:
            raise SessionConnectionError(f"Could not send operation: {e}") from e

        if self.detector is not None:
            self.detector.remember(operation)
        await self._sessions.record_activity(
            "operation", f"User {user.name} performed {op_type.value} operation in session {session_id}"
        )
        return operation

    async def cleanup(self) -> None:
        """Unsubscribe from every session channel and drop all logs."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        for session_id in list(self._subscribed):
            await self._unsubscribe(session_id)
        self._logs.clear()
        self._seen.clear()
        if self.detector is not None:
            self.detector.clear()

    # === Ingestion ===

    async def _handle_message(self, message: TransportMessage) -> None:
        if message.event != EventKind.OPERATION:
            logger.debug(f"Ignoring {message.event.value} on operation channel")
            return

        try:
            operation = CollaborationOperation.from_dict(message.payload)
        except (KeyError, ValueError) as e:
            logger.warning(f"Malformed operation from {message.sender_id}: {e}")
            return

        # Echo suppression
        if operation.user_id == self._sessions.user_id:
            return

        seen = self._seen.setdefault(operation.session_id, set())
        if operation.id in seen:
            logger.debug(f"Dropping redelivered operation {operation.id}")
            return
        seen.add(operation.id)
        self._logs.setdefault(operation.session_id, []).append(operation)

        await self._bus.emit(EventKind.OPERATION, operation)

        if self.detector is not None:
            session = self._sessions.get_session(operation.session_id)
            conflict = self.detector.check(operation, session.file_id if session else None)
            if conflict is not None:
                await self._bus.emit(EventKind.CONFLICT_DETECTED, conflict)

    # === Membership tracking ===

    async def _on_membership_change(self, session: CollaborationSession) -> None:
        if session.id in self._subscribed or not self._sessions.is_member(session.id):
            return
        try:
            await self._transport.subscribe(session_channel(session.id), self._handle_message)
        except TransportError as e:
            logger.error(f"Could not subscribe to operations of session {session.id}: {e}")
            return
        self._subscribed.add(session.id)
        logger.debug(f"Listening for operations in session {session.id}")

    async def _on_session_left(self, left: SessionLeft) -> None:
        if left.user_id == self._sessions.user_id:
            await self._unsubscribe(left.session_id)

    async def _on_session_deleted(self, deleted: SessionDeleted) -> None:
        await self._unsubscribe(deleted.session_id)

    async def _unsubscribe(self, session_id: str) -> None:
        if session_id in self._subscribed:
            self._subscribed.discard(session_id)
            try:
                await self._transport.unsubscribe(session_channel(session_id))
            except TransportError as e:
                logger.warning(f"Error unsubscribing from session {session_id}: {e}")
        self._logs.pop(session_id, None)
        self._seen.pop(session_id, None)
        if self.detector is not None:
            self.detector.forget(session_id)
