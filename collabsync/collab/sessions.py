"""Collaboration session lifecycle and participant membership.

SessionManager owns the table of known sessions. Lifecycle changes are
published on the lobby channel so every participant's table converges, and
are emitted on the local EventBus for UI bindings.
"""

import logging
import uuid
from typing import Callable, Dict, List, Optional

from collabsync.collab.connection import ConnectionStateTracker
from collabsync.collab.events import EventBus
from collabsync.errors import (
    InitializationError,
    NotSessionOwnerError,
    SessionConnectionError,
    SessionNotFoundError,
    TransportError,
)
from collabsync.protocols import ActivityRecorder, Transport
from collabsync.types import (
    CollaborationSession,
    CollaborationUser,
    ConnectionChange,
    ConnectionState,
    EventKind,
    SessionDeleted,
    SessionLeft,
    TransportMessage,
    utc_now,
)
from collabsync.utils import user_color

logger = logging.getLogger(__name__)

LOBBY_CHANNEL = "collab:lobby"


class SessionManager:
    """Creates, joins, leaves and ends collaboration sessions.

    Args:
        transport: The realtime transport shared with the OperationBroadcaster.
        bus: Local event bus. A new one is created when omitted.
        activity: Optional recorder for session activity (best effort).
    """

    def __init__(
        self,
        transport: Transport,
        bus: Optional[EventBus] = None,
        activity: Optional[ActivityRecorder] = None,
    ):
        self.transport = transport
        self.bus = bus or EventBus()
        self.connection = ConnectionStateTracker(self.bus)
        self._activity = activity
        self._sessions: Dict[str, CollaborationSession] = {}
        self._user: Optional[CollaborationUser] = None
        self._unsubscribers: List[Callable[[], None]] = []

    # === Identity ===

    @property
    def user(self) -> Optional[CollaborationUser]:
        return self._user

    @property
    def user_id(self) -> Optional[str]:
        return self._user.id if self._user else None

    def _require_user(self) -> CollaborationUser:
        if self._user is None:
            raise InitializationError("User not initialized; call initialize() first")
        return self._user

    async def initialize(self, user_id: str, user_name: str) -> CollaborationUser:
        """Establish identity and connect the transport.

        Raises:
            InitializationError: bad identity or the transport cannot be reached.
        """
        if not user_id or not user_id.strip():
            raise InitializationError("User ID cannot be empty")

        # Re-initializing replaces the listeners from the previous call
        self._release_listeners()
        self._unsubscribers.append(self.transport.on_status(self.connection.update))
        self._unsubscribers.append(self.bus.on(EventKind.CONNECTION, self._on_connection_change))

        try:
            await self.transport.connect(user_id)
            await self.transport.subscribe(LOBBY_CHANNEL, self._handle_lobby_message)
        except TransportError as e:
            self._release_listeners()
            await self._close_transport()
            raise InitializationError(f"Could not reach collaboration transport: {e}") from e

        self._user = CollaborationUser(id=user_id, name=user_name or user_id, color=user_color(user_id))
        # Transports that report status lazily still count as connected once connect() returned
        await self.connection.update(True)
        logger.debug(f"Collaboration initialized for user {user_id}")
        return self._user

    # === Session lookup ===

    @property
    def sessions(self) -> List[CollaborationSession]:
        return list(self._sessions.values())

    def get_session(self, session_id: str) -> Optional[CollaborationSession]:
        return self._sessions.get(session_id)

    def get_active_sessions_for_file(self, file_id: str) -> List[CollaborationSession]:
        """Sessions currently editing ``file_id`` (who else is editing this file)."""
        return [s for s in self._sessions.values() if s.file_id == file_id and not s.is_empty]

    def is_member(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return bool(session and self._user and session.has_user(self._user.id))

    # === Lifecycle ===

    async def create_session(self, file_id: str, file_name: str) -> CollaborationSession:
        user = self._require_user()
        session = CollaborationSession(
            id=str(uuid.uuid4()),
            file_id=file_id,
            file_name=file_name,
            owner_id=user.id,
            active_users=[self._fresh_user()],
        )

        await self._publish(EventKind.SESSION_CREATED, session.to_dict())
        self._sessions[session.id] = session
        logger.info(f"Created collaboration session {session.id} for file {file_id}")

        await self.bus.emit(EventKind.SESSION_CREATED, session)
        await self.record_activity(
            "session created", f"User {user.name} created session for file {file_name} ({file_id})"
        )
        return session

    async def join_session(self, session_id: str) -> CollaborationSession:
        user = self._require_user()
        current = self._sessions.get(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)

        updated = current.copy()
        updated.add_user(self._fresh_user())

        await self._publish(EventKind.SESSION_JOINED, updated.to_dict())
        self._sessions[session_id] = updated

        await self.bus.emit(EventKind.SESSION_JOINED, updated)
        await self.record_activity("session joined", f"User {user.name} joined session {session_id}")
        return updated

    async def leave_session(self, session_id: str) -> Optional[CollaborationSession]:
        """Leave a session. Returns the remaining session, or None if it was deleted."""
        user = self._require_user()
        current = self._sessions.get(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)

        updated = current.copy()
        updated.remove_user(user.id)
        left = SessionLeft(session_id=session_id, user_id=user.id)

        await self._publish(EventKind.SESSION_LEFT, left.to_dict())

        # Peers have applied the leave; commit it locally even if the follow-up fails
        if updated.is_empty:
            del self._sessions[session_id]
            follow_up = SessionDeleted(session_id=session_id, file_id=current.file_id)
            follow_up_event = EventKind.SESSION_DELETED
        else:
            self._sessions[session_id] = updated
            follow_up = updated
            follow_up_event = EventKind.SESSION_UPDATED

        publish_error: Optional[SessionConnectionError] = None
        try:
            await self._publish(follow_up_event, follow_up.to_dict())
        except SessionConnectionError as e:
            logger.warning(f"Left session {session_id} but could not announce {follow_up_event.value}: {e}")
            publish_error = e

        await self.bus.emit(EventKind.SESSION_LEFT, left)
        await self.record_activity("session left", f"User {user.name} left session {session_id}")
        if updated.is_empty:
            logger.info(f"Session {session_id} deleted after last participant left")
        await self.bus.emit(follow_up_event, follow_up)

        if publish_error is not None:
            raise publish_error
        return None if updated.is_empty else updated

    async def end_session(self, session_id: str) -> None:
        """Delete a session for everyone. Only its owner may do this."""
        user = self._require_user()
        current = self._sessions.get(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)
        if current.owner_id != user.id:
            raise NotSessionOwnerError(session_id, user.id)

        deleted = SessionDeleted(session_id=session_id, file_id=current.file_id)
        await self._publish(EventKind.SESSION_DELETED, deleted.to_dict())
        del self._sessions[session_id]

        await self.bus.emit(EventKind.SESSION_DELETED, deleted)
        await self.record_activity("session ended", f"User {user.name} ended session {session_id}")

    async def cleanup(self) -> None:
        """Release the transport and forget all local state. Safe to call repeatedly."""
        self._release_listeners()

        await self._close_transport()

        self._sessions.clear()
        self._user = None
        self.connection.state = ConnectionState.DISCONNECTED
        self.connection.last_error = None

    # === Internals ===

    def _release_listeners(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except TransportError as e:
            logger.warning(f"Error closing collaboration transport: {e}")

    def _fresh_user(self) -> CollaborationUser:
        user = self._require_user()
        return CollaborationUser(id=user.id, name=user.name, color=user.color, last_active=utc_now())

    async def _publish(self, event: EventKind, payload: dict, channel: str = LOBBY_CHANNEL) -> None:
        message = TransportMessage(event=event, sender_id=self._require_user().id, payload=payload)
        try:
            await self.transport.publish(channel, message)
        except TransportError as e:
            raise SessionConnectionError(f"Could not publish {event.value}: {e}") from e

    async def record_activity(self, activity: str, detail: str) -> None:
        """Hand activity to the recorder. Failures are logged, never raised."""
        if self._activity is None or self._user is None:
            return
        try:
            await self._activity.record(self._user.id, activity, detail)
        except Exception as e:
            logger.warning(f"Failed to record collaboration activity '{activity}': {e}")

    async def _on_connection_change(self, change: ConnectionChange) -> None:
        """Re-announce memberships after the transport comes back."""
        if not change.connected or self._user is None:
            return
        for session in list(self._sessions.values()):
            if not session.has_user(self._user.id):
                continue
            try:
                await self._publish(EventKind.SESSION_JOINED, session.to_dict())
                logger.debug(f"Re-announced membership of session {session.id}")
            except SessionConnectionError as e:
                logger.warning(f"Could not rejoin session {session.id}: {e}")

    async def _handle_lobby_message(self, message: TransportMessage) -> None:
        """Apply a lifecycle message published by another participant."""
        if self._user is not None and message.sender_id == self._user.id:
            return

        try:
            if message.event == EventKind.SESSION_CREATED:
                session = CollaborationSession.from_dict(message.payload)
                self._sessions[session.id] = session
                await self.bus.emit(EventKind.SESSION_CREATED, session)

            elif message.event == EventKind.SESSION_JOINED:
                await self._apply_remote_join(message)

            elif message.event == EventKind.SESSION_UPDATED:
                session = CollaborationSession.from_dict(message.payload)
                self._sessions[session.id] = session
                await self.bus.emit(EventKind.SESSION_UPDATED, session)

            elif message.event == EventKind.SESSION_LEFT:
                await self._apply_remote_leave(SessionLeft.from_dict(message.payload))

            elif message.event == EventKind.SESSION_DELETED:
                deleted = SessionDeleted.from_dict(message.payload)
                if self._sessions.pop(deleted.session_id, None) is not None:
                    await self.bus.emit(EventKind.SESSION_DELETED, deleted)

            else:
                logger.debug(f"Ignoring {message.event.value} on lobby channel")
        except (KeyError, ValueError) as e:
            logger.warning(f"Malformed {message.event.value} message from {message.sender_id}: {e}")

    async def _apply_remote_join(self, message: TransportMessage) -> None:
        announced = CollaborationSession.from_dict(message.payload)
        session = self._sessions.get(announced.id)
        if session is None:
            self._sessions[announced.id] = announced
            session = announced
        else:
            joiner = next((u for u in announced.active_users if u.id == message.sender_id), None)
            if joiner is not None:
                session.add_user(joiner)
        await self.bus.emit(EventKind.SESSION_JOINED, session)

    async def _apply_remote_leave(self, left: SessionLeft) -> None:
        session = self._sessions.get(left.session_id)
        if session is None:
            return
        session.remove_user(left.user_id)
        await self.bus.emit(EventKind.SESSION_LEFT, left)
        if session.is_empty:
            del self._sessions[left.session_id]
            await self.bus.emit(
                EventKind.SESSION_DELETED,
                SessionDeleted(session_id=left.session_id, file_id=session.file_id),
            )
