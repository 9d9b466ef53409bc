"""Tests for SessionManager lifecycle and membership."""

from unittest.mock import AsyncMock

import pytest

from collabsync.collab.sessions import LOBBY_CHANNEL, SessionManager
from collabsync.errors import (
    InitializationError,
    NotSessionOwnerError,
    SessionConnectionError,
    SessionNotFoundError,
    TransportError,
)
from collabsync.transport.memory import InMemoryTransport
from collabsync.types import ConnectionState, EventKind
from collabsync.utils import USER_COLORS


def _ids(session):
    return [u.id for u in session.active_users]


# ============================================================================
# Initialization
# ============================================================================


class TestInitialize:
    @pytest.mark.asyncio
    async def test_initialize_sets_identity_and_connects(self, hub):
        manager = SessionManager(InMemoryTransport(hub))

        user = await manager.initialize("alice", "Alice")

        assert user.id == "alice"
        assert user.name == "Alice"
        assert user.color in USER_COLORS
        assert manager.connection.state == ConnectionState.CONNECTED
        assert hub.subscriber_count(LOBBY_CHANNEL) == 1

    @pytest.mark.asyncio
    async def test_empty_user_id_rejected(self, hub):
        manager = SessionManager(InMemoryTransport(hub))

        with pytest.raises(InitializationError):
            await manager.initialize("  ", "Nobody")

    @pytest.mark.asyncio
    async def test_unreachable_transport_raises_initialization_error(self, hub):
        hub.accepting = False
        manager = SessionManager(InMemoryTransport(hub))

        with pytest.raises(InitializationError, match="Could not reach"):
            await manager.initialize("alice", "Alice")

        assert manager.user is None
        assert manager.bus.listener_count(EventKind.CONNECTION) == 0

    @pytest.mark.asyncio
    async def test_failed_lobby_subscribe_closes_transport(self, hub):
        transport = InMemoryTransport(hub)
        transport.subscribe = AsyncMock(side_effect=TransportError("lobby unavailable"))
        manager = SessionManager(transport)

        with pytest.raises(InitializationError):
            await manager.initialize("alice", "Alice")

        assert transport.connected is False
        assert manager.bus.listener_count(EventKind.CONNECTION) == 0

    @pytest.mark.asyncio
    async def test_reinitialize_does_not_duplicate_listeners(self, hub):
        manager = SessionManager(InMemoryTransport(hub))
        await manager.initialize("alice", "Alice")
        await manager.initialize("alice", "Alice")
        session = await manager.create_session("file-1", "notes.txt")

        await hub.set_online(False)
        await hub.set_online(True)

        rejoins = [m for _, m in hub.history if m.event == EventKind.SESSION_JOINED]
        assert [m.payload["id"] for m in rejoins] == [session.id]
        assert manager.bus.listener_count(EventKind.CONNECTION) == 1

    @pytest.mark.asyncio
    async def test_create_before_initialize_raises(self, hub):
        manager = SessionManager(InMemoryTransport(hub))

        with pytest.raises(InitializationError):
            await manager.create_session("file-1", "notes.txt")


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_session_makes_caller_owner_and_sole_user(self, make_participant):
        alice, _ = await make_participant("alice")
        bob, _ = await make_participant("bob")

        session = await alice.create_session("file-1", "notes.txt")

        assert _ids(session) == ["alice"]
        assert session.owner_id == "alice"
        assert alice.get_session(session.id) is session
        # Other participants learn about it over the lobby channel
        seen = bob.get_session(session.id)
        assert seen is not None
        assert seen.file_name == "notes.txt"

    @pytest.mark.asyncio
    async def test_own_lobby_messages_are_not_applied_twice(self, make_participant):
        alice, _ = await make_participant("alice")
        created = []
        alice.bus.on(EventKind.SESSION_CREATED, created.append)

        await alice.create_session("file-1", "notes.txt")

        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_repeated_join_never_duplicates_users(self, make_participant):
        alice, _ = await make_participant("alice")
        bob, _ = await make_participant("bob")
        session = await alice.create_session("file-1", "notes.txt")

        await bob.join_session(session.id)
        first_seen = bob.get_session(session.id).active_users[-1].last_active
        joined = await bob.join_session(session.id)

        assert _ids(joined) == ["alice", "bob"]
        assert joined.active_users[-1].last_active >= first_seen
        assert _ids(alice.get_session(session.id)) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_join_unknown_session(self, make_participant):
        alice, _ = await make_participant("alice")

        with pytest.raises(SessionNotFoundError) as exc_info:
            await alice.join_session("missing")

        assert isinstance(exc_info.value, LookupError)
        assert exc_info.value.session_id == "missing"

    @pytest.mark.asyncio
    async def test_last_participant_leaving_deletes_session(self, make_participant):
        alice, _ = await make_participant("alice")
        bob, _ = await make_participant("bob")
        session = await alice.create_session("file-1", "notes.txt")
        deleted_local, deleted_remote = [], []
        alice.bus.on(EventKind.SESSION_DELETED, deleted_local.append)
        bob.bus.on(EventKind.SESSION_DELETED, deleted_remote.append)

        result = await alice.leave_session(session.id)

        assert result is None
        assert alice.get_session(session.id) is None
        assert bob.get_session(session.id) is None
        assert [d.session_id for d in deleted_local] == [session.id]
        assert [d.session_id for d in deleted_remote] == [session.id]

    @pytest.mark.asyncio
    async def test_non_last_leave_updates_session(self, make_participant):
        alice, _ = await make_participant("alice")
        bob, _ = await make_participant("bob")
        session = await alice.create_session("file-1", "notes.txt")
        await bob.join_session(session.id)
        updated = []
        bob.bus.on(EventKind.SESSION_UPDATED, updated.append)

        remaining = await bob.leave_session(session.id)

        assert _ids(remaining) == ["alice"]
        assert _ids(updated[0]) == ["alice"]
        assert _ids(alice.get_session(session.id)) == ["alice"]
        assert not bob.is_member(session.id)

    @pytest.mark.asyncio
    async def test_leave_unknown_session(self, make_participant):
        alice, _ = await make_participant("alice")

        with pytest.raises(SessionNotFoundError):
            await alice.leave_session("missing")

    @pytest.mark.asyncio
    async def test_only_owner_can_end_session(self, make_participant):
        alice, _ = await make_participant("alice")
        bob, _ = await make_participant("bob")
        session = await alice.create_session("file-1", "notes.txt")
        await bob.join_session(session.id)

        with pytest.raises(NotSessionOwnerError):
            await bob.end_session(session.id)

        await alice.end_session(session.id)

        assert alice.get_session(session.id) is None
        assert bob.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_sessions_for_file(self, make_participant):
        alice, _ = await make_participant("alice")
        first = await alice.create_session("file-1", "notes.txt")
        second = await alice.create_session("file-1", "notes.txt")
        await alice.create_session("file-2", "todo.txt")

        found = alice.get_active_sessions_for_file("file-1")

        assert {s.id for s in found} == {first.id, second.id}
        assert alice.get_active_sessions_for_file("file-3") == []
        assert len(alice.sessions) == 3


# ============================================================================
# Transport failures and reconnection
# ============================================================================


class TestTransportFailures:
    @pytest.mark.asyncio
    async def test_publish_failure_raises_connection_error_without_mutation(self, hub, make_participant):
        alice, _ = await make_participant("alice")
        hub.online = False

        with pytest.raises(SessionConnectionError) as exc_info:
            await alice.create_session("file-1", "notes.txt")

        assert isinstance(exc_info.value, ConnectionError)
        assert alice.sessions == []

    @pytest.mark.asyncio
    async def test_failed_leave_keeps_membership(self, hub, make_participant):
        alice, _ = await make_participant("alice")
        session = await alice.create_session("file-1", "notes.txt")
        hub.online = False

        with pytest.raises(SessionConnectionError):
            await alice.leave_session(session.id)

        assert alice.is_member(session.id)

    @pytest.mark.asyncio
    async def test_leave_commits_locally_when_follow_up_publish_fails(self, make_participant):
        alice, _ = await make_participant("alice")
        bob, _ = await make_participant("bob")
        session = await alice.create_session("file-1", "notes.txt")
        await bob.join_session(session.id)
        real_publish = alice.transport.publish

        async def publish_without_updates(channel, message):
            if message.event == EventKind.SESSION_UPDATED:
                raise TransportError("dropped")
            await real_publish(channel, message)

        alice.transport.publish = publish_without_updates

        with pytest.raises(SessionConnectionError):
            await alice.leave_session(session.id)

        assert not alice.is_member(session.id)
        assert _ids(alice.get_session(session.id)) == ["bob"]
        assert _ids(bob.get_session(session.id)) == ["bob"]

    @pytest.mark.asyncio
    async def test_reconnect_reannounces_membership(self, hub, make_participant):
        alice, _ = await make_participant("alice")
        session = await alice.create_session("file-1", "notes.txt")

        await hub.set_online(False, "network down")
        assert alice.connection.status_message == "Reconnecting: network down"

        await hub.set_online(True)

        channel, message = hub.history[-1]
        assert alice.connection.is_connected
        assert channel == LOBBY_CHANNEL
        assert message.event == EventKind.SESSION_JOINED
        assert message.sender_id == "alice"
        assert message.payload["id"] == session.id

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, hub, make_participant):
        alice, _ = await make_participant("alice")
        await alice.create_session("file-1", "notes.txt")

        await alice.cleanup()
        await alice.cleanup()

        assert alice.sessions == []
        assert alice.user is None
        assert alice.connection.state == ConnectionState.DISCONNECTED
        assert hub.subscriber_count(LOBBY_CHANNEL) == 0


# ============================================================================
# Activity recording
# ============================================================================


class TestActivity:
    @pytest.mark.asyncio
    async def test_lifecycle_is_recorded(self, make_participant):
        recorder = AsyncMock()
        alice, _ = await make_participant("alice", activity=recorder)

        session = await alice.create_session("file-1", "notes.txt")
        await alice.leave_session(session.id)

        activities = [call.args[1] for call in recorder.record.await_args_list]
        assert activities == ["session created", "session left"]
        assert recorder.record.await_args_list[0].args[0] == "alice"

    @pytest.mark.asyncio
    async def test_recorder_failure_does_not_fail_operation(self, make_participant):
        recorder = AsyncMock()
        recorder.record.side_effect = RuntimeError("memory API down")
        alice, _ = await make_participant("alice", activity=recorder)

        session = await alice.create_session("file-1", "notes.txt")

        assert alice.is_member(session.id)
