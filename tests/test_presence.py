"""Tests for PresenceRegistry and RoomRouter fan-out."""

import uuid

import pytest

from src.models.enums import PresenceStatus, UserRole
from src.modules.realtime.constants import conversation_room, monitor_room, user_room
from src.modules.realtime.presence import MembershipLookup, PresenceRegistry
from tests.conftest import make_connection


@pytest.fixture
def membership():
    """In-memory membership: one shared conversation between the first two users."""
    conversation_id = uuid.uuid4()
    members: dict[uuid.UUID, list[uuid.UUID]] = {}

    async def conversations_for_user(user_id):
        return members.get(user_id, [])

    async def peers_for_user(user_id):
        if user_id not in members:
            return set()
        return {uid for uid in members if uid != user_id}

    return conversation_id, members, MembershipLookup(conversations_for_user, peers_for_user)


@pytest.fixture
def users(people):
    return people.consultant, people.student, people.manager


class TestConnectionLifecycle:
    @pytest.mark.asyncio
    async def test_first_connection_announces_online_to_peers(self, users, membership):
        consultant, student, _ = users
        conversation_id, members, lookup = membership
        members[consultant.id] = [conversation_id]
        members[student.id] = [conversation_id]
        registry = PresenceRegistry(lookup=lookup)

        student_conn = make_connection(student)
        assert await registry.register_connection(student_conn) is True
        consultant_conn = make_connection(consultant)
        assert await registry.register_connection(consultant_conn) is True

        assert conversation_room(conversation_id) in consultant_conn.rooms
        assert user_room(consultant.id) in consultant_conn.rooms
        status = student_conn.websocket.events("user_status_changed")
        assert status[0]["data"]["user_id"] == str(consultant.id)
        assert status[0]["data"]["status"] == "online"

    @pytest.mark.asyncio
    async def test_second_device_does_not_reannounce(self, users, membership):
        consultant, student, _ = users
        conversation_id, members, lookup = membership
        members[consultant.id] = [conversation_id]
        members[student.id] = [conversation_id]
        registry = PresenceRegistry(lookup=lookup)
        student_conn = make_connection(student)
        await registry.register_connection(student_conn)
        await registry.register_connection(make_connection(consultant))
        student_conn.websocket.clear()

        assert await registry.register_connection(make_connection(consultant)) is False

        assert registry.live_connection_count(consultant.id) == 2
        assert student_conn.websocket.events("user_status_changed") == []

    @pytest.mark.asyncio
    async def test_offline_only_after_last_connection_closes(self, users, membership):
        consultant, student, _ = users
        conversation_id, members, lookup = membership
        members[consultant.id] = [conversation_id]
        members[student.id] = [conversation_id]
        registry = PresenceRegistry(lookup=lookup)
        student_conn = make_connection(student)
        await registry.register_connection(student_conn)
        laptop = make_connection(consultant)
        phone = make_connection(consultant)
        await registry.register_connection(laptop)
        await registry.register_connection(phone)
        student_conn.websocket.clear()

        assert await registry.unregister_connection(laptop.id) is False
        assert registry.is_online(consultant.id)
        assert await registry.unregister_connection(phone.id) is True

        assert not registry.is_online(consultant.id)
        assert registry.presence_of(consultant.id) == PresenceStatus.OFFLINE
        offline = student_conn.websocket.events("user_status_changed")
        assert offline[0]["data"]["status"] == "offline"
        assert "last_seen" in offline[0]["data"]
        assert registry.connections_in_room(conversation_room(conversation_id)) == [student_conn]

    @pytest.mark.asyncio
    async def test_unknown_connection_unregister_is_noop(self):
        registry = PresenceRegistry()
        assert await registry.unregister_connection("missing") is False

    @pytest.mark.asyncio
    async def test_lookup_failure_still_registers(self, users):
        consultant, _, _ = users

        async def broken(user_id):
            raise RuntimeError("database unavailable")

        registry = PresenceRegistry(lookup=MembershipLookup(broken, broken))
        connection = make_connection(consultant)

        assert await registry.register_connection(connection) is True
        assert registry.is_online(consultant.id)
        assert connection.rooms == {user_room(consultant.id)}


class TestPresence:
    @pytest.mark.asyncio
    async def test_update_presence_notifies_peers(self, users, membership):
        consultant, student, _ = users
        conversation_id, members, lookup = membership
        members[consultant.id] = [conversation_id]
        members[student.id] = [conversation_id]
        registry = PresenceRegistry(lookup=lookup)
        student_conn = make_connection(student)
        await registry.register_connection(student_conn)
        await registry.register_connection(make_connection(consultant))

        assert await registry.update_presence(consultant.id, PresenceStatus.BUSY) is True

        assert registry.presence_of(consultant.id) == PresenceStatus.BUSY
        changed = student_conn.websocket.events("user_presence_changed")
        assert changed[0]["data"] == {
            "user_id": str(consultant.id),
            "presence": "busy",
            "timestamp": changed[0]["data"]["timestamp"],
        }

    @pytest.mark.asyncio
    async def test_update_presence_of_offline_user_is_ignored(self, users):
        consultant, _, _ = users
        registry = PresenceRegistry()
        assert await registry.update_presence(consultant.id, PresenceStatus.AWAY) is False

    @pytest.mark.asyncio
    async def test_force_disconnect_closes_every_device(self, users):
        consultant, _, _ = users
        registry = PresenceRegistry()
        first = make_connection(consultant)
        second = make_connection(consultant)
        await registry.register_connection(first)
        await registry.register_connection(second)

        assert await registry.force_disconnect(consultant.id, "Account suspended") == 2

        assert not registry.is_online(consultant.id)
        for connection in (first, second):
            assert connection.websocket.events("force_disconnect")[0]["data"]["reason"] == "Account suspended"
            assert connection.websocket.closed_with == (1008, "Account suspended")

    @pytest.mark.asyncio
    async def test_stats(self, users):
        consultant, student, _ = users
        registry = PresenceRegistry()
        await registry.register_connection(make_connection(consultant))
        await registry.register_connection(make_connection(consultant))
        await registry.register_connection(make_connection(student))

        stats = registry.stats()

        assert stats["total_connections"] == 3
        assert stats["online_users"] == 2
        assert stats["rooms"] == 2

    @pytest.mark.asyncio
    async def test_cleanup_closes_everything(self, users):
        consultant, student, _ = users
        registry = PresenceRegistry()
        connections = [make_connection(consultant), make_connection(student)]
        for connection in connections:
            await registry.register_connection(connection)

        await registry.cleanup()

        assert registry.stats()["total_connections"] == 0
        assert not registry.is_online(student.id)
        assert [c.websocket.closed_with for c in connections] == [(1001, ""), (1001, "")]


class TestRoomRouter:
    @pytest.mark.asyncio
    async def test_conversation_emit_includes_monitor_room(self, users):
        consultant, student, manager = users
        registry = PresenceRegistry()
        conversation_id = uuid.uuid4()
        consultant_conn = make_connection(consultant)
        student_conn = make_connection(student)
        manager_conn = make_connection(manager)
        for connection in (consultant_conn, student_conn, manager_conn):
            await registry.register_connection(connection)
        registry.join_conversation(consultant_conn.id, conversation_id)
        registry.join_conversation(student_conn.id, conversation_id)
        registry.join_room(manager_conn.id, monitor_room(conversation_id))

        delivered = await registry.rooms.emit_to_conversation(conversation_id, "ping", {"n": 1})
        excluded = await registry.rooms.emit_to_conversation_except(
            conversation_id, consultant.id, "ping", {"n": 2}
        )

        assert delivered == 3
        assert excluded == 2
        assert [m["data"]["n"] for m in consultant_conn.websocket.events("ping")] == [1]
        assert [m["data"]["n"] for m in manager_conn.websocket.events("ping")] == [1, 2]

    @pytest.mark.asyncio
    async def test_broadcast_by_role(self, people):
        registry = PresenceRegistry()
        connections = {
            role: make_connection(user)
            for role, user in (
                (UserRole.CONSULTANT, people.consultant),
                (UserRole.STUDENT, people.student),
                (UserRole.MANAGER, people.manager),
            )
        }
        for connection in connections.values():
            await registry.register_connection(connection)

        assert await registry.rooms.broadcast("notice", {}, roles=["consultant"]) == 1
        assert await registry.rooms.broadcast("notice", {}) == 3
        assert len(connections[UserRole.CONSULTANT].websocket.events("notice")) == 2
        assert len(connections[UserRole.STUDENT].websocket.events("notice")) == 1

    @pytest.mark.asyncio
    async def test_dead_socket_is_skipped(self, users):
        consultant, student, _ = users
        registry = PresenceRegistry()
        alive = make_connection(consultant)
        dead = make_connection(student)
        await registry.register_connection(alive)
        await registry.register_connection(dead)
        await dead.websocket.close()

        assert await registry.rooms.emit_to_users([consultant.id, student.id], "ping", {}) == 1
        assert dead.websocket.events("ping") == []

    @pytest.mark.asyncio
    async def test_room_emit_and_online_members(self, users):
        consultant, student, manager = users
        registry = PresenceRegistry()
        conversation_id = uuid.uuid4()
        first_device = make_connection(consultant)
        second_device = make_connection(consultant)
        student_conn = make_connection(student)
        manager_conn = make_connection(manager)
        for connection in (first_device, second_device, student_conn, manager_conn):
            await registry.register_connection(connection)
            if connection is not manager_conn:
                registry.join_conversation(connection.id, conversation_id)

        delivered = await registry.rooms.emit_to_room(
            conversation_room(conversation_id), "ping", {}, exclude_user=student.id
        )

        assert delivered == 2
        assert student_conn.websocket.events("ping") == []
        online = registry.online_users_in_conversation(conversation_id)
        assert sorted(online, key=str) == sorted([consultant.id, student.id], key=str)
