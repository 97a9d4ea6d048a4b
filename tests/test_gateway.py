"""Tests for EventGateway dispatch, error mapping and the socket event handlers."""

import json
import uuid

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from src.exceptions import ForbiddenException
from src.models.enums import NotificationType
from src.models.office import Office
from src.modules.conversation.schemas import ConversationCreate
from src.modules.conversation.service import ConversationService
from src.modules.notification.service import NotificationService
from src.modules.realtime.constants import conversation_room, monitor_room
from src.modules.realtime.gateway import EventGateway
from src.modules.realtime.rate_limit import ConnectionRateLimiter
from src.modules.realtime.schemas import ConversationRefPayload, EmptyPayload


@pytest.fixture
def gateway(registry, session_factory):
    return EventGateway(registry, session_factory=session_factory)


@pytest_asyncio.fixture
async def conversation(db, people):
    view = await ConversationService(db).create_conversation(
        people.consultant.id, ConversationCreate(participants=[people.student.id])
    )
    await db.commit()
    return view


@pytest_asyncio.fixture
async def pair(connect, people, conversation):
    """Consultant and student connected; both auto-joined to the conversation room."""
    return await connect(people.consultant), await connect(people.student)


def _error(connection) -> dict:
    return connection.websocket.events("error")[-1]["data"]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_registers_every_inbound_event(self, gateway):
        assert set(gateway.events) >= {
            "send_message",
            "edit_message",
            "delete_message",
            "mark_message_read",
            "join_conversation",
            "leave_conversation",
            "create_conversation",
            "typing_start",
            "typing_stop",
            "update_presence",
            "get_online_users",
            "file_upload_start",
            "file_upload_progress",
            "file_upload_complete",
            "mark_notification_read",
            "get_unread_count",
            "monitor_conversation",
            "broadcast_announcement",
        }

    @pytest.mark.asyncio
    async def test_unknown_event(self, gateway, connect, people):
        connection = await connect(people.student)

        assert await gateway.dispatch(connection, "self_destruct", {}) is False

        error = _error(connection)
        assert error["success"] is False
        assert error["error"]["type"] == "UNKNOWN_EVENT"
        assert error["error"]["code"] == 400
        assert error["error"]["event"] == "self_destruct"

    @pytest.mark.asyncio
    async def test_admin_events_are_role_gated(self, gateway, connect, people):
        connection = await connect(people.student)

        await gateway.dispatch(connection, "broadcast_announcement", {"message": "hi"})

        assert _error(connection)["error"]["code"] == 403

    @pytest.mark.asyncio
    async def test_payload_validation(self, gateway, pair, conversation):
        consultant_conn, _ = pair

        await gateway.dispatch(consultant_conn, "send_message", {"conversation_id": str(conversation.id)})

        error = _error(consultant_conn)["error"]
        assert error["type"] == "VALIDATION_ERROR"
        assert error["code"] == 422
        assert error["details"][0]["field"] == "content"

    @pytest.mark.asyncio
    async def test_malformed_frames(self, gateway, connect, people):
        connection = await connect(people.student)

        assert await gateway.handle_text(connection, "{not json") is False
        assert await gateway.handle_text(connection, json.dumps({"data": {}})) is False
        assert await gateway.handle_frame(connection, {"type": "websocket.receive", "bytes": b"\x00"}) is False

        errors = connection.websocket.events("error")
        assert errors[0]["data"]["error"]["message"] == "Frame is not valid JSON"
        assert errors[1]["data"]["error"]["message"] == "Malformed event envelope"
        assert errors[2]["data"]["error"]["message"] == "Binary frames are not supported"

    @pytest.mark.asyncio
    async def test_failed_handler_rolls_back_and_sends_no_ack(self, gateway, connect, people, db):
        connection = await connect(people.student)

        async def ghost(ctx, payload):
            ctx.db.add(Office(name="Ghost office"))
            await ctx.db.flush()
            ctx.ack("ghost_done", {})
            raise ForbiddenException("Not today")

        gateway.register("ghost", EmptyPayload, ghost)
        await gateway.dispatch(connection, "ghost", {})

        count = await db.scalar(select(func.count()).select_from(Office).where(Office.name == "Ghost office"))
        assert count == 0
        assert connection.websocket.events("ghost_done") == []
        assert _error(connection)["error"]["message"] == "Not today"

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_masked(self, gateway, connect, people):
        connection = await connect(people.student)

        async def explode(ctx, payload):
            raise RuntimeError("secret stack detail")

        gateway.register("explode", EmptyPayload, explode)
        await gateway.dispatch(connection, "explode", {})

        error = _error(connection)["error"]
        assert error == {
            "message": "An unexpected error occurred.",
            "code": 500,
            "type": "INTERNAL_ERROR",
            "event": "explode",
        }
        # The connection keeps working
        assert await gateway.dispatch(connection, "update_presence", {"status": "away"}) is True

    @pytest.mark.asyncio
    async def test_rate_limit_per_connection(self, registry, session_factory, connect, people):
        gateway = EventGateway(
            registry, session_factory=session_factory, rate_limiter=ConnectionRateLimiter("2/minute")
        )
        connection = await connect(people.student)
        other_device = await connect(people.student)

        results = [
            await gateway.dispatch(connection, "update_presence", {"status": "online"}) for _ in range(3)
        ]

        assert results == [True, True, False]
        assert _error(connection)["error"]["type"] == "RATE_LIMITED"
        assert await gateway.dispatch(other_device, "update_presence", {"status": "online"}) is True

        gateway.forget(connection)
        assert await gateway.dispatch(connection, "update_presence", {"status": "online"}) is True


class TestMessageEvents:
    @pytest.mark.asyncio
    async def test_send_message_broadcasts_before_ack(self, gateway, pair, conversation, connect, people):
        consultant_conn, student_conn = pair
        outsider = await connect(people.second_student)

        ok = await gateway.dispatch(
            consultant_conn,
            "send_message",
            {"conversation_id": str(conversation.id), "content": "Your I-20 is ready"},
        )

        assert ok is True
        assert consultant_conn.websocket.names()[-2:] == ["message_received", "message_sent"]
        ack = consultant_conn.websocket.events("message_sent")[0]["data"]
        assert ack["success"] is True
        assert ack["message"]["content"] == "Your I-20 is ready"
        assert "timestamp" in ack
        received = student_conn.websocket.events("message_received")[0]["data"]
        assert received["message"]["id"] == ack["message"]["id"]
        assert outsider.websocket.events("message_received") == []

    @pytest.mark.asyncio
    async def test_outsider_cannot_send(self, gateway, connect, people, conversation, pair):
        _, student_conn = pair
        outsider = await connect(people.second_student)

        await gateway.dispatch(
            outsider, "send_message", {"conversation_id": str(conversation.id), "content": "hi"}
        )

        assert _error(outsider)["error"]["type"] == "NOT_FOUND"
        assert student_conn.websocket.events("message_received") == []

    @pytest.mark.asyncio
    async def test_edit_delete_and_read(self, gateway, pair, conversation):
        consultant_conn, student_conn = pair
        await gateway.dispatch(
            consultant_conn, "send_message", {"conversation_id": str(conversation.id), "content": "helo"}
        )
        message_id = consultant_conn.websocket.events("message_sent")[0]["data"]["message"]["id"]

        await gateway.dispatch(consultant_conn, "edit_message", {"message_id": message_id, "content": "hello"})
        await gateway.dispatch(student_conn, "mark_message_read", {"message_id": message_id})
        await gateway.dispatch(consultant_conn, "delete_message", {"message_id": message_id})

        assert consultant_conn.websocket.events("message_edited")[0]["data"]["message"]["is_edited"] is True
        assert student_conn.websocket.events("message_updated")[0]["data"]["message"]["content"] == "hello"
        assert student_conn.websocket.events("message_read_confirmed")[0]["data"]["read_at"] is not None
        assert consultant_conn.websocket.events("message_read")[0]["data"]["user_id"] == str(
            student_conn.user_id
        )
        assert student_conn.websocket.events("message_removed")[0]["data"]["message_id"] == message_id


class TestConversationEvents:
    @pytest.mark.asyncio
    async def test_join_and_leave(self, gateway, pair, conversation, registry):
        consultant_conn, student_conn = pair
        room = conversation_room(conversation.id)

        await gateway.dispatch(student_conn, "leave_conversation", {"conversation_id": str(conversation.id)})
        assert room not in student_conn.rooms
        assert consultant_conn.websocket.events("user_left_conversation")[0]["data"]["user_id"] == str(
            student_conn.user_id
        )

        await gateway.dispatch(student_conn, "join_conversation", {"conversation_id": str(conversation.id)})
        assert room in student_conn.rooms
        assert student_conn.websocket.events("conversation_joined")[0]["data"]["conversation_id"] == str(
            conversation.id
        )
        assert len(consultant_conn.websocket.events("user_joined_conversation")) == 1

    @pytest.mark.asyncio
    async def test_room_join_waits_for_commit(self, gateway, pair, conversation, registry):
        consultant_conn, student_conn = pair
        room = conversation_room(conversation.id)
        registry.leave_conversation(student_conn.id, conversation.id)
        consultant_conn.websocket.clear()

        async def join_then_fail(ctx, payload):
            await gateway._join_conversation(ctx, payload)
            raise ForbiddenException("Join revoked")

        gateway.register("join_then_fail", ConversationRefPayload, join_then_fail)
        await gateway.dispatch(student_conn, "join_then_fail", {"conversation_id": str(conversation.id)})

        assert room not in student_conn.rooms
        assert student_conn.websocket.events("conversation_joined") == []
        assert consultant_conn.websocket.events("user_joined_conversation") == []

    @pytest.mark.asyncio
    async def test_join_requires_membership(self, gateway, connect, people, conversation):
        outsider = await connect(people.second_student)

        await gateway.dispatch(outsider, "join_conversation", {"conversation_id": str(conversation.id)})

        assert _error(outsider)["error"]["code"] == 404
        assert conversation_room(conversation.id) not in outsider.rooms

    @pytest.mark.asyncio
    async def test_create_conversation(self, gateway, connect, people):
        manager_conn = await connect(people.manager)
        receptionist_conn = await connect(people.receptionist)

        await gateway.dispatch(
            manager_conn,
            "create_conversation",
            {
                "participants": [str(people.receptionist.id)],
                "type": "direct",
                "purpose": "manager_receptionist",
            },
        )

        ack = manager_conn.websocket.events("conversation_created")
        # Broadcast to participants first, then the acknowledgement
        assert ack[-1]["data"]["success"] is True
        conversation_id = uuid.UUID(ack[-1]["data"]["conversation"]["id"])
        assert conversation_room(conversation_id) in receptionist_conn.rooms
        assert receptionist_conn.websocket.events("conversation_created")

    @pytest.mark.asyncio
    async def test_typing_indicator(self, gateway, pair, conversation):
        consultant_conn, student_conn = pair

        await gateway.dispatch(student_conn, "typing_start", {"conversation_id": str(conversation.id)})
        await gateway.dispatch(student_conn, "typing_stop", {"conversation_id": str(conversation.id)})

        assert consultant_conn.websocket.names()[-2:] == ["user_typing_start", "user_typing_stop"]
        assert student_conn.websocket.events("user_typing_start") == []


class TestPresenceEvents:
    @pytest.mark.asyncio
    async def test_online_users(self, gateway, pair, conversation):
        consultant_conn, student_conn = pair
        await gateway.dispatch(consultant_conn, "update_presence", {"status": "busy"})

        await gateway.dispatch(student_conn, "get_online_users", {"conversation_id": str(conversation.id)})
        await gateway.dispatch(student_conn, "get_online_users", {})

        lists = student_conn.websocket.events("online_users_list")
        expected = [{"user_id": str(consultant_conn.user_id), "presence": "busy"}]
        assert lists[0]["data"]["online_users"] == expected
        assert lists[1]["data"]["online_users"] == expected
        assert consultant_conn.websocket.events("presence_updated")[0]["data"]["presence"] == "busy"

    @pytest.mark.asyncio
    async def test_invalid_presence_status(self, gateway, connect, people):
        connection = await connect(people.student)

        await gateway.dispatch(connection, "update_presence", {"status": "offline"})

        assert _error(connection)["error"]["code"] == 422


class TestUploadsCallsAndNotifications:
    @pytest.mark.asyncio
    async def test_file_upload_lifecycle(self, gateway, pair, conversation):
        consultant_conn, student_conn = pair
        cid = str(conversation.id)

        await gateway.dispatch(
            student_conn, "file_upload_start", {"conversation_id": cid, "file_name": "sop.pdf", "file_size": 1024}
        )
        upload_id = student_conn.websocket.events("file_upload_initiated")[0]["data"]["upload_id"]
        await gateway.dispatch(
            student_conn, "file_upload_progress", {"conversation_id": cid, "upload_id": upload_id, "progress": 50}
        )
        await gateway.dispatch(
            student_conn,
            "file_upload_complete",
            {
                "conversation_id": cid,
                "upload_id": upload_id,
                "file_url": "https://files.example.com/sop.pdf",
                "file_name": "sop.pdf",
                "mime_type": "application/pdf",
            },
        )

        assert upload_id.startswith("upload_")
        assert consultant_conn.websocket.events("file_upload_started")[0]["data"]["file_name"] == "sop.pdf"
        assert consultant_conn.websocket.events("file_upload_progress_update")[0]["data"]["progress"] == 50
        success = student_conn.websocket.events("file_upload_success")[0]["data"]
        assert success["message"]["type"] == "file"
        assert success["message"]["content"] == "File shared"
        assert success["message"]["metadata"] == {"upload_id": upload_id}
        assert consultant_conn.websocket.events("file_upload_completed")[0]["data"]["upload_id"] == upload_id
        assert student_conn.websocket.events("file_upload_started") == []

    @pytest.mark.asyncio
    async def test_video_call_and_screen_share(self, gateway, pair, conversation):
        consultant_conn, student_conn = pair
        cid = str(conversation.id)

        await gateway.dispatch(consultant_conn, "start_video_call", {"conversation_id": cid, "call_type": "voice"})
        await gateway.dispatch(consultant_conn, "screen_share_start", {"conversation_id": cid})

        ack = consultant_conn.websocket.events("call_initiated")[0]["data"]
        incoming = student_conn.websocket.events("incoming_call")[0]["data"]
        assert ack["call_type"] == "video"
        assert incoming["call_id"] == ack["call_id"]
        assert incoming["caller_name"] == "Carl Consultant"
        assert student_conn.websocket.events("screen_share_started")
        assert consultant_conn.websocket.events("screen_share_initiated")

    @pytest.mark.asyncio
    async def test_notification_read_and_unread_counts(self, gateway, pair, conversation, db, people):
        consultant_conn, student_conn = pair
        notification = await NotificationService(db).create_notification(
            people.student.id, NotificationType.IN_APP, "Visa interview booked"
        )
        await db.commit()
        await gateway.dispatch(
            consultant_conn, "send_message", {"conversation_id": str(conversation.id), "content": "hi"}
        )

        await gateway.dispatch(student_conn, "get_unread_count", {})
        await gateway.dispatch(student_conn, "mark_notification_read", {"notification_id": str(notification.id)})
        await gateway.dispatch(student_conn, "get_unread_count", {})

        before, after = [e["data"] for e in student_conn.websocket.events("unread_count_update")]
        assert before["total_unread"] == 1
        assert before["conversation_counts"] == {str(conversation.id): 1}
        assert before["unread_notifications"] == 1
        assert after["unread_notifications"] == 0
        assert student_conn.websocket.events("notification_read_confirmed")


class TestAdminEvents:
    @pytest.mark.asyncio
    async def test_manager_monitors_office_conversation(self, gateway, pair, conversation, connect, people):
        consultant_conn, _ = pair
        manager_conn = await connect(people.manager)
        cid = str(conversation.id)

        await gateway.dispatch(manager_conn, "monitor_conversation", {"conversation_id": cid})
        assert monitor_room(conversation.id) in manager_conn.rooms
        await gateway.dispatch(consultant_conn, "send_message", {"conversation_id": cid, "content": "hi"})
        assert manager_conn.websocket.events("message_received")

        await gateway.dispatch(manager_conn, "monitor_conversation", {"conversation_id": cid, "action": "stop"})
        assert monitor_room(conversation.id) not in manager_conn.rooms
        assert manager_conn.websocket.events("monitoring_stopped")

    @pytest.mark.asyncio
    async def test_manager_of_other_office_cannot_monitor(self, gateway, conversation, connect, people):
        manager_conn = await connect(people.other_manager)

        await gateway.dispatch(manager_conn, "monitor_conversation", {"conversation_id": str(conversation.id)})

        assert _error(manager_conn)["error"]["code"] == 403
        assert monitor_room(conversation.id) not in manager_conn.rooms

    @pytest.mark.asyncio
    async def test_broadcast_announcement_to_role(self, gateway, pair, connect, people):
        consultant_conn, student_conn = pair
        admin_conn = await connect(people.super_admin)

        await gateway.dispatch(
            admin_conn,
            "broadcast_announcement",
            {"message": "Office closed Friday", "target": "consultant", "urgent": True},
        )

        ack = admin_conn.websocket.events("announcement_sent")[0]["data"]
        announcement = consultant_conn.websocket.events("system_announcement")[0]["data"]
        assert announcement["id"] == ack["announcement"]["id"]
        assert announcement["urgent"] is True
        assert announcement["sender"]["role"] == "super_admin"
        assert student_conn.websocket.events("system_announcement") == []
