"""Tests for TypingCoordinator expiry and fan-out."""

import asyncio
import uuid

import pytest
import pytest_asyncio

from src.modules.realtime.presence import PresenceRegistry
from tests.conftest import make_connection


@pytest_asyncio.fixture
async def room(people):
    """A registry with the consultant and student sharing one conversation room."""
    registry = PresenceRegistry(typing_timeout_seconds=0.1)
    conversation_id = uuid.uuid4()
    consultant_conn = make_connection(people.consultant)
    student_conn = make_connection(people.student)
    for connection in (consultant_conn, student_conn):
        await registry.register_connection(connection)
        registry.join_conversation(connection.id, conversation_id)
    yield registry, conversation_id, consultant_conn, student_conn
    registry.typing.clear()


@pytest.mark.asyncio
async def test_start_notifies_everyone_but_the_typist(room, people):
    registry, conversation_id, consultant_conn, student_conn = room

    await registry.typing.start(conversation_id, people.consultant.id, "Carl Consultant")

    assert registry.typing.is_typing(conversation_id, people.consultant.id)
    started = student_conn.websocket.events("user_typing_start")
    assert started[0]["data"]["user_name"] == "Carl Consultant"
    assert consultant_conn.websocket.events("user_typing_start") == []


@pytest.mark.asyncio
async def test_indicator_expires(room, people):
    registry, conversation_id, _, student_conn = room

    await registry.typing.start(conversation_id, people.consultant.id)
    await asyncio.sleep(0.25)

    assert not registry.typing.is_typing(conversation_id, people.consultant.id)
    assert registry.typing.active_conversation_count == 0
    assert len(student_conn.websocket.events("user_typing_stop")) == 1


@pytest.mark.asyncio
async def test_restart_replaces_previous_timer(room, people):
    registry, conversation_id, _, student_conn = room

    await registry.typing.start(conversation_id, people.consultant.id)
    await asyncio.sleep(0.06)
    await registry.typing.start(conversation_id, people.consultant.id)
    await asyncio.sleep(0.06)

    # The first timer would have fired by now
    assert registry.typing.is_typing(conversation_id, people.consultant.id)
    assert student_conn.websocket.events("user_typing_stop") == []

    await asyncio.sleep(0.2)
    assert len(student_conn.websocket.events("user_typing_stop")) == 1


@pytest.mark.asyncio
async def test_stop_without_start_emits_nothing(room, people):
    registry, conversation_id, _, student_conn = room

    assert await registry.typing.stop(conversation_id, people.consultant.id) is False
    assert student_conn.websocket.events("user_typing_stop") == []


@pytest.mark.asyncio
async def test_going_offline_clears_typing(room, people):
    registry, conversation_id, consultant_conn, student_conn = room
    await registry.typing.start(conversation_id, people.consultant.id)

    await registry.unregister_connection(consultant_conn.id)

    assert registry.typing.typing_users(conversation_id) == []
    assert len(student_conn.websocket.events("user_typing_stop")) == 1
