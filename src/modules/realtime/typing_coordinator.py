"""TypingCoordinator — ephemeral per-conversation typing state with auto-expiry."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from src.modules.realtime.constants import EVENT_USER_TYPING_START, EVENT_USER_TYPING_STOP
from src.modules.realtime.rooms import RoomRouter

logger = logging.getLogger(__name__)


@dataclass
class _TypingEntry:
    timer: asyncio.TimerHandle
    user_name: str | None = None


class TypingCoordinator:
    """Tracks who is typing in each conversation.

    Each ``start`` schedules an expiry that stops the indicator unless a newer
    ``start`` for the same user replaced it first. Empty conversations are
    removed from the map as soon as their last typist stops.
    """

    def __init__(self, rooms: RoomRouter, timeout_seconds: float = 3.0) -> None:
        self.rooms = rooms
        self.timeout_seconds = timeout_seconds
        self._typing: dict[uuid.UUID, dict[uuid.UUID, _TypingEntry]] = {}
        self._expiry_tasks: set[asyncio.Task] = set()

    def _payload(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, user_name: str | None
    ) -> dict:
        return {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "user_name": user_name,
            "timestamp": datetime.now(UTC),
        }

    async def start(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, user_name: str | None = None
    ) -> None:
        loop = asyncio.get_running_loop()
        bucket = self._typing.setdefault(conversation_id, {})
        previous = bucket.get(user_id)
        if previous is not None:
            previous.timer.cancel()

        timer = loop.call_later(self.timeout_seconds, self._expire, conversation_id, user_id)
        bucket[user_id] = _TypingEntry(timer=timer, user_name=user_name)

        await self.rooms.emit_to_conversation_except(
            conversation_id,
            user_id,
            EVENT_USER_TYPING_START,
            self._payload(conversation_id, user_id, user_name),
        )

    async def stop(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Clear the indicator. Returns False (and emits nothing) if the user was not typing."""
        bucket = self._typing.get(conversation_id)
        if not bucket or user_id not in bucket:
            return False

        entry = bucket.pop(user_id)
        entry.timer.cancel()
        if not bucket:
            del self._typing[conversation_id]

        await self.rooms.emit_to_conversation_except(
            conversation_id,
            user_id,
            EVENT_USER_TYPING_STOP,
            self._payload(conversation_id, user_id, entry.user_name),
        )
        return True

    def _expire(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> None:
        logger.debug("Typing indicator expired for user %s in %s", user_id, conversation_id)
        task = asyncio.ensure_future(self.stop(conversation_id, user_id))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    async def purge_user(self, user_id: uuid.UUID) -> int:
        """Stop every indicator held by ``user_id``. Returns how many were cleared."""
        conversation_ids = [cid for cid, bucket in self._typing.items() if user_id in bucket]
        cleared = 0
        for conversation_id in conversation_ids:
            if await self.stop(conversation_id, user_id):
                cleared += 1
        return cleared

    def typing_users(self, conversation_id: uuid.UUID) -> list[uuid.UUID]:
        return list(self._typing.get(conversation_id, {}))

    def is_typing(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        return user_id in self._typing.get(conversation_id, {})

    @property
    def active_conversation_count(self) -> int:
        return len(self._typing)

    @property
    def typing_user_count(self) -> int:
        return sum(len(bucket) for bucket in self._typing.values())

    def clear(self) -> None:
        for bucket in self._typing.values():
            for entry in bucket.values():
                entry.timer.cancel()
        self._typing.clear()
