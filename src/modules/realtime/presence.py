"""PresenceRegistry — the in-process source of truth for who is online.

Owns the connection index (connection id <-> user) and room membership.
Room fan-out goes through the RoomRouter and typing state through the
TypingCoordinator, both created here so that every mutation of shared
presence state stays behind this one object.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from src.models.enums import PresenceStatus
from src.modules.realtime.connection import Connection
from src.modules.realtime.constants import (
    CLOSE_POLICY_VIOLATION,
    EVENT_FORCE_DISCONNECT,
    EVENT_USER_PRESENCE_CHANGED,
    EVENT_USER_STATUS_CHANGED,
    conversation_room,
    user_room,
)
from src.modules.realtime.rooms import RoomRouter
from src.modules.realtime.typing_coordinator import TypingCoordinator

logger = logging.getLogger(__name__)


async def _no_memberships(user_id: uuid.UUID) -> list[uuid.UUID]:
    return []


@dataclass
class MembershipLookup:
    """Persistent membership queries the registry needs at connect/disconnect time."""

    conversations_for_user: Callable[[uuid.UUID], Awaitable[Iterable[uuid.UUID]]] = _no_memberships
    peers_for_user: Callable[[uuid.UUID], Awaitable[Iterable[uuid.UUID]]] = _no_memberships


class PresenceRegistry:
    def __init__(
        self,
        lookup: MembershipLookup | None = None,
        typing_timeout_seconds: float = 3.0,
    ) -> None:
        self.lookup = lookup or MembershipLookup()
        self._connections: dict[str, Connection] = {}
        self._user_connections: dict[uuid.UUID, set[str]] = {}
        self._rooms: dict[str, set[str]] = {}
        self._presence: dict[uuid.UUID, PresenceStatus] = {}
        self.rooms = RoomRouter(self)
        self.typing = TypingCoordinator(self.rooms, typing_timeout_seconds)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_online(self, user_id: uuid.UUID) -> bool:
        return bool(self._user_connections.get(user_id))

    def live_connection_count(self, user_id: uuid.UUID) -> int:
        return len(self._user_connections.get(user_id, ()))

    def all_connections(self) -> list[Connection]:
        return list(self._connections.values())

    def connections_for_user(self, user_id: uuid.UUID) -> list[Connection]:
        return [self._connections[cid] for cid in self._user_connections.get(user_id, ())]

    def connections_in_room(self, room: str) -> list[Connection]:
        return [self._connections[cid] for cid in self._rooms.get(room, ()) if cid in self._connections]

    def online_users_in_conversation(self, conversation_id: uuid.UUID) -> list[uuid.UUID]:
        seen: dict[uuid.UUID, None] = {}
        for connection in self.connections_in_room(conversation_room(conversation_id)):
            seen.setdefault(connection.user_id, None)
        return list(seen)

    def presence_of(self, user_id: uuid.UUID) -> PresenceStatus:
        if not self.is_online(user_id):
            return PresenceStatus.OFFLINE
        return self._presence.get(user_id, PresenceStatus.ONLINE)

    def stats(self) -> dict:
        return {
            "total_connections": len(self._connections),
            "online_users": len(self._user_connections),
            "rooms": len(self._rooms),
            "typing_conversations": self.typing.active_conversation_count,
            "typing_users": self.typing.typing_user_count,
        }

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------

    def join_room(self, connection_id: str, room: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        self._rooms.setdefault(room, set()).add(connection_id)
        connection.rooms.add(room)
        return True

    def leave_room(self, connection_id: str, room: str) -> bool:
        members = self._rooms.get(room)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[room]
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room)
        return True

    def join_conversation(self, connection_id: str, conversation_id: uuid.UUID) -> bool:
        return self.join_room(connection_id, conversation_room(conversation_id))

    def leave_conversation(self, connection_id: str, conversation_id: uuid.UUID) -> bool:
        return self.leave_room(connection_id, conversation_room(conversation_id))

    def add_user_to_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> int:
        """Join every live connection of ``user_id`` to the conversation room."""
        joined = 0
        for connection in self.connections_for_user(user_id):
            if self.join_conversation(connection.id, conversation_id):
                joined += 1
        return joined

    def remove_user_from_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> int:
        left = 0
        for connection in self.connections_for_user(user_id):
            if self.leave_conversation(connection.id, conversation_id):
                left += 1
        return left

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def register_connection(self, connection: Connection) -> bool:
        """Track a new connection. Returns True when it is the user's first one.

        Never raises on lookup failures: the connection is registered with
        whatever rooms could be resolved and the peer broadcast is skipped.
        """
        user_id = connection.user_id
        first_connection = not self.is_online(user_id)

        self._connections[connection.id] = connection
        self._user_connections.setdefault(user_id, set()).add(connection.id)
        self.join_room(connection.id, user_room(user_id))

        try:
            conversation_ids = list(await self.lookup.conversations_for_user(user_id))
        except Exception:
            logger.exception("Failed to load conversation memberships for user %s", user_id)
            conversation_ids = []
        for conversation_id in conversation_ids:
            self.join_conversation(connection.id, conversation_id)

        logger.info(
            "Connection %s registered for user %s (%d live, %d conversations)",
            connection.id,
            user_id,
            self.live_connection_count(user_id),
            len(conversation_ids),
        )

        if first_connection:
            self._presence[user_id] = PresenceStatus.ONLINE
            await self._notify_peers(
                user_id,
                EVENT_USER_STATUS_CHANGED,
                {
                    "user_id": user_id,
                    "user_name": connection.user.name,
                    "status": PresenceStatus.ONLINE.value,
                    "timestamp": datetime.now(UTC),
                },
            )
        return first_connection

    async def unregister_connection(self, connection_id: str) -> bool:
        """Forget a connection. Returns True when the user went offline as a result."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False

        for room in list(connection.rooms):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
        connection.rooms.clear()

        user_id = connection.user_id
        remaining = self._user_connections.get(user_id, set())
        remaining.discard(connection_id)
        if remaining:
            logger.info(
                "Connection %s closed for user %s (%d still live)",
                connection_id,
                user_id,
                len(remaining),
            )
            return False

        self._user_connections.pop(user_id, None)
        self._presence.pop(user_id, None)
        logger.info("User %s went offline", user_id)

        try:
            await self.typing.purge_user(user_id)
        except Exception:
            logger.exception("Failed to purge typing state for user %s", user_id)

        await self._notify_peers(
            user_id,
            EVENT_USER_STATUS_CHANGED,
            {
                "user_id": user_id,
                "user_name": connection.user.name,
                "status": PresenceStatus.OFFLINE.value,
                "last_seen": datetime.now(UTC),
                "timestamp": datetime.now(UTC),
            },
        )
        return True

    async def update_presence(self, user_id: uuid.UUID, presence: PresenceStatus) -> bool:
        """Change a connected user's status and tell co-conversation peers."""
        if not self.is_online(user_id):
            return False
        self._presence[user_id] = presence
        for connection in self.connections_for_user(user_id):
            connection.presence = presence.value
        await self._notify_peers(
            user_id,
            EVENT_USER_PRESENCE_CHANGED,
            {"user_id": user_id, "presence": presence.value, "timestamp": datetime.now(UTC)},
        )
        return True

    async def force_disconnect(self, user_id: uuid.UUID, reason: str = "Disconnected by administrator") -> int:
        """Notify, close and unregister every connection of ``user_id``."""
        connections = self.connections_for_user(user_id)
        for connection in connections:
            await connection.send(
                EVENT_FORCE_DISCONNECT, {"reason": reason, "timestamp": datetime.now(UTC)}
            )
            await connection.close(code=CLOSE_POLICY_VIOLATION, reason=reason)
            await self.unregister_connection(connection.id)
        if connections:
            logger.warning("Force-disconnected user %s (%d connections): %s", user_id, len(connections), reason)
        return len(connections)

    async def cleanup(self) -> None:
        """Close every connection and drop all state. Used on application shutdown."""
        self.typing.clear()
        for connection in list(self._connections.values()):
            await connection.close()
        self._connections.clear()
        self._user_connections.clear()
        self._rooms.clear()
        self._presence.clear()

    async def _notify_peers(self, user_id: uuid.UUID, event: str, data: dict) -> None:
        try:
            peers = set(await self.lookup.peers_for_user(user_id))
        except Exception:
            logger.exception("Failed to resolve presence peers for user %s", user_id)
            return
        peers.discard(user_id)
        if peers:
            await self.rooms.emit_to_users(peers, event, data)
