"""RoomRouter — fan-out of server events to live connections.

The router holds no state of its own. Every target is resolved through the
PresenceRegistry at dispatch time, and delivery is fire-and-forget: a dead
socket is logged and skipped, never retried.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from src.modules.realtime.connection import Connection
from src.modules.realtime.constants import conversation_room, monitor_room, user_room

if TYPE_CHECKING:
    from src.modules.realtime.presence import PresenceRegistry

logger = logging.getLogger(__name__)


class RoomRouter:
    def __init__(self, registry: PresenceRegistry) -> None:
        self.registry = registry

    async def _deliver(self, connections: Iterable[Connection], event: str, data: Any) -> int:
        targets = list(connections)
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._send(connection, event, data) for connection in targets)
        )
        return sum(1 for delivered in results if delivered)

    async def _send(self, connection: Connection, event: str, data: Any) -> bool:
        try:
            return await connection.send(event, data)
        except Exception:
            logger.exception("Dispatch of %s to connection %s failed", event, connection.id)
            return False

    def _resolve_room(self, room: str) -> dict[str, Connection]:
        return {c.id: c for c in self.registry.connections_in_room(room)}

    def _without_user(
        self, connections: dict[str, Connection], user_id: uuid.UUID | None
    ) -> list[Connection]:
        if user_id is None:
            return list(connections.values())
        excluded = {c.id for c in self.registry.connections_for_user(user_id)}
        return [c for cid, c in connections.items() if cid not in excluded]

    async def emit_to_room(
        self, room: str, event: str, data: Any, exclude_user: uuid.UUID | None = None
    ) -> int:
        return await self._deliver(
            self._without_user(self._resolve_room(room), exclude_user), event, data
        )

    async def emit_to_conversation(self, conversation_id: uuid.UUID, event: str, data: Any) -> int:
        """Send to every connection in the conversation room and its monitor room."""
        targets = self._resolve_room(conversation_room(conversation_id))
        targets.update(self._resolve_room(monitor_room(conversation_id)))
        return await self._deliver(targets.values(), event, data)

    async def emit_to_conversation_except(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, event: str, data: Any
    ) -> int:
        targets = self._resolve_room(conversation_room(conversation_id))
        targets.update(self._resolve_room(monitor_room(conversation_id)))
        return await self._deliver(self._without_user(targets, user_id), event, data)

    async def emit_to_user(self, user_id: uuid.UUID, event: str, data: Any) -> int:
        return await self._deliver(
            self.registry.connections_in_room(user_room(user_id)), event, data
        )

    async def emit_to_users(self, user_ids: Iterable[uuid.UUID], event: str, data: Any) -> int:
        targets: dict[str, Connection] = {}
        for user_id in set(user_ids):
            targets.update(self._resolve_room(user_room(user_id)))
        return await self._deliver(targets.values(), event, data)

    async def broadcast(
        self, event: str, data: Any, roles: Iterable[str] | None = None
    ) -> int:
        """Send to every live connection, or only to users holding one of ``roles``."""
        connections = self.registry.all_connections()
        if roles is not None:
            allowed = set(roles)
            connections = [c for c in connections if c.user.role in allowed]
        return await self._deliver(connections, event, data)
