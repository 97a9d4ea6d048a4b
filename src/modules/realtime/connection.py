"""A single authenticated socket connection."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from src.modules.auth.auth import AuthenticatedUser
from src.modules.realtime.constants import CLOSE_GOING_AWAY

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    """Wraps a WebSocket with the identity resolved at connect time.

    ``rooms`` is owned by the PresenceRegistry; nothing else mutates it.
    """

    websocket: WebSocket
    user: AuthenticatedUser
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    rooms: set[str] = field(default_factory=set)
    presence: str = "online"

    @property
    def user_id(self) -> uuid.UUID:
        return self.user.id

    async def send(self, event: str, data: Any) -> bool:
        """Send one ``{"event", "data"}`` envelope. Returns False if the socket is gone."""
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await self.websocket.send_json({"event": event, "data": jsonable_encoder(data)})
            return True
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug("Failed to send %s to connection %s: %s", event, self.id, exc)
            return False

    async def close(self, code: int = CLOSE_GOING_AWAY, reason: str = "") -> None:
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as exc:
            logger.debug("Connection %s already closed: %s", self.id, exc)
