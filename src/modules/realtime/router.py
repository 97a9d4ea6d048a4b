"""Realtime endpoints: the ``/ws`` socket and the admin HTTP surface."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect

from src.config import settings
from src.database.base import utcnow
from src.database.session import SessionFactory, get_session_factory, session_scope
from src.exceptions import UnauthorizedException
from src.middleware.rate_limit import limiter
from src.modules.auth.auth import AuthenticatedUser, authenticate_token
from src.modules.auth.dependencies import require_roles
from src.modules.realtime.connection import Connection
from src.modules.realtime.constants import (
    ADMIN_ROLES,
    CLOSE_POLICY_VIOLATION,
    EVENT_CONNECTION_ESTABLISHED,
)
from src.modules.realtime.dependencies import get_event_gateway, get_presence_registry
from src.modules.realtime.gateway import EventGateway, build_announcement, publish_announcement
from src.modules.realtime.presence import PresenceRegistry
from src.modules.realtime.schemas import (
    AnnouncementPayload,
    AnnouncementResponse,
    DisconnectRequest,
    DisconnectResponse,
    RealtimeStats,
    UserConnectionStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])
ws_router = APIRouter(tags=["realtime"])


def _token_from_headers(websocket: WebSocket) -> str | None:
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


@ws_router.websocket("/ws")
async def socket_endpoint(
    websocket: WebSocket,
    token: str | None = Query(None),
    registry: PresenceRegistry = Depends(get_presence_registry),
    gateway: EventGateway = Depends(get_event_gateway),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    """Authenticate once, register the connection, then process events in receipt order."""
    try:
        async with session_scope(session_factory) as db:
            user = await authenticate_token(db, token or _token_from_headers(websocket))
    except UnauthorizedException as exc:
        logger.warning("Socket authentication failed: %s", exc.message)
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=exc.message)
        return

    if registry.live_connection_count(user.id) >= settings.max_connections_per_user:
        logger.warning("User %s exceeded %d live connections", user.id, settings.max_connections_per_user)
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Too many connections")
        return

    await websocket.accept()
    connection = Connection(websocket=websocket, user=user)
    await registry.register_connection(connection)
    await connection.send(
        EVENT_CONNECTION_ESTABLISHED,
        {
            "connection_id": connection.id,
            "user": {
                "id": user.id,
                "name": user.name,
                "email": user.email,
                "role": user.role,
                "office_id": user.office_id,
            },
            "timestamp": utcnow(),
        },
    )

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
            await gateway.handle_frame(connection, message)
    except WebSocketDisconnect as exc:
        logger.info("Connection %s for user %s disconnected (code %s)", connection.id, user.id, exc.code)
    finally:
        gateway.forget(connection)
        await registry.unregister_connection(connection.id)


# ---------------------------------------------------------------------------
# Admin HTTP surface
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=RealtimeStats)
async def get_realtime_stats(
    user: AuthenticatedUser = Depends(require_roles(*ADMIN_ROLES)),
    registry: PresenceRegistry = Depends(get_presence_registry),
):
    return RealtimeStats(**registry.stats())


@router.get("/users/{user_id}/connection", response_model=UserConnectionStatus)
async def get_user_connection(
    user_id: uuid.UUID,
    user: AuthenticatedUser = Depends(require_roles(*ADMIN_ROLES)),
    registry: PresenceRegistry = Depends(get_presence_registry),
):
    return UserConnectionStatus(
        user_id=user_id,
        online=registry.is_online(user_id),
        connection_count=registry.live_connection_count(user_id),
        presence=registry.presence_of(user_id).value,
    )


@router.post("/users/{user_id}/disconnect", response_model=DisconnectResponse)
async def disconnect_user(
    user_id: uuid.UUID,
    body: DisconnectRequest | None = None,
    user: AuthenticatedUser = Depends(require_roles("super_admin")),
    registry: PresenceRegistry = Depends(get_presence_registry),
):
    """Force-close every live connection of a user."""
    reason = body.reason if body else DisconnectRequest().reason
    count = await registry.force_disconnect(user_id, reason)
    logger.info("Super admin %s disconnected user %s (%d connections)", user.id, user_id, count)
    return DisconnectResponse(user_id=user_id, disconnected_connections=count)


@router.post("/announcements", response_model=AnnouncementResponse, status_code=201)
@limiter.limit("10/minute")
async def send_announcement(
    request: Request,
    body: AnnouncementPayload,
    user: AuthenticatedUser = Depends(require_roles(*ADMIN_ROLES)),
    registry: PresenceRegistry = Depends(get_presence_registry),
):
    announcement = build_announcement(user, body.message, body.target, body.urgent)
    delivered = await publish_announcement(registry, announcement)
    return AnnouncementResponse(announcement=announcement, delivered=delivered)
