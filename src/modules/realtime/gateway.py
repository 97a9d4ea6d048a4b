"""EventGateway — the single ingress for client-originated socket events.

Each inbound ``{"event", "data"}`` envelope is rate limited, matched to a
registered handler, role-gated, validated against the handler's payload
schema and then run inside its own database transaction. Broadcasts queued
by the services go out after that transaction commits; acknowledgements go
back to the originating connection only after that. Every failure becomes an
``error`` event on the sender's connection and never closes the socket.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.base import utcnow
from src.database.session import SessionFactory, on_commit, session_scope
from src.exceptions import (
    AppException,
    ForbiddenException,
    NotFoundException,
    RateLimitException,
    UnknownEventException,
    ValidationException,
)
from src.models.conversation_participant import ConversationParticipant
from src.models.enums import MessageType, PresenceStatus
from src.modules.auth.auth import AuthenticatedUser
from src.modules.conversation.message_service import MessageService
from src.modules.conversation.repository import ConversationRepository
from src.modules.conversation.service import ConversationService
from src.modules.notification.service import NotificationSender, NotificationService
from src.modules.realtime import schemas
from src.modules.realtime.connection import Connection
from src.modules.realtime.constants import (
    ACK_ANNOUNCEMENT_SENT,
    ACK_CALL_INITIATED,
    ACK_CONVERSATION_CREATED,
    ACK_CONVERSATION_JOINED,
    ACK_CONVERSATION_LEFT,
    ACK_FILE_UPLOAD_INITIATED,
    ACK_FILE_UPLOAD_SUCCESS,
    ACK_MESSAGE_DELETED,
    ACK_MESSAGE_EDITED,
    ACK_MESSAGE_READ,
    ACK_MESSAGE_SENT,
    ACK_MONITORING_STARTED,
    ACK_MONITORING_STOPPED,
    ACK_NOTIFICATION_READ,
    ACK_ONLINE_USERS,
    ACK_PRESENCE_UPDATED,
    ACK_SCREEN_SHARE_INITIATED,
    ACK_UNREAD_COUNT,
    ADMIN_ROLES,
    EVENT_BROADCAST_ANNOUNCEMENT,
    EVENT_CREATE_CONVERSATION,
    EVENT_DELETE_MESSAGE,
    EVENT_EDIT_MESSAGE,
    EVENT_ERROR,
    EVENT_FILE_UPLOAD_COMPLETE,
    EVENT_FILE_UPLOAD_COMPLETED,
    EVENT_FILE_UPLOAD_PROGRESS,
    EVENT_FILE_UPLOAD_PROGRESS_UPDATE,
    EVENT_FILE_UPLOAD_START,
    EVENT_FILE_UPLOAD_STARTED,
    EVENT_GET_ONLINE_USERS,
    EVENT_GET_UNREAD_COUNT,
    EVENT_INCOMING_CALL,
    EVENT_JOIN_CONVERSATION,
    EVENT_LEAVE_CONVERSATION,
    EVENT_MARK_MESSAGE_READ,
    EVENT_MARK_NOTIFICATION_READ,
    EVENT_MONITOR_CONVERSATION,
    EVENT_SCREEN_SHARE_START,
    EVENT_SCREEN_SHARE_STARTED,
    EVENT_SEND_MESSAGE,
    EVENT_START_VIDEO_CALL,
    EVENT_START_VOICE_CALL,
    EVENT_SYSTEM_ANNOUNCEMENT,
    EVENT_TYPING_START,
    EVENT_TYPING_STOP,
    EVENT_UPDATE_PRESENCE,
    EVENT_USER_JOINED_CONVERSATION,
    EVENT_USER_LEFT_CONVERSATION,
    monitor_room,
)
from src.modules.realtime.presence import PresenceRegistry
from src.modules.realtime.rate_limit import ConnectionRateLimiter

logger = logging.getLogger(__name__)

INTERNAL_ERROR_PAYLOAD = {
    "message": "An unexpected error occurred.",
    "code": 500,
    "type": "INTERNAL_ERROR",
}


def _validation_details(exc: ValidationError) -> list[dict]:
    return [
        {"field": ".".join(str(loc) for loc in err.get("loc", [])), "message": err.get("msg", "")}
        for err in exc.errors()
    ]


def build_announcement(sender: AuthenticatedUser, message: str, target: str, urgent: bool) -> dict:
    return {
        "id": f"announcement_{uuid.uuid4().hex}",
        "message": message,
        "sender": {"id": sender.id, "name": sender.name, "role": sender.role},
        "target": target,
        "urgent": urgent,
        "timestamp": utcnow(),
    }


async def publish_announcement(registry: PresenceRegistry, announcement: dict) -> int:
    """Deliver a system announcement to every connection, or to one role's connections."""
    target = announcement["target"]
    roles = None if target == "all" else [target]
    delivered = await registry.rooms.broadcast(EVENT_SYSTEM_ANNOUNCEMENT, announcement, roles=roles)
    logger.info(
        "Announcement %s from %s delivered to %d connections",
        announcement["id"],
        announcement["sender"]["id"],
        delivered,
    )
    return delivered


# ---------------------------------------------------------------------------
# Per-event context
# ---------------------------------------------------------------------------


@dataclass
class EventContext:
    """What a handler sees: the caller, a transaction, and the shared realtime state."""

    connection: Connection
    db: AsyncSession
    registry: PresenceRegistry
    notifier: NotificationSender | None = None
    acks: list[tuple[str, dict]] = field(default_factory=list)

    @property
    def user(self) -> AuthenticatedUser:
        return self.connection.user

    @property
    def conversations(self) -> ConversationService:
        return ConversationService(self.db, self.registry, self.notifier)

    @property
    def messages(self) -> MessageService:
        return MessageService(self.db, self.registry, self.notifier)

    @property
    def notifications(self) -> NotificationService:
        return NotificationService(self.db, self.registry.rooms)

    def ack(self, event: str, data: dict) -> None:
        """Queue an acknowledgement for the sender. Sent only if the transaction commits."""
        self.acks.append((event, {"success": True, **data, "timestamp": utcnow()}))

    def after_commit(self, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        on_commit(self.db, partial(func, *args))

    async def require_participant(self, conversation_id: uuid.UUID) -> ConversationParticipant:
        participant = await ConversationRepository(self.db).get_participant(conversation_id, self.user.id)
        if participant is None:
            raise NotFoundException("Conversation not found or access denied")
        return participant


Handler = Callable[[EventContext, Any], Awaitable[None]]


@dataclass
class _Registration:
    schema: type[BaseModel]
    handler: Handler
    roles: frozenset[str] | None = None


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class EventGateway:
    def __init__(
        self,
        registry: PresenceRegistry,
        notifier: NotificationSender | None = None,
        session_factory: SessionFactory | None = None,
        rate_limiter: ConnectionRateLimiter | None = None,
    ) -> None:
        self.registry = registry
        self.notifier = notifier
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter or ConnectionRateLimiter()
        self._handlers: dict[str, _Registration] = {}
        self._register_defaults()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(
        self,
        event: str,
        schema: type[BaseModel],
        handler: Handler,
        roles: frozenset[str] | None = None,
    ) -> None:
        self._handlers[event] = _Registration(schema=schema, handler=handler, roles=roles)
        logger.debug("Registered handler %s for socket event %s", handler.__name__, event)

    @property
    def events(self) -> list[str]:
        return sorted(self._handlers)

    def _register_defaults(self) -> None:
        self.register(EVENT_SEND_MESSAGE, schemas.SendMessagePayload, self._send_message)
        self.register(EVENT_EDIT_MESSAGE, schemas.EditMessagePayload, self._edit_message)
        self.register(EVENT_DELETE_MESSAGE, schemas.MessageRefPayload, self._delete_message)
        self.register(EVENT_MARK_MESSAGE_READ, schemas.MessageRefPayload, self._mark_message_read)
        self.register(EVENT_JOIN_CONVERSATION, schemas.ConversationRefPayload, self._join_conversation)
        self.register(EVENT_LEAVE_CONVERSATION, schemas.ConversationRefPayload, self._leave_conversation)
        self.register(
            EVENT_CREATE_CONVERSATION, schemas.CreateConversationPayload, self._create_conversation
        )
        self.register(EVENT_TYPING_START, schemas.ConversationRefPayload, self._typing_start)
        self.register(EVENT_TYPING_STOP, schemas.ConversationRefPayload, self._typing_stop)
        self.register(EVENT_UPDATE_PRESENCE, schemas.UpdatePresencePayload, self._update_presence)
        self.register(EVENT_GET_ONLINE_USERS, schemas.GetOnlineUsersPayload, self._get_online_users)
        self.register(EVENT_FILE_UPLOAD_START, schemas.FileUploadStartPayload, self._file_upload_start)
        self.register(
            EVENT_FILE_UPLOAD_PROGRESS, schemas.FileUploadProgressPayload, self._file_upload_progress
        )
        self.register(
            EVENT_FILE_UPLOAD_COMPLETE, schemas.FileUploadCompletePayload, self._file_upload_complete
        )
        self.register(
            EVENT_MARK_NOTIFICATION_READ,
            schemas.MarkNotificationReadPayload,
            self._mark_notification_read,
        )
        self.register(EVENT_GET_UNREAD_COUNT, schemas.EmptyPayload, self._get_unread_count)
        self.register(EVENT_START_VOICE_CALL, schemas.StartCallPayload, self._start_voice_call)
        self.register(EVENT_START_VIDEO_CALL, schemas.StartCallPayload, self._start_video_call)
        self.register(EVENT_SCREEN_SHARE_START, schemas.ConversationRefPayload, self._screen_share_start)
        self.register(
            EVENT_MONITOR_CONVERSATION,
            schemas.MonitorConversationPayload,
            self._monitor_conversation,
            roles=ADMIN_ROLES,
        )
        self.register(
            EVENT_BROADCAST_ANNOUNCEMENT,
            schemas.AnnouncementPayload,
            self._broadcast_announcement,
            roles=ADMIN_ROLES,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_frame(self, connection: Connection, message: dict) -> bool:
        """Handle one ASGI ``websocket.receive`` message. Only text frames carry events."""
        text = message.get("text")
        if text is None:
            logger.warning("Binary frame from connection %s", connection.id)
            await connection.send(
                EVENT_ERROR, ValidationException("Binary frames are not supported").to_payload()
            )
            return False
        return await self.handle_text(connection, text)

    async def handle_text(self, connection: Connection, text: str) -> bool:
        try:
            raw = json.loads(text)
        except ValueError:
            logger.warning("Non-JSON frame from connection %s", connection.id)
            await connection.send(
                EVENT_ERROR, ValidationException("Frame is not valid JSON").to_payload()
            )
            return False
        return await self.handle_raw(connection, raw)

    async def handle_raw(self, connection: Connection, raw: Any) -> bool:
        """Parse an inbound envelope and dispatch it."""
        try:
            envelope = schemas.SocketEnvelope.model_validate(raw)
        except ValidationError as exc:
            error = ValidationException("Malformed event envelope", details=_validation_details(exc))
            logger.warning("Malformed envelope from connection %s", connection.id)
            await connection.send(EVENT_ERROR, error.to_payload())
            return False
        return await self.dispatch(connection, envelope.event, envelope.data)

    async def dispatch(self, connection: Connection, event: str, data: dict) -> bool:
        """Run one event to completion. Returns True on success.

        Errors are reported to the sender as an ``error`` event, never raised.
        """
        try:
            await self._dispatch(connection, event, data)
            return True
        except (UnknownEventException, RateLimitException) as exc:
            logger.warning("Rejected %s from user %s: %s", event, connection.user_id, exc.message)
            await connection.send(EVENT_ERROR, exc.to_payload(event))
        except AppException as exc:
            logger.info(
                "Event %s from user %s failed with %s: %s",
                event,
                connection.user_id,
                exc.code,
                exc.message,
            )
            await connection.send(EVENT_ERROR, exc.to_payload(event))
        except Exception:
            logger.exception("Unhandled error in socket event %s from user %s", event, connection.user_id)
            await connection.send(
                EVENT_ERROR, {"success": False, "error": {**INTERNAL_ERROR_PAYLOAD, "event": event}}
            )
        return False

    async def _dispatch(self, connection: Connection, event: str, data: dict) -> None:
        if not self.rate_limiter.hit(connection.id):
            raise RateLimitException("Too many events, slow down")

        registration = self._handlers.get(event)
        if registration is None:
            raise UnknownEventException(f"Unknown event: {event}")

        if registration.roles is not None and connection.user.role not in registration.roles:
            raise ForbiddenException(f"Role '{connection.user.role}' is not allowed to send {event}")

        try:
            payload = registration.schema.model_validate(data)
        except ValidationError as exc:
            raise ValidationException(
                "Validation failed", details=_validation_details(exc)
            ) from exc

        async with session_scope(self.session_factory) as db:
            context = EventContext(connection, db, self.registry, self.notifier)
            await registration.handler(context, payload)

        for ack_event, ack_data in context.acks:
            await connection.send(ack_event, ack_data)

    def forget(self, connection: Connection) -> None:
        """Drop per-connection state when a socket closes."""
        self.rate_limiter.reset(connection.id)

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def _send_message(self, ctx: EventContext, payload: schemas.SendMessagePayload) -> None:
        message = await ctx.messages.send_message(
            ctx.user.id,
            payload.conversation_id,
            payload.content,
            payload.type,
            payload.reply_to_id,
            payload.metadata,
            payload.file.model_dump() if payload.file else None,
        )
        ctx.ack(ACK_MESSAGE_SENT, {"message": message})

    async def _edit_message(self, ctx: EventContext, payload: schemas.EditMessagePayload) -> None:
        message = await ctx.messages.edit_message(payload.message_id, ctx.user.id, payload.content)
        ctx.ack(ACK_MESSAGE_EDITED, {"message": message})

    async def _delete_message(self, ctx: EventContext, payload: schemas.MessageRefPayload) -> None:
        result = await ctx.messages.delete_message(payload.message_id, ctx.user.id)
        ctx.ack(ACK_MESSAGE_DELETED, result)

    async def _mark_message_read(self, ctx: EventContext, payload: schemas.MessageRefPayload) -> None:
        receipt = await ctx.messages.mark_message_read(payload.message_id, ctx.user.id)
        ctx.ack(ACK_MESSAGE_READ, receipt)

    # ------------------------------------------------------------------
    # Conversation handlers
    # ------------------------------------------------------------------

    async def _join_conversation(self, ctx: EventContext, payload: schemas.ConversationRefPayload) -> None:
        participant = await ctx.require_participant(payload.conversation_id)
        participant.last_seen_at = utcnow()
        await ctx.db.flush()

        registry = self.registry
        connection_id = ctx.connection.id

        async def _join() -> None:
            registry.join_conversation(connection_id, payload.conversation_id)

        ctx.after_commit(_join)
        ctx.after_commit(
            self.registry.rooms.emit_to_conversation_except,
            payload.conversation_id,
            ctx.user.id,
            EVENT_USER_JOINED_CONVERSATION,
            {
                "conversation_id": payload.conversation_id,
                "user_id": ctx.user.id,
                "user_name": ctx.user.name,
                "timestamp": utcnow(),
            },
        )
        ctx.ack(ACK_CONVERSATION_JOINED, {"conversation_id": payload.conversation_id})

    async def _leave_conversation(self, ctx: EventContext, payload: schemas.ConversationRefPayload) -> None:
        left = self.registry.leave_conversation(ctx.connection.id, payload.conversation_id)
        if left:
            await self.registry.typing.stop(payload.conversation_id, ctx.user.id)
            ctx.after_commit(
                self.registry.rooms.emit_to_conversation_except,
                payload.conversation_id,
                ctx.user.id,
                EVENT_USER_LEFT_CONVERSATION,
                {
                    "conversation_id": payload.conversation_id,
                    "user_id": ctx.user.id,
                    "user_name": ctx.user.name,
                    "timestamp": utcnow(),
                },
            )
        ctx.ack(ACK_CONVERSATION_LEFT, {"conversation_id": payload.conversation_id})

    async def _create_conversation(
        self, ctx: EventContext, payload: schemas.CreateConversationPayload
    ) -> None:
        conversation = await ctx.conversations.create_conversation(ctx.user.id, payload)
        ctx.ack(ACK_CONVERSATION_CREATED, {"conversation": conversation})

    async def _typing_start(self, ctx: EventContext, payload: schemas.ConversationRefPayload) -> None:
        await ctx.conversations.send_typing_indicator(
            payload.conversation_id, ctx.user.id, True, ctx.user.name
        )

    async def _typing_stop(self, ctx: EventContext, payload: schemas.ConversationRefPayload) -> None:
        await ctx.conversations.send_typing_indicator(payload.conversation_id, ctx.user.id, False)

    # ------------------------------------------------------------------
    # Presence handlers
    # ------------------------------------------------------------------

    async def _update_presence(self, ctx: EventContext, payload: schemas.UpdatePresencePayload) -> None:
        await self.registry.update_presence(ctx.user.id, PresenceStatus(payload.status))
        ctx.ack(ACK_PRESENCE_UPDATED, {"presence": payload.status})

    async def _get_online_users(self, ctx: EventContext, payload: schemas.GetOnlineUsersPayload) -> None:
        if payload.conversation_id is not None:
            await ctx.require_participant(payload.conversation_id)
            participant_ids = await ConversationRepository(ctx.db).active_participant_ids(
                payload.conversation_id
            )
            candidates = set(participant_ids)
        else:
            candidates = set(await ConversationRepository(ctx.db).peer_ids_for_user(ctx.user.id))
        candidates.discard(ctx.user.id)

        online = [
            {"user_id": user_id, "presence": self.registry.presence_of(user_id).value}
            for user_id in candidates
            if self.registry.is_online(user_id)
        ]
        ctx.ack(
            ACK_ONLINE_USERS,
            {"conversation_id": payload.conversation_id, "online_users": online},
        )

    # ------------------------------------------------------------------
    # File upload markers
    # ------------------------------------------------------------------

    async def _file_upload_start(self, ctx: EventContext, payload: schemas.FileUploadStartPayload) -> None:
        await ctx.require_participant(payload.conversation_id)
        upload_id = f"upload_{uuid.uuid4().hex}"
        ctx.after_commit(
            self.registry.rooms.emit_to_conversation_except,
            payload.conversation_id,
            ctx.user.id,
            EVENT_FILE_UPLOAD_STARTED,
            {
                "conversation_id": payload.conversation_id,
                "upload_id": upload_id,
                "user_id": ctx.user.id,
                "user_name": ctx.user.name,
                "file_name": payload.file_name,
                "file_size": payload.file_size,
                "mime_type": payload.mime_type,
                "timestamp": utcnow(),
            },
        )
        ctx.ack(
            ACK_FILE_UPLOAD_INITIATED,
            {"upload_id": upload_id, "conversation_id": payload.conversation_id},
        )

    async def _file_upload_progress(
        self, ctx: EventContext, payload: schemas.FileUploadProgressPayload
    ) -> None:
        await ctx.require_participant(payload.conversation_id)
        ctx.after_commit(
            self.registry.rooms.emit_to_conversation_except,
            payload.conversation_id,
            ctx.user.id,
            EVENT_FILE_UPLOAD_PROGRESS_UPDATE,
            {
                "conversation_id": payload.conversation_id,
                "upload_id": payload.upload_id,
                "user_id": ctx.user.id,
                "progress": payload.progress,
                "timestamp": utcnow(),
            },
        )

    async def _file_upload_complete(
        self, ctx: EventContext, payload: schemas.FileUploadCompletePayload
    ) -> None:
        message = await ctx.messages.send_message(
            ctx.user.id,
            payload.conversation_id,
            payload.message or "File shared",
            MessageType(payload.type),
            None,
            {"upload_id": payload.upload_id},
            {
                "url": payload.file_url,
                "name": payload.file_name,
                "size": payload.file_size,
                "mime_type": payload.mime_type,
            },
        )
        ctx.after_commit(
            self.registry.rooms.emit_to_conversation,
            payload.conversation_id,
            EVENT_FILE_UPLOAD_COMPLETED,
            {
                "conversation_id": payload.conversation_id,
                "upload_id": payload.upload_id,
                "user_id": ctx.user.id,
                "message": message,
                "timestamp": utcnow(),
            },
        )
        ctx.ack(ACK_FILE_UPLOAD_SUCCESS, {"upload_id": payload.upload_id, "message": message})

    # ------------------------------------------------------------------
    # Notifications / unread
    # ------------------------------------------------------------------

    async def _mark_notification_read(
        self, ctx: EventContext, payload: schemas.MarkNotificationReadPayload
    ) -> None:
        await ctx.notifications.mark_notification_read(payload.notification_id, ctx.user.id)
        ctx.ack(ACK_NOTIFICATION_READ, {"notification_id": payload.notification_id})

    async def _get_unread_count(self, ctx: EventContext, payload: schemas.EmptyPayload) -> None:
        counts = await ctx.conversations.get_unread_counts(ctx.user.id)
        counts.unread_notifications = await ctx.notifications.count_unread(ctx.user.id)
        ctx.ack(ACK_UNREAD_COUNT, counts.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Call placeholders (signalling only, no media)
    # ------------------------------------------------------------------

    async def _start_call(self, ctx: EventContext, conversation_id: uuid.UUID, call_type: str) -> None:
        await ctx.require_participant(conversation_id)
        call_id = f"call_{uuid.uuid4().hex}"
        ctx.after_commit(
            self.registry.rooms.emit_to_conversation_except,
            conversation_id,
            ctx.user.id,
            EVENT_INCOMING_CALL,
            {
                "call_id": call_id,
                "conversation_id": conversation_id,
                "caller_id": ctx.user.id,
                "caller_name": ctx.user.name,
                "call_type": call_type,
                "timestamp": utcnow(),
            },
        )
        ctx.ack(
            ACK_CALL_INITIATED,
            {"call_id": call_id, "conversation_id": conversation_id, "call_type": call_type},
        )

    async def _start_voice_call(self, ctx: EventContext, payload: schemas.StartCallPayload) -> None:
        await self._start_call(ctx, payload.conversation_id, payload.call_type)

    async def _start_video_call(self, ctx: EventContext, payload: schemas.StartCallPayload) -> None:
        await self._start_call(ctx, payload.conversation_id, "video")

    async def _screen_share_start(self, ctx: EventContext, payload: schemas.ConversationRefPayload) -> None:
        await ctx.require_participant(payload.conversation_id)
        ctx.after_commit(
            self.registry.rooms.emit_to_conversation_except,
            payload.conversation_id,
            ctx.user.id,
            EVENT_SCREEN_SHARE_STARTED,
            {
                "conversation_id": payload.conversation_id,
                "user_id": ctx.user.id,
                "user_name": ctx.user.name,
                "timestamp": utcnow(),
            },
        )
        ctx.ack(ACK_SCREEN_SHARE_INITIATED, {"conversation_id": payload.conversation_id})

    # ------------------------------------------------------------------
    # Admin handlers
    # ------------------------------------------------------------------

    async def _monitor_conversation(
        self, ctx: EventContext, payload: schemas.MonitorConversationPayload
    ) -> None:
        room = monitor_room(payload.conversation_id)
        if payload.action == "stop":
            self.registry.leave_room(ctx.connection.id, room)
            ctx.ack(ACK_MONITORING_STOPPED, {"conversation_id": payload.conversation_id})
            return

        # Managers are office-gated; unknown conversations surface as NotFound.
        await ctx.conversations.get_conversation_by_id(
            payload.conversation_id, ctx.user.id, ctx.user.role
        )
        self.registry.join_room(ctx.connection.id, room)
        logger.info("User %s started monitoring conversation %s", ctx.user.id, payload.conversation_id)
        ctx.ack(ACK_MONITORING_STARTED, {"conversation_id": payload.conversation_id})

    async def _broadcast_announcement(self, ctx: EventContext, payload: schemas.AnnouncementPayload) -> None:
        announcement = build_announcement(ctx.user, payload.message, payload.target, payload.urgent)
        ctx.after_commit(publish_announcement, self.registry, announcement)
        ctx.ack(ACK_ANNOUNCEMENT_SENT, {"announcement": announcement})
