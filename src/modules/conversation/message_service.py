"""Message service — send, edit, delete and read receipts."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from functools import partial

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.database.base import ensure_aware, utcnow
from src.database.session import on_commit
from src.exceptions import ForbiddenException, NotFoundException, ValidationException
from src.models.conversation_participant import ConversationParticipant
from src.models.enums import MessageType, NotificationType
from src.models.message import Message
from src.modules.conversation.constants import (
    FILE_MESSAGE_TYPES,
    PERMISSION_SEND_FILES,
    PERMISSION_SEND_MESSAGES,
)
from src.modules.conversation.permissions import has_permission
from src.modules.conversation.repository import ConversationRepository
from src.modules.conversation.schemas import MessagePage, MessageResponse, Pagination, pagination_offset
from src.modules.notification.service import NotificationSender
from src.modules.realtime.constants import (
    EVENT_MESSAGE_DELIVERED,
    EVENT_MESSAGE_READ,
    EVENT_MESSAGE_RECEIVED,
    EVENT_MESSAGE_REMOVED,
    EVENT_MESSAGE_UPDATED,
)
from src.modules.realtime.presence import PresenceRegistry

logger = logging.getLogger(__name__)

MESSAGE_PREVIEW_LENGTH = 100


class MessageService:
    def __init__(
        self,
        db: AsyncSession,
        registry: PresenceRegistry | None = None,
        notifier: NotificationSender | None = None,
    ):
        self.db = db
        self.repo = ConversationRepository(db)
        self.registry = registry
        self.notifier = notifier

    def _emit_to_conversation(self, conversation_id: uuid.UUID, event: str, data: dict) -> None:
        if self.registry is None:
            return
        on_commit(
            self.db, partial(self.registry.rooms.emit_to_conversation, conversation_id, event, data)
        )

    async def _require_participant(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> ConversationParticipant:
        participant = await self.repo.get_participant(conversation_id, user_id)
        if participant is None:
            raise NotFoundException("Conversation not found or access denied")
        return participant

    async def _require_message(self, message_id: uuid.UUID) -> Message:
        message = await self.repo.get_message(message_id)
        if message is None or message.deleted_at is not None:
            raise NotFoundException("Message not found")
        return message

    async def _response(self, message_id: uuid.UUID) -> MessageResponse:
        message = await self.repo.get_message(message_id)
        return MessageResponse.model_validate(message)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send_message(
        self,
        sender_id: uuid.UUID,
        conversation_id: uuid.UUID,
        content: str,
        type: MessageType = MessageType.TEXT,
        reply_to_id: uuid.UUID | None = None,
        metadata: dict | None = None,
        file: dict | None = None,
    ) -> MessageResponse:
        if type == MessageType.SYSTEM:
            raise ValidationException("System messages cannot be sent by users")

        participant = await self._require_participant(conversation_id, sender_id)
        if not has_permission(participant.permissions, PERMISSION_SEND_MESSAGES):
            raise ForbiddenException("No permission to send messages in this conversation")
        if type.value in FILE_MESSAGE_TYPES and not has_permission(
            participant.permissions, PERMISSION_SEND_FILES
        ):
            raise ForbiddenException("No permission to send files in this conversation")

        conversation = await self.repo.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundException("Conversation not found or access denied")

        if reply_to_id is not None:
            parent = await self.repo.get_message(reply_to_id)
            if parent is None or parent.conversation_id != conversation_id:
                raise NotFoundException("Replied-to message not found")

        file = file or {}
        message = await self.repo.create_message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=type,
            reply_to_id=reply_to_id,
            metadata_extra=jsonable_encoder(metadata or {}),
            file_url=file.get("url"),
            file_name=file.get("name"),
            file_size=file.get("size"),
            file_mime_type=file.get("mime_type"),
        )
        await self.repo.set_last_message(conversation, message)
        await self.repo.increment_unread(conversation_id, sender_id)
        participant.last_seen_at = utcnow()
        await self.db.flush()

        response = await self._response(message.id)
        self._emit_to_conversation(
            conversation_id,
            EVENT_MESSAGE_RECEIVED,
            {"message": response.model_dump(mode="json"), "conversation_id": str(conversation_id)},
        )
        await self._queue_notifications(conversation_id, sender_id, response)
        return response

    async def _queue_notifications(
        self, conversation_id: uuid.UUID, sender_id: uuid.UUID, message: MessageResponse
    ) -> None:
        """In-app notification for every recipient with notifications on; email for offline opt-ins."""
        if self.notifier is None:
            return
        participants = (await self.repo.list_participants([conversation_id]))[conversation_id]
        sender_name = message.sender.name if message.sender else "Someone"
        details = {
            "conversation_id": str(conversation_id),
            "message_id": str(message.id),
            "sender_name": sender_name,
            "message_preview": message.content[:MESSAGE_PREVIEW_LENGTH],
        }
        for participant in participants:
            if participant.user_id == sender_id or participant.is_muted:
                continue
            preferences = participant.preferences or {}
            if not preferences.get("notifications", True):
                continue
            on_commit(
                self.db,
                partial(
                    self.notifier.send_notification,
                    participant.user_id,
                    NotificationType.IN_APP,
                    f"New message from {sender_name}",
                    details,
                ),
            )
            online = self.registry is not None and self.registry.is_online(participant.user_id)
            if not online and preferences.get("email_notifications", False):
                on_commit(
                    self.db,
                    partial(
                        self.notifier.send_notification,
                        participant.user_id,
                        NotificationType.EMAIL,
                        f"New message from {sender_name}",
                        details,
                    ),
                )

    # ------------------------------------------------------------------
    # Edit / delete
    # ------------------------------------------------------------------

    async def edit_message(
        self, message_id: uuid.UUID, user_id: uuid.UUID, content: str
    ) -> MessageResponse:
        message = await self._require_message(message_id)
        if message.sender_id != user_id:
            raise ForbiddenException("Can only edit your own messages")
        if message.type != MessageType.TEXT:
            raise ForbiddenException("Only text messages can be edited")

        window = timedelta(minutes=settings.message_edit_window_minutes)
        if utcnow() - ensure_aware(message.created_at) > window:
            raise ForbiddenException(
                f"Message can only be edited within {settings.message_edit_window_minutes} minutes"
            )

        message.content = content
        message.is_edited = True
        message.edited_at = utcnow()
        await self.db.flush()

        response = await self._response(message.id)
        self._emit_to_conversation(
            message.conversation_id,
            EVENT_MESSAGE_UPDATED,
            {"message": response.model_dump(mode="json"), "conversation_id": str(message.conversation_id)},
        )
        return response

    async def delete_message(self, message_id: uuid.UUID, user_id: uuid.UUID) -> dict:
        """Tombstone the message. Content is kept for audit but hidden from listings."""
        message = await self._require_message(message_id)
        if message.sender_id != user_id:
            raise ForbiddenException("Can only delete your own messages")

        message.deleted_at = utcnow()
        message.metadata_extra = {**(message.metadata_extra or {}), "deleted": True}
        await self.db.flush()

        payload = {
            "message_id": str(message.id),
            "conversation_id": str(message.conversation_id),
            "deleted_by": str(user_id),
        }
        self._emit_to_conversation(message.conversation_id, EVENT_MESSAGE_REMOVED, payload)
        return payload

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def mark_message_read(self, message_id: uuid.UUID, user_id: uuid.UUID) -> dict:
        message = await self._require_message(message_id)
        participant = await self._require_participant(message.conversation_id, user_id)

        receipt = {
            "message_id": str(message.id),
            "conversation_id": str(message.conversation_id),
            "user_id": str(user_id),
        }
        if message.sender_id == user_id:
            return {**receipt, "read_at": None}

        now = utcnow()
        if message.read_at is None:
            message.read_at = now
        # Each reader keeps their own watermark; read_at only records the first reader.
        previous = ensure_aware(participant.last_read_at)
        unread_for_reader = previous is None or ensure_aware(message.created_at) > previous
        if previous is None or previous < now:
            participant.last_read_at = now
        if unread_for_reader and participant.unread_count > 0:
            participant.unread_count -= 1
        await self.db.flush()

        receipt["read_at"] = ensure_aware(message.read_at).isoformat()
        self._emit_to_conversation(message.conversation_id, EVENT_MESSAGE_READ, receipt)
        return receipt

    async def mark_delivered(self, message_id: uuid.UUID, user_id: uuid.UUID) -> dict | None:
        """Stamp delivery and tell the sender. No-op for the sender's own messages."""
        message = await self._require_message(message_id)
        await self._require_participant(message.conversation_id, user_id)
        if message.sender_id == user_id:
            return None

        if message.delivered_at is None:
            message.delivered_at = utcnow()
            await self.db.flush()

        payload = {
            "message_id": str(message.id),
            "conversation_id": str(message.conversation_id),
            "delivered_to": str(user_id),
            "delivered_at": ensure_aware(message.delivered_at).isoformat(),
        }
        if self.registry is not None:
            on_commit(
                self.db,
                partial(
                    self.registry.rooms.emit_to_user, message.sender_id, EVENT_MESSAGE_DELIVERED, payload
                ),
            )
        return payload

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_messages(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, page: int = 1, limit: int = 50
    ) -> MessagePage:
        await self._require_participant(conversation_id, user_id)
        messages, total = await self.repo.list_messages(
            conversation_id, limit, pagination_offset(page, limit)
        )
        return MessagePage(
            messages=[MessageResponse.model_validate(m) for m in messages],
            pagination=Pagination.build(page, limit, total),
        )
