"""Notification persistence and in-app delivery."""

from __future__ import annotations

import logging
import uuid
from functools import partial
from typing import Protocol

from fastapi.encoders import jsonable_encoder
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.base import utcnow
from src.database.session import SessionFactory, on_commit, session_scope
from src.exceptions import NotFoundException
from src.models.enums import NotificationStatus, NotificationType
from src.models.notification import Notification
from src.modules.realtime.constants import EVENT_NOTIFICATION_RECEIVED
from src.modules.realtime.rooms import RoomRouter

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    async def send_notification(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        message: str,
        details: dict | None = None,
    ) -> None: ...


class NotificationService:
    def __init__(self, db: AsyncSession, rooms: RoomRouter | None = None):
        self.db = db
        self.rooms = rooms

    async def create_notification(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        message: str,
        details: dict | None = None,
    ) -> Notification:
        """Persist a notification and, for in-app ones, push it once committed.

        Email and SMS rows stay PENDING for an external delivery worker.
        """
        notification = Notification(
            user_id=user_id,
            type=type,
            message=message,
            details=jsonable_encoder(details or {}),
            status=NotificationStatus.SENT
            if type == NotificationType.IN_APP
            else NotificationStatus.PENDING,
        )
        self.db.add(notification)
        await self.db.flush()

        if type == NotificationType.IN_APP and self.rooms is not None:
            payload = {
                "id": notification.id,
                "type": type.value,
                "message": message,
                "details": notification.details,
                "created_at": notification.created_at,
            }
            on_commit(
                self.db,
                partial(self.rooms.emit_to_user, user_id, EVENT_NOTIFICATION_RECEIVED, payload),
            )
        return notification

    async def mark_notification_read(
        self, notification_id: uuid.UUID, user_id: uuid.UUID
    ) -> Notification:
        result = await self.db.execute(
            select(Notification).where(
                Notification.id == notification_id, Notification.user_id == user_id
            )
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            raise NotFoundException("Notification not found")
        if notification.read_at is None:
            notification.read_at = utcnow()
            await self.db.flush()
        return notification

    async def count_unread(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.type == NotificationType.IN_APP,
                Notification.read_at.is_(None),
            )
        )
        return result.scalar_one()


class SessionNotificationSender:
    """NotificationSender that writes each notification in its own transaction.

    Services call it after their own transaction has committed, so a failed
    notification never rolls back the write that triggered it.
    """

    def __init__(self, rooms: RoomRouter | None = None, session_factory: SessionFactory | None = None):
        self.rooms = rooms
        self.session_factory = session_factory

    async def send_notification(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        message: str,
        details: dict | None = None,
    ) -> None:
        async with session_scope(self.session_factory) as db:
            await NotificationService(db, self.rooms).create_notification(
                user_id, type, message, details
            )
        logger.debug("Sent %s notification to user %s", type.value, user_id)
