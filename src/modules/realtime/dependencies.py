"""Process-wide realtime singletons and their FastAPI dependency getters."""

import uuid

from src.config import settings
from src.database.session import session_scope
from src.modules.conversation.repository import ConversationRepository
from src.modules.notification.service import SessionNotificationSender
from src.modules.realtime.gateway import EventGateway
from src.modules.realtime.presence import MembershipLookup, PresenceRegistry


async def _conversations_for_user(user_id: uuid.UUID) -> list[uuid.UUID]:
    async with session_scope() as db:
        return await ConversationRepository(db).conversation_ids_for_user(user_id)


async def _peers_for_user(user_id: uuid.UUID) -> set[uuid.UUID]:
    async with session_scope() as db:
        return await ConversationRepository(db).peer_ids_for_user(user_id)


presence_registry = PresenceRegistry(
    lookup=MembershipLookup(
        conversations_for_user=_conversations_for_user,
        peers_for_user=_peers_for_user,
    ),
    typing_timeout_seconds=settings.typing_timeout_seconds,
)
notification_sender = SessionNotificationSender(rooms=presence_registry.rooms)
event_gateway = EventGateway(presence_registry, notifier=notification_sender)


def get_presence_registry() -> PresenceRegistry:
    return presence_registry


def get_notification_sender() -> SessionNotificationSender:
    return notification_sender


def get_event_gateway() -> EventGateway:
    return event_gateway
