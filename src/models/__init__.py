# Import all models so SQLAlchemy metadata is populated for Alembic and create_all
from src.models.conversation import Conversation
from src.models.conversation_participant import ConversationParticipant
from src.models.enums import (
    ConversationPurpose,
    ConversationType,
    MessageType,
    NotificationStatus,
    NotificationType,
    ParticipantRole,
    PresenceStatus,
    UserRole,
)
from src.models.lead import Lead
from src.models.message import Message
from src.models.notification import Notification
from src.models.office import Office
from src.models.user import User

__all__ = [
    "Conversation",
    "ConversationParticipant",
    "ConversationPurpose",
    "ConversationType",
    "Lead",
    "Message",
    "MessageType",
    "Notification",
    "NotificationStatus",
    "NotificationType",
    "Office",
    "ParticipantRole",
    "PresenceStatus",
    "User",
    "UserRole",
]
