import enum


class UserRole(str, enum.Enum):
    SUPER_ADMIN = "super_admin"
    MANAGER = "manager"
    CONSULTANT = "consultant"
    RECEPTIONIST = "receptionist"
    STUDENT = "student"


class ConversationType(str, enum.Enum):
    DIRECT = "direct"
    GROUP = "group"
    SUPPORT = "support"


class ConversationPurpose(str, enum.Enum):
    LEAD_CONSULTANT = "lead_consultant"
    MANAGER_CONSULTANT = "manager_consultant"
    MANAGER_RECEPTIONIST = "manager_receptionist"
    MANAGER_LEAD = "manager_lead"
    GENERAL = "general"
    SUPPORT = "support"


class ParticipantRole(str, enum.Enum):
    ADMIN = "admin"
    MEMBER = "member"
    MODERATOR = "moderator"


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    SYSTEM = "system"


class NotificationType(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class NotificationStatus(str, enum.Enum):
    SENT = "sent"
    PENDING = "pending"
    FAILED = "failed"


class PresenceStatus(str, enum.Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (the wire strings) rather than member names."""
    return [member.value for member in enum_cls]
