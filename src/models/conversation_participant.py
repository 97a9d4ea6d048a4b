from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, UniqueConstraint
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin, utcnow
from src.models.enums import ParticipantRole, enum_values

if TYPE_CHECKING:
    from src.models.user import User


def default_participant_preferences() -> dict:
    return {"notifications": True, "sound_enabled": True, "email_notifications": False}


class ConversationParticipant(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "conversation_participants"

    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[ParticipantRole] = mapped_column(
        SQLAlchemyEnum(
            ParticipantRole,
            name="participant_role",
            native_enum=False,
            length=32,
            values_callable=enum_values,
        ),
        nullable=False,
        default=ParticipantRole.MEMBER,
    )
    added_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL")
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unread_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true"
    )
    is_muted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    is_pinned: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    permissions: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    preferences: Mapped[dict] = mapped_column(
        JSONType, nullable=False, default=default_participant_preferences
    )

    # Relationships
    user: Mapped[User] = relationship("User", foreign_keys=[user_id], lazy="joined")

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participants_conversation_user"),
        Index("ix_conversation_participants_user_id", "user_id"),
        Index("ix_conversation_participants_unread_count", "unread_count"),
    )
