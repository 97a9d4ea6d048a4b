"""Conversation model — a direct, group or support thread."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import ConversationPurpose, ConversationType, enum_values


def default_conversation_settings() -> dict:
    return {"notifications": True, "sound_enabled": True, "theme": "default"}


class Conversation(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "conversations"

    name: Mapped[str | None] = mapped_column(String(255))
    type: Mapped[ConversationType] = mapped_column(
        SQLAlchemyEnum(
            ConversationType,
            name="conversation_type",
            native_enum=False,
            length=32,
            values_callable=enum_values,
        ),
        nullable=False,
        default=ConversationType.DIRECT,
    )
    purpose: Mapped[ConversationPurpose] = mapped_column(
        SQLAlchemyEnum(
            ConversationPurpose,
            name="conversation_purpose",
            native_enum=False,
            length=32,
            values_callable=enum_values,
        ),
        nullable=False,
        default=ConversationPurpose.GENERAL,
    )
    description: Mapped[str | None] = mapped_column(String(1000))
    avatar: Mapped[str | None] = mapped_column(String(500))
    created_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    office_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("offices.id", ondelete="SET NULL")
    )
    last_message_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true"
    )
    is_archived: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    is_pinned: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    settings: Mapped[dict] = mapped_column(
        JSONType, nullable=False, default=default_conversation_settings
    )
    metadata_extra: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_conversations_type_purpose", "type", "purpose"),
        Index("ix_conversations_last_message_at", "last_message_at"),
        Index("ix_conversations_active_archived", "is_active", "is_archived"),
        Index("ix_conversations_office_id", "office_id"),
    )
