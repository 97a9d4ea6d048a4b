"""Create messaging schema - directory tables, conversations, messages, notifications

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # 1. offices
    op.create_table(
        "offices",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("region", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
        *_timestamps(),
    )

    # 2. users (mirrored from the directory service)
    op.create_table(
        "users",
        _id(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("role", sa.String(32), server_default="student", nullable=False),
        sa.Column("office_id", UUID(as_uuid=True), sa.ForeignKey("offices.id", ondelete="SET NULL"), nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "role IN ('super_admin', 'manager', 'consultant', 'receptionist', 'student')",
            name="ck_users_role",
        ),
    )
    op.create_index("ix_users_office_id", "users", ["office_id"])
    op.create_index("ix_users_role", "users", ["role"])

    # 3. leads
    op.create_table(
        "leads",
        _id(),
        sa.Column("student_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "assigned_consultant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("office_id", UUID(as_uuid=True), sa.ForeignKey("offices.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(50), server_default="new", nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_leads_student_id", "leads", ["student_id"])
    op.create_index("ix_leads_assigned_consultant_id", "leads", ["assigned_consultant_id"])

    # 4. conversations
    op.create_table(
        "conversations",
        _id(),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("type", sa.String(32), server_default="direct", nullable=False),
        sa.Column("purpose", sa.String(32), server_default="general", nullable=False),
        sa.Column("description", sa.String(1000), nullable=True),
        sa.Column("avatar", sa.String(500), nullable=True),
        sa.Column("created_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("office_id", UUID(as_uuid=True), sa.ForeignKey("offices.id", ondelete="SET NULL"), nullable=True),
        sa.Column("last_message_id", UUID(as_uuid=True), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
        sa.Column("is_archived", sa.Boolean, server_default="false", nullable=False),
        sa.Column("is_pinned", sa.Boolean, server_default="false", nullable=False),
        sa.Column(
            "settings",
            JSONB,
            server_default=sa.text(
                """'{"notifications": true, "sound_enabled": true, "theme": "default"}'::jsonb"""
            ),
            nullable=False,
        ),
        sa.Column("metadata_extra", JSONB, server_default="{}", nullable=False),
        *_timestamps(),
        sa.CheckConstraint("type IN ('direct', 'group', 'support')", name="ck_conversations_type"),
        sa.CheckConstraint(
            "purpose IN ('lead_consultant', 'manager_consultant', 'manager_receptionist', "
            "'manager_lead', 'general', 'support')",
            name="ck_conversations_purpose",
        ),
    )
    op.create_index("ix_conversations_type_purpose", "conversations", ["type", "purpose"])
    op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"])
    op.create_index("ix_conversations_active_archived", "conversations", ["is_active", "is_archived"])
    op.create_index("ix_conversations_office_id", "conversations", ["office_id"])

    # 5. conversation_participants
    op.create_table(
        "conversation_participants",
        _id(),
        sa.Column(
            "conversation_id",
            UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(32), server_default="member", nullable=False),
        sa.Column("added_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unread_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
        sa.Column("is_muted", sa.Boolean, server_default="false", nullable=False),
        sa.Column("is_pinned", sa.Boolean, server_default="false", nullable=False),
        sa.Column("permissions", JSONB, server_default="{}", nullable=False),
        sa.Column(
            "preferences",
            JSONB,
            server_default=sa.text(
                """'{"notifications": true, "sound_enabled": true, "email_notifications": false}'::jsonb"""
            ),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint("conversation_id", "user_id", name="uq_participants_conversation_user"),
        sa.CheckConstraint("unread_count >= 0", name="ck_participants_unread_non_negative"),
    )
    op.create_index("ix_conversation_participants_user_id", "conversation_participants", ["user_id"])
    op.create_index(
        "ix_conversation_participants_unread_count", "conversation_participants", ["unread_count"]
    )

    # 6. messages
    op.create_table(
        "messages",
        _id(),
        sa.Column(
            "conversation_id",
            UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("type", sa.String(32), server_default="text", nullable=False),
        sa.Column("file_url", sa.String(1000), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("file_size", sa.BigInteger, nullable=True),
        sa.Column("file_mime_type", sa.String(100), nullable=True),
        sa.Column("reply_to_id", UUID(as_uuid=True), sa.ForeignKey("messages.id", ondelete="SET NULL"), nullable=True),
        sa.Column("metadata_extra", JSONB, server_default="{}", nullable=False),
        sa.Column("is_edited", sa.Boolean, server_default="false", nullable=False),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "type IN ('text', 'image', 'video', 'file', 'system')", name="ck_messages_type"
        ),
    )
    op.create_index("ix_messages_conversation_created", "messages", ["conversation_id", "created_at"])
    op.create_index("ix_messages_sender_id", "messages", ["sender_id"])

    # 7. notifications
    op.create_table(
        "notifications",
        _id(),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(16), server_default="in_app", nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("status", sa.String(16), server_default="pending", nullable=False),
        sa.Column("details", JSONB, server_default="{}", nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "read_at"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("messages")
    op.drop_table("conversation_participants")
    op.drop_table("conversations")
    op.drop_table("leads")
    op.drop_table("users")
    op.drop_table("offices")
