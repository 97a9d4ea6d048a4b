"""Pydantic v2 schemas for conversations, participants and messages."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from src.models.enums import (
    ConversationPurpose,
    ConversationType,
    MessageType,
    ParticipantRole,
    UserRole,
)

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    email: str
    role: UserRole
    avatar_url: str | None = None
    office_id: uuid.UUID | None = None


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> Pagination:
        total_pages = (total + limit - 1) // limit if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total=total,
            has_next=page < total_pages,
            has_previous=page > 1,
        )


def pagination_offset(page: int, limit: int) -> int:
    return (max(page, 1) - 1) * limit


class ConversationFilters(BaseModel):
    type: ConversationType | None = None
    purpose: ConversationPurpose | None = None
    purposes: list[ConversationPurpose] | None = None
    office_id: uuid.UUID | None = None
    archived: bool | None = None
    search: str | None = None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    sender: UserSummary | None = None
    content: str
    type: MessageType
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    file_mime_type: str | None = None
    reply_to_id: uuid.UUID | None = None
    metadata: dict = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_extra", "metadata")
    )
    is_edited: bool = False
    edited_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    created_at: datetime


class MessagePage(BaseModel):
    messages: list[MessageResponse]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Participants / conversations
# ---------------------------------------------------------------------------


class ParticipantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    user: UserSummary | None = None
    role: ParticipantRole
    joined_at: datetime
    last_read_at: datetime | None = None
    unread_count: int = 0
    is_muted: bool = False
    is_pinned: bool = False
    permissions: dict = Field(default_factory=dict)
    is_online: bool = False


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str | None = None
    type: ConversationType
    purpose: ConversationPurpose
    description: str | None = None
    avatar: str | None = None
    created_by: uuid.UUID
    office_id: uuid.UUID | None = None
    last_message_id: uuid.UUID | None = None
    last_message_at: datetime | None = None
    is_archived: bool = False
    is_pinned: bool = False
    settings: dict = Field(default_factory=dict)
    metadata: dict = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_extra", "metadata")
    )
    created_at: datetime
    updated_at: datetime


class ConversationSummary(ConversationResponse):
    """A conversation as rendered in a list page for one viewer."""

    participants: list[ParticipantResponse] = []
    last_message: MessageResponse | None = None
    unread_count: int = 0
    display_name: str | None = None


class ParticipantView(ConversationSummary):
    """Conversation as seen by one of its active participants."""

    view: Literal["participant"] = "participant"
    user_role: ParticipantRole
    permissions: dict = Field(default_factory=dict)
    last_read_at: datetime | None = None


class MonitorView(ConversationSummary):
    """Read-only projection for managers and super admins who are not participants."""

    view: Literal["monitor"] = "monitor"
    user_role: Literal["monitor"] = "monitor"
    unread_count: int = 0
    monitored_by_role: str


ConversationView = Annotated[ParticipantView | MonitorView, Field(discriminator="view")]


class ConversationPage(BaseModel):
    conversations: list[ConversationSummary]
    pagination: Pagination


class ConversationStats(BaseModel):
    total_messages: int
    participant_count: int
    messages_by_type: dict[str, int]


class UnreadCounts(BaseModel):
    total_unread: int
    conversation_counts: dict[uuid.UUID, int]
    unread_notifications: int = 0


class LeadConversationEntry(BaseModel):
    lead_id: uuid.UUID
    status: str
    student: UserSummary | None = None
    conversation_id: uuid.UUID | None = None
    unread_count: int = 0
    last_message: MessageResponse | None = None


class LeadConversationPage(BaseModel):
    leads: list[LeadConversationEntry]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class ConversationCreate(BaseModel):
    participants: list[uuid.UUID] = Field(..., min_length=1)
    type: ConversationType = ConversationType.DIRECT
    purpose: ConversationPurpose = ConversationPurpose.GENERAL
    name: str | None = Field(None, max_length=255)
    description: str | None = Field(None, max_length=1000)
    settings: dict | None = None


class ConversationUpdate(BaseModel):
    name: str | None = Field(None, max_length=255)
    description: str | None = Field(None, max_length=1000)
    avatar: str | None = Field(None, max_length=500)
    settings: dict | None = None


class AddParticipantsRequest(BaseModel):
    user_ids: list[uuid.UUID] = Field(..., min_length=1)


class ArchiveRequest(BaseModel):
    archived: bool = True


class LeadConversationRequest(BaseModel):
    lead_user_id: uuid.UUID


class TypingRequest(BaseModel):
    is_typing: bool = True


class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)
    type: MessageType = MessageType.TEXT
    reply_to_id: uuid.UUID | None = None
    metadata: dict | None = None


class MessageUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)
