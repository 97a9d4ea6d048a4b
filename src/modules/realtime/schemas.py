"""Pydantic v2 schemas for inbound socket event payloads and the admin HTTP surface."""

import uuid
from typing import Literal

from pydantic import BaseModel, Field

from src.models.enums import MessageType
from src.modules.conversation.schemas import ConversationCreate


class SocketEnvelope(BaseModel):
    event: str = Field(..., min_length=1, max_length=100)
    data: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class FileAttachment(BaseModel):
    url: str = Field(..., max_length=1000)
    name: str | None = Field(None, max_length=255)
    size: int | None = Field(None, ge=0)
    mime_type: str | None = Field(None, max_length=100)


class SendMessagePayload(BaseModel):
    conversation_id: uuid.UUID
    content: str = Field(..., min_length=1, max_length=10000)
    type: MessageType = MessageType.TEXT
    reply_to_id: uuid.UUID | None = None
    metadata: dict | None = None
    file: FileAttachment | None = None


class EditMessagePayload(BaseModel):
    message_id: uuid.UUID
    content: str = Field(..., min_length=1, max_length=10000)


class MessageRefPayload(BaseModel):
    message_id: uuid.UUID


# ---------------------------------------------------------------------------
# Conversations / presence
# ---------------------------------------------------------------------------


class ConversationRefPayload(BaseModel):
    conversation_id: uuid.UUID


class CreateConversationPayload(ConversationCreate):
    pass


class UpdatePresencePayload(BaseModel):
    status: Literal["online", "away", "busy"]


class GetOnlineUsersPayload(BaseModel):
    conversation_id: uuid.UUID | None = None


class EmptyPayload(BaseModel):
    pass


# ---------------------------------------------------------------------------
# File upload lifecycle markers
# ---------------------------------------------------------------------------


class FileUploadStartPayload(BaseModel):
    conversation_id: uuid.UUID
    file_name: str = Field(..., min_length=1, max_length=255)
    file_size: int | None = Field(None, ge=0)
    mime_type: str | None = Field(None, max_length=100)


class FileUploadProgressPayload(BaseModel):
    conversation_id: uuid.UUID
    upload_id: str = Field(..., min_length=1, max_length=100)
    progress: float = Field(..., ge=0, le=100)


class FileUploadCompletePayload(BaseModel):
    conversation_id: uuid.UUID
    upload_id: str = Field(..., min_length=1, max_length=100)
    file_url: str = Field(..., min_length=1, max_length=1000)
    file_name: str | None = Field(None, max_length=255)
    file_size: int | None = Field(None, ge=0)
    mime_type: str | None = Field(None, max_length=100)
    type: Literal["image", "video", "file"] = "file"
    message: str | None = Field(None, max_length=10000)


class MarkNotificationReadPayload(BaseModel):
    notification_id: uuid.UUID


# ---------------------------------------------------------------------------
# Calls, monitoring, announcements
# ---------------------------------------------------------------------------


class StartCallPayload(BaseModel):
    conversation_id: uuid.UUID
    call_type: Literal["voice", "video"] = "voice"


class MonitorConversationPayload(BaseModel):
    conversation_id: uuid.UUID
    action: Literal["start", "stop"] = "start"


class AnnouncementPayload(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    target: Literal["all", "super_admin", "manager", "consultant", "receptionist", "student"] = "all"
    urgent: bool = False


# ---------------------------------------------------------------------------
# HTTP admin responses
# ---------------------------------------------------------------------------


class RealtimeStats(BaseModel):
    total_connections: int
    online_users: int
    rooms: int
    typing_conversations: int
    typing_users: int


class UserConnectionStatus(BaseModel):
    user_id: uuid.UUID
    online: bool
    connection_count: int
    presence: str


class DisconnectRequest(BaseModel):
    reason: str = Field("Disconnected by administrator", max_length=255)


class DisconnectResponse(BaseModel):
    user_id: uuid.UUID
    disconnected_connections: int


class AnnouncementResponse(BaseModel):
    announcement: dict
    delivered: int
