"""Conversation and message API routers."""

import uuid

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.database.session import get_db
from src.exceptions import ForbiddenException
from src.middleware.rate_limit import limiter
from src.models.enums import ConversationPurpose, ConversationType, UserRole
from src.modules.auth.auth import AuthenticatedUser, get_current_user
from src.modules.auth.dependencies import require_roles
from src.modules.conversation.message_service import MessageService
from src.modules.conversation.schemas import (
    AddParticipantsRequest,
    ArchiveRequest,
    ConversationCreate,
    ConversationFilters,
    ConversationPage,
    ConversationStats,
    ConversationUpdate,
    ConversationView,
    LeadConversationPage,
    LeadConversationRequest,
    MessageCreate,
    MessagePage,
    MessageResponse,
    MessageUpdate,
    ParticipantView,
    TypingRequest,
    UnreadCounts,
    UserSummary,
)
from src.modules.conversation.service import ConversationService
from src.modules.notification.service import NotificationService, SessionNotificationSender
from src.modules.realtime.dependencies import get_notification_sender, get_presence_registry
from src.modules.realtime.presence import PresenceRegistry

router = APIRouter(prefix="/conversations", tags=["conversations"])
message_router = APIRouter(prefix="/messages", tags=["messages"])

_page = Query(1, ge=1)
_limit = Query(settings.default_page_size, ge=1, le=settings.max_page_size)


def _conversation_service(
    db: AsyncSession = Depends(get_db),
    registry: PresenceRegistry = Depends(get_presence_registry),
    notifier: SessionNotificationSender = Depends(get_notification_sender),
) -> ConversationService:
    return ConversationService(db, registry, notifier)


def _message_service(
    db: AsyncSession = Depends(get_db),
    registry: PresenceRegistry = Depends(get_presence_registry),
    notifier: SessionNotificationSender = Depends(get_notification_sender),
) -> MessageService:
    return MessageService(db, registry, notifier)


# ---------------------------------------------------------------------------
# Collection endpoints (declared before /{conversation_id})
# ---------------------------------------------------------------------------


@router.get("/", response_model=ConversationPage)
async def list_conversations(
    type: ConversationType | None = None,
    purpose: ConversationPurpose | None = None,
    archived: bool | None = None,
    search: str | None = Query(None, max_length=100),
    page: int = _page,
    limit: int = _limit,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    """Conversations the caller actively participates in, most recent first."""
    filters = ConversationFilters(type=type, purpose=purpose, archived=archived, search=search)
    return await svc.get_user_conversations(user.id, filters, page, limit)


@router.post("/", response_model=ParticipantView, status_code=201)
@limiter.limit("30/minute")
async def create_conversation(
    request: Request,
    body: ConversationCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    """Create a conversation; a direct one is returned as-is if it already exists."""
    return await svc.create_conversation(user.id, body)


@router.get("/unread-counts", response_model=UnreadCounts)
async def get_unread_counts(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    svc: ConversationService = Depends(_conversation_service),
):
    counts = await svc.get_unread_counts(user.id)
    counts.unread_notifications = await NotificationService(db).count_unread(user.id)
    return counts


@router.post("/lead", response_model=ConversationView)
async def get_or_create_lead_conversation(
    body: LeadConversationRequest,
    user: AuthenticatedUser = Depends(
        require_roles(UserRole.CONSULTANT.value, UserRole.MANAGER.value, UserRole.SUPER_ADMIN.value)
    ),
    svc: ConversationService = Depends(_conversation_service),
):
    if user.role == UserRole.CONSULTANT.value and not await svc.verify_consultant_lead_access(
        user.id, body.lead_user_id
    ):
        raise ForbiddenException("Access denied to this lead")
    return await svc.get_or_create_lead_conversation(user.id, body.lead_user_id, user.role)


@router.get("/consultant/leads", response_model=LeadConversationPage)
async def list_consultant_leads(
    page: int = _page,
    limit: int = _limit,
    user: AuthenticatedUser = Depends(require_roles(UserRole.CONSULTANT.value)),
    svc: ConversationService = Depends(_conversation_service),
):
    """Leads assigned to the calling consultant with their conversation state."""
    return await svc.get_consultant_leads(user.id, page, limit)


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


@router.get("/monitoring/lead-conversations", response_model=ConversationPage)
async def list_lead_conversations_for_monitoring(
    office_id: uuid.UUID | None = None,
    page: int = _page,
    limit: int = _limit,
    user: AuthenticatedUser = Depends(
        require_roles(UserRole.MANAGER.value, UserRole.SUPER_ADMIN.value)
    ),
    svc: ConversationService = Depends(_conversation_service),
):
    """Lead-consultant conversations: the manager's own office, or any office for super admins."""
    if user.role == UserRole.MANAGER.value:
        return await svc.get_manager_conversations(user.id, page, limit)
    return await svc.get_super_admin_conversations(office_id, page, limit)


@router.get("/monitoring/office/{office_id}", response_model=ConversationPage)
async def list_office_conversations_for_monitoring(
    office_id: uuid.UUID,
    purpose: ConversationPurpose | None = None,
    page: int = _page,
    limit: int = _limit,
    user: AuthenticatedUser = Depends(
        require_roles(UserRole.MANAGER.value, UserRole.SUPER_ADMIN.value)
    ),
    svc: ConversationService = Depends(_conversation_service),
):
    return await svc.get_office_conversations_for_monitoring(
        office_id, user.id, user.role, purpose, page, limit
    )


@router.get("/monitoring/all", response_model=ConversationPage)
async def list_all_conversations_for_monitoring(
    office_id: uuid.UUID | None = None,
    purpose: ConversationPurpose | None = None,
    page: int = _page,
    limit: int = _limit,
    user: AuthenticatedUser = Depends(require_roles(UserRole.SUPER_ADMIN.value)),
    svc: ConversationService = Depends(_conversation_service),
):
    return await svc.get_all_conversations_for_monitoring(office_id, purpose, page, limit)


# ---------------------------------------------------------------------------
# Single conversation
# ---------------------------------------------------------------------------


@router.get("/{conversation_id}", response_model=ConversationView)
async def get_conversation(
    conversation_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    return await svc.get_conversation_by_id(conversation_id, user.id, user.role)


@router.patch("/{conversation_id}", response_model=ParticipantView)
async def update_conversation(
    conversation_id: uuid.UUID,
    body: ConversationUpdate,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    return await svc.update_conversation(conversation_id, user.id, body)


@router.post("/{conversation_id}/participants", response_model=list[UserSummary])
async def add_participants(
    conversation_id: uuid.UUID,
    body: AddParticipantsRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    """Returns the users that actually joined; existing active members are skipped."""
    return await svc.add_participants(conversation_id, user.id, body.user_ids)


@router.delete("/{conversation_id}/participants/{user_id}", status_code=204)
async def remove_participant(
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    await svc.remove_participant(conversation_id, user.id, user_id)


@router.post("/{conversation_id}/read")
async def mark_conversation_as_read(
    conversation_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    return await svc.mark_conversation_as_read(conversation_id, user.id)


@router.post("/{conversation_id}/archive")
async def archive_conversation(
    conversation_id: uuid.UUID,
    body: ArchiveRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    return await svc.archive_conversation(conversation_id, user.id, body.archived)


@router.post("/{conversation_id}/typing", status_code=204)
async def send_typing_indicator(
    conversation_id: uuid.UUID,
    body: TypingRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    await svc.send_typing_indicator(conversation_id, user.id, body.is_typing, user.name)


@router.get("/{conversation_id}/stats", response_model=ConversationStats)
async def get_conversation_stats(
    conversation_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: ConversationService = Depends(_conversation_service),
):
    return await svc.get_conversation_stats(conversation_id, user.id)


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(
    conversation_id: uuid.UUID,
    page: int = _page,
    limit: int = Query(50, ge=1, le=settings.max_page_size),
    user: AuthenticatedUser = Depends(get_current_user),
    svc: MessageService = Depends(_message_service),
):
    return await svc.list_messages(conversation_id, user.id, page, limit)


@router.post("/{conversation_id}/messages", response_model=MessageResponse, status_code=201)
@limiter.limit("120/minute")
async def send_message(
    request: Request,
    conversation_id: uuid.UUID,
    body: MessageCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: MessageService = Depends(_message_service),
):
    return await svc.send_message(
        user.id, conversation_id, body.content, body.type, body.reply_to_id, body.metadata
    )


# ---------------------------------------------------------------------------
# Message endpoints
# ---------------------------------------------------------------------------


@message_router.patch("/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: uuid.UUID,
    body: MessageUpdate,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: MessageService = Depends(_message_service),
):
    return await svc.edit_message(message_id, user.id, body.content)


@message_router.delete("/{message_id}")
async def delete_message(
    message_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: MessageService = Depends(_message_service),
):
    return await svc.delete_message(message_id, user.id)


@message_router.post("/{message_id}/read")
async def mark_message_read(
    message_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: MessageService = Depends(_message_service),
):
    return await svc.mark_message_read(message_id, user.id)


@message_router.post("/{message_id}/delivered")
async def mark_message_delivered(
    message_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    svc: MessageService = Depends(_message_service),
):
    return await svc.mark_delivered(message_id, user.id)
