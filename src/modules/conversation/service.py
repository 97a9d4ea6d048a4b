"""Conversation service — lifecycle, membership, read state and monitoring views.

Every mutating operation writes through the repository on the caller's
session and queues its realtime fan-out and notifications with
``on_commit``, so listeners only hear about changes that were persisted.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from functools import partial

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.base import ensure_aware, utcnow
from src.database.session import on_commit, savepoint
from src.exceptions import (
    AppException,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from src.models.conversation import Conversation
from src.models.conversation_participant import ConversationParticipant
from src.models.enums import (
    ConversationPurpose,
    ConversationType,
    MessageType,
    NotificationType,
    ParticipantRole,
    UserRole,
)
from src.models.message import Message
from src.models.user import User
from src.modules.conversation.constants import (
    DEFAULT_GROUP_NAME,
    MONITOR_ROLES,
    PERMISSION_ADD_MEMBERS,
    PERMISSION_EDIT_CONVERSATION,
    PERMISSION_REMOVE_MEMBERS,
    SYSTEM_EVENT_CONVERSATION_CREATED,
    SYSTEM_EVENT_PARTICIPANT_LEFT,
    SYSTEM_EVENT_PARTICIPANT_REMOVED,
    SYSTEM_EVENT_PARTICIPANTS_ADDED,
)
from src.modules.conversation.permissions import get_default_permissions, has_permission
from src.modules.conversation.repository import ConversationRepository
from src.modules.conversation.schemas import (
    ConversationCreate,
    ConversationFilters,
    ConversationPage,
    ConversationResponse,
    ConversationStats,
    ConversationSummary,
    ConversationUpdate,
    LeadConversationEntry,
    LeadConversationPage,
    MessageResponse,
    MonitorView,
    Pagination,
    ParticipantResponse,
    ParticipantView,
    UnreadCounts,
    UserSummary,
    pagination_offset,
)
from src.modules.notification.service import NotificationSender
from src.modules.realtime.constants import (
    EVENT_CONVERSATION_ARCHIVED,
    EVENT_CONVERSATION_CREATED,
    EVENT_CONVERSATION_READ,
    EVENT_CONVERSATION_UPDATED,
    EVENT_PARTICIPANT_REMOVED,
    EVENT_PARTICIPANTS_ADDED,
)
from src.modules.realtime.presence import PresenceRegistry

logger = logging.getLogger(__name__)


class ConversationService:
    def __init__(
        self,
        db: AsyncSession,
        registry: PresenceRegistry | None = None,
        notifier: NotificationSender | None = None,
    ):
        self.db = db
        self.repo = ConversationRepository(db)
        self.registry = registry
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Side effects (run after commit)
    # ------------------------------------------------------------------

    def _emit_to_users(self, user_ids: Iterable[uuid.UUID], event: str, data: dict) -> None:
        if self.registry is None:
            return
        on_commit(self.db, partial(self.registry.rooms.emit_to_users, list(user_ids), event, data))

    def _emit_to_conversation(self, conversation_id: uuid.UUID, event: str, data: dict) -> None:
        if self.registry is None:
            return
        on_commit(
            self.db, partial(self.registry.rooms.emit_to_conversation, conversation_id, event, data)
        )

    def _join_room(self, user_ids: Iterable[uuid.UUID], conversation_id: uuid.UUID) -> None:
        if self.registry is None:
            return
        registry = self.registry
        members = list(user_ids)

        async def _join() -> None:
            for user_id in members:
                registry.add_user_to_conversation(user_id, conversation_id)

        on_commit(self.db, _join)

    def _leave_room(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> None:
        if self.registry is None:
            return
        registry = self.registry

        async def _leave() -> None:
            await registry.typing.stop(conversation_id, user_id)
            registry.remove_user_from_conversation(user_id, conversation_id)

        on_commit(self.db, _leave)

    def _notify(self, user_ids: Iterable[uuid.UUID], message: str, details: dict) -> None:
        if self.notifier is None:
            return
        for user_id in user_ids:
            on_commit(
                self.db,
                partial(
                    self.notifier.send_notification,
                    user_id,
                    NotificationType.IN_APP,
                    message,
                    details,
                ),
            )

    # ------------------------------------------------------------------
    # Access helpers
    # ------------------------------------------------------------------

    async def _require_participant(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> ConversationParticipant:
        participant = await self.repo.get_participant(conversation_id, user_id)
        if participant is None:
            raise NotFoundException("Conversation not found or access denied")
        return participant

    async def _require_conversation(self, conversation_id: uuid.UUID) -> Conversation:
        conversation = await self.repo.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundException("Conversation not found")
        return conversation

    async def _system_message(
        self, conversation: Conversation, sender_id: uuid.UUID, content: str, metadata: dict
    ) -> Message:
        message = await self.repo.create_message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            content=content,
            type=MessageType.SYSTEM,
            metadata_extra=jsonable_encoder(metadata),
        )
        await self.repo.set_last_message(conversation, message)
        return message

    # ------------------------------------------------------------------
    # View building
    # ------------------------------------------------------------------

    def _participant_responses(
        self, participants: list[ConversationParticipant]
    ) -> list[ParticipantResponse]:
        responses = []
        for participant in participants:
            response = ParticipantResponse.model_validate(participant)
            if self.registry is not None:
                response.is_online = self.registry.is_online(participant.user_id)
            responses.append(response)
        return responses

    @staticmethod
    def _display_name(
        conversation: Conversation,
        participants: list[ConversationParticipant],
        viewer_id: uuid.UUID | None,
    ) -> str | None:
        if conversation.name:
            return conversation.name
        if viewer_id is None:
            # Monitoring label, e.g. "Consultant Name - Student Name"
            consultant = next(
                (p.user for p in participants if p.user and p.user.role == UserRole.CONSULTANT), None
            )
            student = next(
                (p.user for p in participants if p.user and p.user.role == UserRole.STUDENT), None
            )
            if consultant is not None or student is not None:
                return (
                    f"{consultant.name if consultant else 'Unknown'} - "
                    f"{student.name if student else 'Unknown'}"
                )
            return None
        others = [p.user.name for p in participants if p.user_id != viewer_id and p.user]
        return ", ".join(others) or None

    async def _summaries(
        self, conversations: list[Conversation], viewer_id: uuid.UUID | None
    ) -> list[ConversationSummary]:
        """Build list rows with batched participant, last-message and unread lookups."""
        ids = [c.id for c in conversations]
        participants = await self.repo.list_participants(ids)
        last_messages = await self.repo.last_messages(conversations)
        if viewer_id is not None:
            unread = await self.repo.unread_counts(viewer_id, ids)
        else:
            unread = await self.repo.unread_message_counts(ids)

        summaries = []
        for conversation in conversations:
            members = participants.get(conversation.id, [])
            last = last_messages.get(conversation.id)
            summaries.append(
                ConversationSummary(
                    **ConversationResponse.model_validate(conversation).model_dump(),
                    participants=self._participant_responses(members),
                    last_message=MessageResponse.model_validate(last) if last else None,
                    unread_count=unread.get(conversation.id, 0),
                    display_name=self._display_name(conversation, members, viewer_id),
                )
            )
        return summaries

    async def _participant_view(
        self, conversation: Conversation, participant: ConversationParticipant
    ) -> ParticipantView:
        summary = (await self._summaries([conversation], participant.user_id))[0]
        return ParticipantView(
            **summary.model_dump(exclude={"unread_count", "last_read_at"}),
            unread_count=participant.unread_count,
            user_role=participant.role,
            permissions=dict(participant.permissions or {}),
            last_read_at=participant.last_read_at,
        )

    async def _monitor_view(self, conversation: Conversation, viewer_role: str) -> MonitorView:
        summary = (await self._summaries([conversation], None))[0]
        return MonitorView(
            **summary.model_dump(exclude={"unread_count"}),
            unread_count=0,
            monitored_by_role=viewer_role,
        )

    async def _page(
        self,
        conversations: list[Conversation],
        total: int,
        page: int,
        limit: int,
        viewer_id: uuid.UUID | None,
    ) -> ConversationPage:
        return ConversationPage(
            conversations=await self._summaries(conversations, viewer_id),
            pagination=Pagination.build(page, limit, total),
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_conversation(
        self, creator_id: uuid.UUID, data: ConversationCreate
    ) -> ParticipantView:
        """Create a conversation, or return the existing direct one for the same pair and purpose."""
        creator = await self.repo.get_user(creator_id)
        if creator is None:
            raise NotFoundException("Creator not found")

        participant_ids = list(dict.fromkeys([creator_id, *data.participants]))
        if data.type == ConversationType.DIRECT and len(participant_ids) != 2:
            raise ValidationException(
                "A direct conversation must have exactly two participants",
                details=[{"field": "participants", "message": "Expected exactly one other user"}],
            )

        users = await self.repo.get_users(participant_ids)
        if len(users) != len(participant_ids):
            raise NotFoundException("One or more users not found")

        if data.type == ConversationType.DIRECT:
            existing = await self.repo.find_direct_conversation(
                (participant_ids[0], participant_ids[1]), data.purpose
            )
            if existing is not None:
                participant = await self._require_participant(existing.id, creator_id)
                return await self._participant_view(existing, participant)

        settings_value = {"notifications": True, "sound_enabled": True, "theme": "default"}
        settings_value.update(data.settings or {})

        conversation = await self.repo.create_conversation(
            name=data.name or (None if data.type == ConversationType.DIRECT else DEFAULT_GROUP_NAME),
            type=data.type,
            purpose=data.purpose,
            description=data.description,
            office_id=creator.office_id,
            created_by=creator_id,
            settings=jsonable_encoder(settings_value),
        )

        creator_participant = None
        for user_id in participant_ids:
            is_creator = user_id == creator_id
            participant, _ = await self.repo.upsert_participant(
                conversation.id,
                user_id,
                role=ParticipantRole.ADMIN if is_creator else ParticipantRole.MEMBER,
                permissions=get_default_permissions(data.purpose, is_creator),
                added_by=creator_id,
            )
            if is_creator:
                creator_participant = participant

        if data.type == ConversationType.GROUP:
            await self._system_message(
                conversation,
                creator_id,
                f"{creator.name} created this group conversation",
                {"system_event": SYSTEM_EVENT_CONVERSATION_CREATED},
            )

        view = await self._participant_view(conversation, creator_participant)
        logger.info(
            "Created %s conversation %s (%s) with %d participants",
            data.type.value,
            conversation.id,
            data.purpose.value,
            len(participant_ids),
        )

        self._join_room(participant_ids, conversation.id)
        self._emit_to_users(
            participant_ids, EVENT_CONVERSATION_CREATED, {"conversation": view.model_dump(mode="json")}
        )
        self._notify(
            [uid for uid in participant_ids if uid != creator_id],
            f"{creator.name} started a conversation with you",
            {
                "conversation_id": str(conversation.id),
                "creator_id": str(creator_id),
                "purpose": data.purpose.value,
            },
        )
        return view

    async def find_existing_direct_conversation(
        self, pair: tuple[uuid.UUID, uuid.UUID], purpose: ConversationPurpose
    ) -> Conversation | None:
        if len(set(pair)) != 2:
            return None
        return await self.repo.find_direct_conversation(pair, purpose)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_conversation_by_id(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, user_role: str | None = None
    ) -> ParticipantView | MonitorView:
        """Participant view for members, monitor view for managers and super admins.

        Non-members without a monitoring role get NotFound whether or not the
        conversation exists.
        """
        participant = await self.repo.get_participant(conversation_id, user_id)
        if participant is not None:
            conversation = await self._require_conversation(conversation_id)
            return await self._participant_view(conversation, participant)

        if user_role not in MONITOR_ROLES:
            raise NotFoundException("Conversation not found or access denied")

        conversation = await self._require_conversation(conversation_id)
        if user_role == UserRole.MANAGER.value:
            await self._require_same_office(user_id, conversation)
        return await self._monitor_view(conversation, user_role)

    async def _require_same_office(self, manager_id: uuid.UUID, conversation: Conversation) -> User:
        manager = await self.repo.get_user(manager_id)
        if manager is None or manager.office_id is None or manager.office_id != conversation.office_id:
            raise ForbiddenException("Access denied to this conversation")
        return manager

    async def get_user_conversations(
        self,
        user_id: uuid.UUID,
        filters: ConversationFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ConversationPage:
        conversations, total = await self.repo.list_conversations_for_user(
            user_id, filters or ConversationFilters(), limit, pagination_offset(page, limit)
        )
        return await self._page(conversations, total, page, limit, user_id)

    async def get_manager_conversations(
        self, manager_id: uuid.UUID, page: int = 1, limit: int = 20
    ) -> ConversationPage:
        """Lead-consultant conversations in the manager's office."""
        manager = await self.repo.get_user(manager_id)
        if manager is None or manager.office_id is None:
            raise NotFoundException("Manager office not found")
        filters = ConversationFilters(
            purpose=ConversationPurpose.LEAD_CONSULTANT, office_id=manager.office_id
        )
        conversations, total = await self.repo.list_conversations(
            filters, limit, pagination_offset(page, limit)
        )
        return await self._page(conversations, total, page, limit, None)

    async def get_super_admin_conversations(
        self, office_id: uuid.UUID | None = None, page: int = 1, limit: int = 20
    ) -> ConversationPage:
        filters = ConversationFilters(
            purpose=ConversationPurpose.LEAD_CONSULTANT, office_id=office_id
        )
        conversations, total = await self.repo.list_conversations(
            filters, limit, pagination_offset(page, limit)
        )
        return await self._page(conversations, total, page, limit, None)

    async def get_office_conversations_for_monitoring(
        self,
        office_id: uuid.UUID,
        viewer_id: uuid.UUID,
        viewer_role: str,
        purpose: ConversationPurpose | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ConversationPage:
        if viewer_role not in MONITOR_ROLES:
            raise ForbiddenException("Monitoring requires a manager or super admin role")
        if viewer_role == UserRole.MANAGER.value:
            viewer = await self.repo.get_user(viewer_id)
            if viewer is None or viewer.office_id != office_id:
                raise ForbiddenException("Access denied to this office")
        filters = ConversationFilters(office_id=office_id, purpose=purpose)
        conversations, total = await self.repo.list_conversations(
            filters, limit, pagination_offset(page, limit)
        )
        return await self._page(conversations, total, page, limit, None)

    async def get_all_conversations_for_monitoring(
        self,
        office_id: uuid.UUID | None = None,
        purpose: ConversationPurpose | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ConversationPage:
        filters = ConversationFilters(office_id=office_id, purpose=purpose)
        conversations, total = await self.repo.list_conversations(
            filters, limit, pagination_offset(page, limit)
        )
        return await self._page(conversations, total, page, limit, None)

    async def get_conversation_stats(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> ConversationStats:
        await self._require_participant(conversation_id, user_id)
        by_type = await self.repo.count_messages_by_type(conversation_id)
        participant_ids = await self.repo.active_participant_ids(conversation_id)
        return ConversationStats(
            total_messages=sum(by_type.values()),
            participant_count=len(participant_ids),
            messages_by_type=by_type,
        )

    async def get_unread_counts(self, user_id: uuid.UUID) -> UnreadCounts:
        counts = await self.repo.unread_counts(user_id)
        return UnreadCounts(
            total_unread=sum(counts.values()),
            conversation_counts={cid: count for cid, count in counts.items() if count > 0},
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_conversation(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, updates: ConversationUpdate
    ) -> ParticipantView:
        participant = await self._require_participant(conversation_id, user_id)
        if participant.role != ParticipantRole.ADMIN and not has_permission(
            participant.permissions, PERMISSION_EDIT_CONVERSATION
        ):
            raise ForbiddenException("No permission to update this conversation")

        conversation = await self._require_conversation(conversation_id)
        changes = updates.model_dump(exclude_unset=True)
        if "settings" in changes:
            merged = dict(conversation.settings or {})
            merged.update(changes.pop("settings") or {})
            conversation.settings = jsonable_encoder(merged)
        for field, value in changes.items():
            setattr(conversation, field, value)
        await self.db.flush()

        view = await self._participant_view(conversation, participant)
        self._emit_to_conversation(
            conversation_id,
            EVENT_CONVERSATION_UPDATED,
            {"conversation": view.model_dump(mode="json"), "updated_by": str(user_id)},
        )
        return view

    async def add_participants(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, user_ids: list[uuid.UUID]
    ) -> list[UserSummary]:
        """Add or re-activate participants. Returns the users that actually joined."""
        participant = await self._require_participant(conversation_id, user_id)
        if not has_permission(participant.permissions, PERMISSION_ADD_MEMBERS):
            raise ForbiddenException("No permission to add participants")

        conversation = await self._require_conversation(conversation_id)
        requested = list(dict.fromkeys(user_ids))
        users = await self.repo.get_users(requested)
        if len(users) != len(requested):
            raise NotFoundException("One or more users not found")

        users_by_id = {u.id: u for u in users}
        added: list[User] = []
        for new_user_id in requested:
            _, changed = await self.repo.upsert_participant(
                conversation_id,
                new_user_id,
                role=ParticipantRole.MEMBER,
                permissions=get_default_permissions(conversation.purpose, False),
                added_by=user_id,
            )
            if changed:
                added.append(users_by_id[new_user_id])

        if not added:
            return []

        adder = participant.user
        adder_name = adder.name if adder else "Someone"
        added_names = ", ".join(u.name for u in added)
        await self._system_message(
            conversation,
            user_id,
            f"{adder_name} added {added_names} to the conversation",
            {
                "system_event": SYSTEM_EVENT_PARTICIPANTS_ADDED,
                "added_user_ids": [u.id for u in added],
            },
        )

        summaries = [UserSummary.model_validate(u) for u in added]
        added_ids = [u.id for u in added]
        self._join_room(added_ids, conversation_id)
        self._emit_to_conversation(
            conversation_id,
            EVENT_PARTICIPANTS_ADDED,
            {
                "conversation_id": str(conversation_id),
                "added_users": [s.model_dump(mode="json") for s in summaries],
                "added_by": str(user_id),
            },
        )
        self._notify(
            added_ids,
            f"{adder_name} added you to a conversation",
            {"conversation_id": str(conversation_id), "added_by": str(user_id)},
        )
        logger.info("User %s added %d participants to %s", user_id, len(added), conversation_id)
        return summaries

    async def remove_participant(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, target_user_id: uuid.UUID
    ) -> None:
        is_leaving = user_id == target_user_id
        actor = await self._require_participant(conversation_id, user_id)
        if not is_leaving and not has_permission(actor.permissions, PERMISSION_REMOVE_MEMBERS):
            raise ForbiddenException("No permission to remove this participant")

        target = actor if is_leaving else await self.repo.get_participant(conversation_id, target_user_id)
        if target is None:
            raise NotFoundException("Participant not found")

        conversation = await self._require_conversation(conversation_id)
        if target_user_id == conversation.created_by and not is_leaving:
            raise ForbiddenException("Cannot remove conversation creator")

        await self.repo.soft_remove_participant(target)

        target_name = target.user.name if target.user else "A participant"
        if is_leaving:
            content = f"{target_name} left the conversation"
            system_event = SYSTEM_EVENT_PARTICIPANT_LEFT
        else:
            remover_name = actor.user.name if actor.user else "An admin"
            content = f"{remover_name} removed {target_name} from the conversation"
            system_event = SYSTEM_EVENT_PARTICIPANT_REMOVED
        await self._system_message(
            conversation,
            user_id,
            content,
            {"system_event": system_event, "removed_user_id": target_user_id},
        )

        self._emit_to_conversation(
            conversation_id,
            EVENT_PARTICIPANT_REMOVED,
            {
                "conversation_id": str(conversation_id),
                "removed_user": str(target_user_id),
                "removed_by": str(user_id),
                "is_leaving": is_leaving,
            },
        )
        self._leave_room(target_user_id, conversation_id)
        logger.info(
            "User %s %s conversation %s",
            target_user_id,
            "left" if is_leaving else f"was removed by {user_id} from",
            conversation_id,
        )

    async def mark_conversation_as_read(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> dict:
        """Zero the caller's unread counter and stamp every other sender's message read."""
        participant = await self._require_participant(conversation_id, user_id)

        now = utcnow()
        previous = ensure_aware(participant.last_read_at)
        read_at = previous if previous is not None and previous > now else now

        participant.unread_count = 0
        participant.last_read_at = read_at
        participant.last_seen_at = now
        await self.db.flush()
        await self.repo.mark_messages_read(conversation_id, user_id, read_at)

        receipt = {
            "conversation_id": str(conversation_id),
            "user_id": str(user_id),
            "read_at": read_at.isoformat(),
        }
        self._emit_to_conversation(conversation_id, EVENT_CONVERSATION_READ, receipt)
        return receipt

    async def archive_conversation(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, archived: bool
    ) -> dict:
        await self._require_participant(conversation_id, user_id)
        conversation = await self._require_conversation(conversation_id)
        conversation.is_archived = archived
        await self.db.flush()

        payload = {
            "conversation_id": str(conversation_id),
            "archived": archived,
            "archived_by": str(user_id),
        }
        self._emit_to_conversation(conversation_id, EVENT_CONVERSATION_ARCHIVED, payload)
        return payload

    async def send_typing_indicator(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        is_typing: bool,
        user_name: str | None = None,
    ) -> None:
        """Typing state is ephemeral, so it is dispatched immediately rather than on commit."""
        await self._require_participant(conversation_id, user_id)
        if self.registry is None:
            return
        if is_typing:
            await self.registry.typing.start(conversation_id, user_id, user_name)
        else:
            await self.registry.typing.stop(conversation_id, user_id)

    # ------------------------------------------------------------------
    # Lead conversations
    # ------------------------------------------------------------------

    async def verify_consultant_lead_access(
        self, consultant_id: uuid.UUID, lead_user_id: uuid.UUID
    ) -> bool:
        return await self.repo.is_lead_assigned_to(consultant_id, lead_user_id)

    async def get_or_create_lead_conversation(
        self, user_id: uuid.UUID, lead_user_id: uuid.UUID, user_role: str
    ) -> ParticipantView | MonitorView:
        """Consultants get or create their conversation with a lead; monitors only find it."""
        if user_role == UserRole.CONSULTANT.value:
            consultant_id, student_id = user_id, lead_user_id
        else:
            lead = await self.repo.get_lead_for_student(lead_user_id)
            if lead is None or lead.assigned_consultant_id is None:
                raise NotFoundException("Lead not found")
            consultant_id, student_id = lead.assigned_consultant_id, lead.student_id

        existing = await self.find_existing_direct_conversation(
            (consultant_id, student_id), ConversationPurpose.LEAD_CONSULTANT
        )
        if existing is not None:
            return await self.get_conversation_by_id(existing.id, user_id, user_role)

        if user_role != UserRole.CONSULTANT.value:
            raise NotFoundException("Conversation not found")

        return await self.create_conversation(
            consultant_id,
            ConversationCreate(
                participants=[consultant_id, student_id],
                type=ConversationType.DIRECT,
                purpose=ConversationPurpose.LEAD_CONSULTANT,
            ),
        )

    async def get_consultant_leads(
        self, consultant_id: uuid.UUID, page: int = 1, limit: int = 20
    ) -> LeadConversationPage:
        leads, total = await self.repo.list_leads_for_consultant(
            consultant_id, limit, pagination_offset(page, limit)
        )
        students = {u.id: u for u in await self.repo.get_users(lead.student_id for lead in leads)}
        by_student = await self.repo.direct_conversations_for_user(
            consultant_id, ConversationPurpose.LEAD_CONSULTANT
        )
        conversations = [
            by_student[lead.student_id] for lead in leads if lead.student_id in by_student
        ]
        unread = await self.repo.unread_counts(consultant_id, [c.id for c in conversations])
        last_messages = await self.repo.last_messages(conversations)

        entries = []
        for lead in leads:
            student = students.get(lead.student_id)
            if student is None:
                continue
            conversation = by_student.get(lead.student_id)
            last = last_messages.get(conversation.id) if conversation else None
            entries.append(
                LeadConversationEntry(
                    lead_id=lead.id,
                    status=lead.status,
                    student=UserSummary.model_validate(student),
                    conversation_id=conversation.id if conversation else None,
                    unread_count=unread.get(conversation.id, 0) if conversation else 0,
                    last_message=MessageResponse.model_validate(last) if last else None,
                )
            )
        return LeadConversationPage(leads=entries, pagination=Pagination.build(page, limit, total))

    async def auto_create_lead_conversations(self) -> int:
        """Ensure every assigned lead has a conversation with its consultant. Returns how many were created."""
        created = 0
        for lead in await self.repo.list_assigned_leads():
            existing = await self.find_existing_direct_conversation(
                (lead.assigned_consultant_id, lead.student_id), ConversationPurpose.LEAD_CONSULTANT
            )
            if existing is not None:
                continue
            try:
                async with savepoint(self.db):
                    await self.create_conversation(
                        lead.assigned_consultant_id,
                        ConversationCreate(
                            participants=[lead.student_id],
                            type=ConversationType.DIRECT,
                            purpose=ConversationPurpose.LEAD_CONSULTANT,
                        ),
                    )
            except AppException as exc:
                logger.warning("Skipping lead %s: %s", lead.id, exc.message)
                continue
            except IntegrityError:
                logger.warning("Skipping lead %s: conflicting write", lead.id)
                continue
            created += 1
        if created:
            logger.info("Auto-created %d lead conversations", created)
        return created
