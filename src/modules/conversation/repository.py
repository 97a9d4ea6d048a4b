"""ConversationRepository — persistence gateway for conversations, participants and messages.

Each method flushes on the caller's session; none of them commits. Compound
service flows therefore succeed or roll back as one transaction.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.base import utcnow
from src.exceptions import ConflictException
from src.models.conversation import Conversation
from src.models.conversation_participant import ConversationParticipant
from src.models.enums import ConversationPurpose, ConversationType, ParticipantRole
from src.models.lead import Lead
from src.models.message import Message
from src.models.user import User
from src.modules.conversation.schemas import ConversationFilters

logger = logging.getLogger(__name__)


class ConversationRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Users and leads (read-only collaborators)
    # ------------------------------------------------------------------

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_users(self, user_ids: Iterable[uuid.UUID]) -> list[User]:
        ids = list(set(user_ids))
        if not ids:
            return []
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        return list(result.scalars().all())

    async def get_lead_for_student(self, student_id: uuid.UUID) -> Lead | None:
        result = await self.db.execute(
            select(Lead).where(Lead.student_id == student_id).order_by(Lead.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def is_lead_assigned_to(self, consultant_id: uuid.UUID, student_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(Lead.id)
            .where(Lead.assigned_consultant_id == consultant_id, Lead.student_id == student_id)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_leads_for_consultant(
        self, consultant_id: uuid.UUID, limit: int, offset: int
    ) -> tuple[list[Lead], int]:
        base = select(Lead).where(Lead.assigned_consultant_id == consultant_id)
        total = (
            await self.db.execute(select(func.count()).select_from(base.subquery()))
        ).scalar_one()
        result = await self.db.execute(
            base.order_by(Lead.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all()), total

    async def list_assigned_leads(self) -> list[Lead]:
        result = await self.db.execute(
            select(Lead).where(Lead.assigned_consultant_id.is_not(None))
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, **fields) -> Conversation:
        conversation = Conversation(**fields)
        self.db.add(conversation)
        await self.db.flush()
        return conversation

    async def get_conversation(
        self, conversation_id: uuid.UUID, active_only: bool = True
    ) -> Conversation | None:
        query = select(Conversation).where(Conversation.id == conversation_id)
        if active_only:
            query = query.where(Conversation.is_active.is_(True))
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find_direct_conversation(
        self, pair: tuple[uuid.UUID, uuid.UUID], purpose: ConversationPurpose
    ) -> Conversation | None:
        """Active direct conversation whose active participants are exactly ``pair``.

        Candidates are narrowed to conversations the first user belongs to,
        then matched in memory on the full active participant set.
        """
        first, second = sorted(pair, key=str)
        wanted = {first, second}

        candidates = (
            select(Conversation.id)
            .join(
                ConversationParticipant,
                ConversationParticipant.conversation_id == Conversation.id,
            )
            .where(
                Conversation.type == ConversationType.DIRECT,
                Conversation.purpose == purpose,
                Conversation.is_active.is_(True),
                ConversationParticipant.user_id == first,
                ConversationParticipant.is_active.is_(True),
            )
        )
        rows = await self.db.execute(
            select(ConversationParticipant.conversation_id, ConversationParticipant.user_id).where(
                ConversationParticipant.conversation_id.in_(candidates),
                ConversationParticipant.is_active.is_(True),
            )
        )
        members: dict[uuid.UUID, set[uuid.UUID]] = defaultdict(set)
        for conversation_id, user_id in rows.all():
            members[conversation_id].add(user_id)

        matches = [cid for cid, users in members.items() if users == wanted]
        if not matches:
            return None

        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.id.in_(matches))
            .order_by(Conversation.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _apply_filters(self, query, filters: ConversationFilters):
        if filters.type is not None:
            query = query.where(Conversation.type == filters.type)
        if filters.purpose is not None:
            query = query.where(Conversation.purpose == filters.purpose)
        if filters.purposes:
            query = query.where(Conversation.purpose.in_(filters.purposes))
        if filters.office_id is not None:
            query = query.where(Conversation.office_id == filters.office_id)
        if filters.archived is not None:
            query = query.where(Conversation.is_archived.is_(filters.archived))
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.where(
                or_(Conversation.name.ilike(pattern), Conversation.description.ilike(pattern))
            )
        return query

    async def _page(self, query, limit: int, offset: int) -> tuple[list[Conversation], int]:
        total = (
            await self.db.execute(select(func.count()).select_from(query.subquery()))
        ).scalar_one()
        result = await self.db.execute(
            query.order_by(
                Conversation.last_message_at.desc().nulls_last(),
                Conversation.created_at.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def list_conversations_for_user(
        self, user_id: uuid.UUID, filters: ConversationFilters, limit: int, offset: int
    ) -> tuple[list[Conversation], int]:
        query = (
            select(Conversation)
            .join(
                ConversationParticipant,
                ConversationParticipant.conversation_id == Conversation.id,
            )
            .where(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.is_active.is_(True),
                Conversation.is_active.is_(True),
            )
        )
        return await self._page(self._apply_filters(query, filters), limit, offset)

    async def list_conversations(
        self, filters: ConversationFilters, limit: int, offset: int
    ) -> tuple[list[Conversation], int]:
        """Unscoped listing for monitoring roles. Callers apply office scoping via filters."""
        query = select(Conversation).where(Conversation.is_active.is_(True))
        return await self._page(self._apply_filters(query, filters), limit, offset)

    async def set_last_message(self, conversation: Conversation, message: Message) -> None:
        conversation.last_message_id = message.id
        conversation.last_message_at = message.created_at
        await self.db.flush()

    async def conversation_ids_for_user(self, user_id: uuid.UUID) -> list[uuid.UUID]:
        result = await self.db.execute(
            select(ConversationParticipant.conversation_id)
            .join(Conversation, Conversation.id == ConversationParticipant.conversation_id)
            .where(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.is_active.is_(True),
                Conversation.is_active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def peer_ids_for_user(self, user_id: uuid.UUID) -> set[uuid.UUID]:
        """Users sharing at least one active conversation with ``user_id``."""
        own = select(ConversationParticipant.conversation_id).where(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.is_active.is_(True),
        )
        result = await self.db.execute(
            select(ConversationParticipant.user_id)
            .where(
                ConversationParticipant.conversation_id.in_(own),
                ConversationParticipant.is_active.is_(True),
                ConversationParticipant.user_id != user_id,
            )
            .distinct()
        )
        return set(result.scalars().all())

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    async def get_participant(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID, active_only: bool = True
    ) -> ConversationParticipant | None:
        query = select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
        if active_only:
            query = query.where(ConversationParticipant.is_active.is_(True))
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_participants(
        self, conversation_ids: Iterable[uuid.UUID], active_only: bool = True
    ) -> dict[uuid.UUID, list[ConversationParticipant]]:
        ids = list(conversation_ids)
        grouped: dict[uuid.UUID, list[ConversationParticipant]] = {cid: [] for cid in ids}
        if not ids:
            return grouped
        query = select(ConversationParticipant).where(
            ConversationParticipant.conversation_id.in_(ids)
        )
        if active_only:
            query = query.where(ConversationParticipant.is_active.is_(True))
        result = await self.db.execute(
            query.order_by(ConversationParticipant.joined_at.asc()).execution_options(
                populate_existing=True
            )
        )
        for participant in result.scalars().all():
            grouped[participant.conversation_id].append(participant)
        return grouped

    async def active_participant_ids(self, conversation_id: uuid.UUID) -> list[uuid.UUID]:
        result = await self.db.execute(
            select(ConversationParticipant.user_id).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.is_active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def upsert_participant(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        role: ParticipantRole,
        permissions: dict,
        added_by: uuid.UUID | None = None,
    ) -> tuple[ConversationParticipant, bool]:
        """Create the participant row, or reactivate a soft-removed one.

        Returns ``(participant, changed)``; ``changed`` is False when the user
        was already an active participant.
        """
        existing = await self.get_participant(conversation_id, user_id, active_only=False)
        if existing is not None:
            if existing.is_active:
                return existing, False
            existing.is_active = True
            existing.left_at = None
            existing.joined_at = utcnow()
            existing.added_by = added_by
            existing.role = role
            existing.permissions = dict(permissions)
            existing.unread_count = 0
            await self.db.flush()
            return existing, True

        participant = ConversationParticipant(
            conversation_id=conversation_id,
            user_id=user_id,
            role=role,
            permissions=dict(permissions),
            added_by=added_by,
        )
        self.db.add(participant)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            # a concurrent flow inserted the same (conversation, user) row first
            raise ConflictException("User is already a participant of this conversation") from exc
        return participant, True

    async def soft_remove_participant(self, participant: ConversationParticipant) -> None:
        participant.is_active = False
        participant.left_at = utcnow()
        await self.db.flush()

    async def increment_unread(self, conversation_id: uuid.UUID, sender_id: uuid.UUID) -> None:
        await self.db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id != sender_id,
                ConversationParticipant.is_active.is_(True),
            )
            .values(unread_count=ConversationParticipant.unread_count + 1)
        )
        await self.db.flush()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def create_message(self, **fields) -> Message:
        message = Message(**fields)
        self.db.add(message)
        await self.db.flush()
        return message

    async def get_message(self, message_id: uuid.UUID) -> Message | None:
        result = await self.db.execute(
            select(Message)
            .where(Message.id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_messages(
        self, conversation_id: uuid.UUID, limit: int, offset: int
    ) -> tuple[list[Message], int]:
        base = select(Message).where(
            Message.conversation_id == conversation_id,
            Message.deleted_at.is_(None),
        )
        total = (
            await self.db.execute(select(func.count()).select_from(base.subquery()))
        ).scalar_one()
        result = await self.db.execute(
            base.order_by(Message.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all()), total

    async def mark_messages_read(
        self, conversation_id: uuid.UUID, reader_id: uuid.UUID, read_at: datetime
    ) -> int:
        """Stamp ``read_at`` on every unread message from other senders."""
        result = await self.db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender_id != reader_id,
                Message.read_at.is_(None),
            )
            .values(read_at=read_at)
        )
        await self.db.flush()
        return result.rowcount or 0

    async def last_messages(self, conversations: Iterable[Conversation]) -> dict[uuid.UUID, Message]:
        ids = [c.last_message_id for c in conversations if c.last_message_id is not None]
        if not ids:
            return {}
        result = await self.db.execute(
            select(Message).where(Message.id.in_(ids), Message.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        return {message.conversation_id: message for message in result.scalars().all()}

    async def count_messages_by_type(self, conversation_id: uuid.UUID) -> dict[str, int]:
        result = await self.db.execute(
            select(Message.type, func.count())
            .where(Message.conversation_id == conversation_id, Message.deleted_at.is_(None))
            .group_by(Message.type)
        )
        return {message_type.value: count for message_type, count in result.all()}

    # ------------------------------------------------------------------
    # Unread counters
    # ------------------------------------------------------------------

    async def unread_counts(
        self, user_id: uuid.UUID, conversation_ids: Iterable[uuid.UUID] | None = None
    ) -> dict[uuid.UUID, int]:
        query = select(
            ConversationParticipant.conversation_id, ConversationParticipant.unread_count
        ).where(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.is_active.is_(True),
        )
        if conversation_ids is not None:
            ids = list(conversation_ids)
            if not ids:
                return {}
            query = query.where(ConversationParticipant.conversation_id.in_(ids))
        result = await self.db.execute(query)
        return {conversation_id: count for conversation_id, count in result.all()}

    async def count_unread(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(ConversationParticipant.unread_count), 0)).where(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.is_active.is_(True),
            )
        )
        return int(result.scalar_one())

    async def unread_message_counts(
        self, conversation_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, int]:
        """Messages nobody has read yet, per conversation. Used by monitoring lists."""
        ids = list(conversation_ids)
        if not ids:
            return {}
        result = await self.db.execute(
            select(Message.conversation_id, func.count())
            .where(
                Message.conversation_id.in_(ids),
                Message.read_at.is_(None),
                Message.deleted_at.is_(None),
            )
            .group_by(Message.conversation_id)
        )
        return {conversation_id: count for conversation_id, count in result.all()}

    async def direct_conversations_for_user(
        self, user_id: uuid.UUID, purpose: ConversationPurpose
    ) -> dict[uuid.UUID, Conversation]:
        """Map of counterpart user id to the two-party direct conversation shared with them."""
        own = (
            select(Conversation.id)
            .join(
                ConversationParticipant,
                ConversationParticipant.conversation_id == Conversation.id,
            )
            .where(
                Conversation.type == ConversationType.DIRECT,
                Conversation.purpose == purpose,
                Conversation.is_active.is_(True),
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.is_active.is_(True),
            )
        )
        rows = await self.db.execute(
            select(ConversationParticipant.conversation_id, ConversationParticipant.user_id).where(
                ConversationParticipant.conversation_id.in_(own),
                ConversationParticipant.is_active.is_(True),
            )
        )
        members: dict[uuid.UUID, set[uuid.UUID]] = defaultdict(set)
        for conversation_id, member_id in rows.all():
            members[conversation_id].add(member_id)

        counterpart: dict[uuid.UUID, uuid.UUID] = {}
        for conversation_id, users in members.items():
            others = users - {user_id}
            if len(users) == 2 and len(others) == 1:
                counterpart[conversation_id] = others.pop()
        if not counterpart:
            return {}

        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.id.in_(list(counterpart)))
            .order_by(Conversation.created_at.desc())
        )
        # Oldest conversation wins when duplicates exist
        by_user: dict[uuid.UUID, Conversation] = {}
        for conversation in result.scalars().all():
            by_user[counterpart[conversation.id]] = conversation
        return by_user
