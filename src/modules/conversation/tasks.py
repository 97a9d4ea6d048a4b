"""Celery tasks for conversation housekeeping."""

from __future__ import annotations

import asyncio
import logging

from celery_app import celery
from src.database.session import session_scope
from src.modules.conversation.service import ConversationService
from src.modules.notification.service import SessionNotificationSender

logger = logging.getLogger(__name__)


async def _sync_lead_conversations_async() -> dict:
    """Create the missing consultant/student conversation for every assigned lead.

    Workers hold no socket connections, so notifications are persisted for
    the users to pick up on their next connect rather than pushed live.
    """
    async with session_scope() as session:
        svc = ConversationService(session, notifier=SessionNotificationSender())
        created = await svc.auto_create_lead_conversations()
    return {"created": created}


@celery.task(name="src.modules.conversation.tasks.sync_lead_conversations")
def sync_lead_conversations():
    """Periodic task: ensure every assigned lead has a conversation with its consultant."""
    stats = asyncio.run(_sync_lead_conversations_async())
    logger.info("sync_lead_conversations completed: %s", stats)
    return stats
