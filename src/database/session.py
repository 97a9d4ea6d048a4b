import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession

from src.database.engine import async_session

logger = logging.getLogger(__name__)

_AFTER_COMMIT_KEY = "after_commit"

SessionFactory = Callable[[], AsyncSession]
AfterCommitCallback = Callable[[], Awaitable[None]]


def on_commit(session: AsyncSession, callback: AfterCommitCallback) -> None:
    """Queue a side effect to run once the session's transaction has committed.

    Callbacks are dropped if the transaction rolls back, so listeners never
    hear about writes that did not persist.
    """
    session.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def discard_after_commit(session: AsyncSession) -> None:
    session.info.pop(_AFTER_COMMIT_KEY, None)


@asynccontextmanager
async def savepoint(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """Nested transaction. On failure its writes and its queued side effects are dropped."""
    queued = len(session.info.get(_AFTER_COMMIT_KEY, []))
    try:
        async with session.begin_nested():
            yield session
    except Exception:
        del session.info.get(_AFTER_COMMIT_KEY, [])[queued:]
        raise


async def run_after_commit(session: AsyncSession) -> None:
    """Run queued side effects in order. Failures are logged, never raised."""
    callbacks = session.info.pop(_AFTER_COMMIT_KEY, [])
    for callback in callbacks:
        try:
            await callback()
        except Exception:
            logger.exception("After-commit side effect %r failed", callback)


def get_session_factory() -> SessionFactory:
    """FastAPI dependency for long-lived handlers (sockets) that open their own scopes."""
    return async_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a database session."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            discard_after_commit(session)
            await session.rollback()
            raise
        await run_after_commit(session)


@asynccontextmanager
async def session_scope(
    factory: SessionFactory | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope for code that runs outside a request (socket events, tasks).

    Commits when the block exits cleanly, rolls back and re-raises otherwise.
    """
    async with (factory or async_session)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            discard_after_commit(session)
            await session.rollback()
            raise
        await run_after_commit(session)
