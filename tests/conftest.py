"""Pytest fixtures for the messaging test-suite.

Tests run against a throwaway SQLite file through aiosqlite; every model
column uses portable types so ``Base.metadata.create_all`` builds the same
schema the migrations create on PostgreSQL.
"""

import uuid
from collections.abc import AsyncGenerator
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fastapi.websockets import WebSocketState
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.database.base import Base
from src.database.session import run_after_commit, session_scope
from src.middleware.rate_limit import limiter
from src.models.enums import UserRole
from src.models.lead import Lead
from src.models.office import Office
from src.models.user import User
from src.modules.auth.auth import AuthenticatedUser
from src.modules.conversation.repository import ConversationRepository
from src.modules.realtime.connection import Connection
from src.modules.realtime.presence import MembershipLookup, PresenceRegistry

# HTTP rate limits are exercised explicitly where needed
limiter.enabled = False


class FakeWebSocket:
    """Records everything the server sends; stands in for a live socket."""

    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict] = []
        self.closed_with: tuple[int, str] | None = None

    async def send_json(self, data: dict) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)
        self.application_state = WebSocketState.DISCONNECTED

    def events(self, name: str | None = None) -> list[dict]:
        return [m for m in self.sent if name is None or m["event"] == name]

    def names(self) -> list[str]:
        return [m["event"] for m in self.sent]

    def clear(self) -> None:
        self.sent.clear()


def identity(user: User) -> AuthenticatedUser:
    return AuthenticatedUser(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role.value,
        office_id=user.office_id,
    )


def make_connection(user: User) -> Connection:
    return Connection(websocket=FakeWebSocket(), user=identity(user))


async def commit(db: AsyncSession) -> None:
    """Commit like the request/event scopes do, then run the queued side effects."""
    await db.commit()
    await run_after_commit(db)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def async_test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'messaging.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_test_engine):
    return async_sessionmaker(async_test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Directory data
# ---------------------------------------------------------------------------


async def create_user(
    db: AsyncSession, name: str, role: UserRole, office_id: uuid.UUID | None = None
) -> User:
    user = User(
        name=name,
        email=f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}@example.com",
        role=role,
        office_id=office_id,
    )
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def people(db):
    """One office with a full staff, a second office with its own manager, and two students."""
    main = Office(name="Kathmandu")
    branch = Office(name="Pokhara")
    db.add_all([main, branch])
    await db.flush()

    ns = SimpleNamespace(office=main, branch=branch)
    ns.super_admin = await create_user(db, "Sita Admin", UserRole.SUPER_ADMIN)
    ns.manager = await create_user(db, "Maya Manager", UserRole.MANAGER, main.id)
    ns.other_manager = await create_user(db, "Bikash Manager", UserRole.MANAGER, branch.id)
    ns.consultant = await create_user(db, "Carl Consultant", UserRole.CONSULTANT, main.id)
    ns.other_consultant = await create_user(db, "Dina Consultant", UserRole.CONSULTANT, main.id)
    ns.receptionist = await create_user(db, "Rita Reception", UserRole.RECEPTIONIST, main.id)
    ns.student = await create_user(db, "Sam Student", UserRole.STUDENT, main.id)
    ns.second_student = await create_user(db, "Tara Student", UserRole.STUDENT, main.id)

    ns.lead = Lead(
        student_id=ns.student.id,
        assigned_consultant_id=ns.consultant.id,
        office_id=main.id,
        status="contacted",
    )
    db.add(ns.lead)
    await db.commit()
    return ns


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


@pytest.fixture
def registry(session_factory) -> PresenceRegistry:
    async def conversations_for_user(user_id: uuid.UUID) -> list[uuid.UUID]:
        async with session_scope(session_factory) as db:
            return await ConversationRepository(db).conversation_ids_for_user(user_id)

    async def peers_for_user(user_id: uuid.UUID) -> set[uuid.UUID]:
        async with session_scope(session_factory) as db:
            return await ConversationRepository(db).peer_ids_for_user(user_id)

    return PresenceRegistry(
        lookup=MembershipLookup(
            conversations_for_user=conversations_for_user,
            peers_for_user=peers_for_user,
        ),
        typing_timeout_seconds=0.05,
    )


@pytest_asyncio.fixture
async def connect(registry):
    """Register a fake socket for a user and return the Connection."""

    async def _connect(user: User) -> Connection:
        connection = make_connection(user)
        await registry.register_connection(connection)
        return connection

    yield _connect
    registry.typing.clear()
