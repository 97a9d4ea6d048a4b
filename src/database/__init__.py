from src.database.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin, utcnow
from src.database.engine import async_session, engine
from src.database.session import (
    SessionFactory,
    get_db,
    get_session_factory,
    on_commit,
    run_after_commit,
    session_scope,
)

__all__ = [
    "Base",
    "JSONType",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "utcnow",
    "async_session",
    "engine",
    "get_db",
    "get_session_factory",
    "on_commit",
    "run_after_commit",
    "session_scope",
    "SessionFactory",
]
