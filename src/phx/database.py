"""Async SQLAlchemy engine, session management and transaction retries."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from phx.errors import InternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine(url: str) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend."""
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=False, connect_args={"timeout": 30})
        serialize_sqlite_transactions(engine)
        return engine
    return create_async_engine(
        url,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
        echo=False,
        connect_args={"statement_cache_size": 0},
    )


def serialize_sqlite_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock when it begins.

    SQLite ignores ``FOR UPDATE`` and the driver defers ``BEGIN`` until the
    first write, so two read-modify-write transactions would both read the
    old row. ``BEGIN IMMEDIATE`` queues the second one behind the first.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory every service receives."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(url: str) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = create_engine(url)
    _session_factory = create_session_factory(_engine)


async def close_db() -> None:
    """Dispose of the database engine."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


def _is_retryable(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    return isinstance(exc, OperationalError) and "locked" in str(exc).lower()


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    attempts: int = 3,
) -> T:
    """Run ``work`` inside one transaction, retrying on serialization conflicts.

    ``work`` must re-read every row it decides on, since a retry starts from a
    fresh session. Domain errors raised by ``work`` roll back and propagate
    untouched; conflicts that survive every attempt become ``InternalError``.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as session, session.begin():
                return await work(session)
        except DBAPIError as exc:
            if not _is_retryable(exc):
                raise
            logger.warning("Transaction conflict (attempt %d/%d): %s", attempt, attempts, exc.orig)
    msg = "Transaction conflict: retries exhausted"
    raise InternalError(msg)
