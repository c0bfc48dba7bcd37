"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.
Uses the asyncpg driver for PostgreSQL in production; any async
SQLAlchemy URL works (the test-suite runs on aiosqlite).
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from config.settings import settings
from shared.utils.exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)

# SQLSTATEs that mean "lost a race", not "bug":
#   40001 serialization_failure, 40P01 deadlock_detected, 55P03 lock_not_available
CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}


# ── Engine ────────────────────────────────────────────────────
def build_engine(url: str) -> AsyncEngine:
    kwargs = {
        "pool_pre_ping": True,          # Detect stale connections
        "echo": settings.DATABASE_ECHO,  # Log SQL when asked
    }
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
            pool_recycle=3600,          # Recycle connections every hour
        )
    if settings.TRANSACTION_ISOLATION_LEVEL:
        kwargs["isolation_level"] = settings.TRANSACTION_ISOLATION_LEVEL
    return create_async_engine(url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,      # Don't expire after commit (async-safe)
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL)

# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = build_session_factory(engine)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Dependency ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields an async database session.
    Auto-commits on success, rolls back on error.

    Usage:
        @router.get("/bookings")
        async def list_bookings(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    FastAPI dependency: the factory engine components use to open their
    own unit of work. Overridden in tests.
    """
    return AsyncSessionLocal


# ── Serialized unit of work ───────────────────────────────────
def is_conflict_error(exc: BaseException) -> bool:
    """True if a DBAPI error means we lost a lock/serialization race."""
    if isinstance(exc, StaleDataError):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in CONFLICT_SQLSTATES:
        return True
    # SQLite reports writer contention as a plain OperationalError
    return "database is locked" in str(orig).lower()


@asynccontextmanager
async def serialized_transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session and run one transaction in it. Row locks taken inside
    are held until commit. Commits on success, rolls back on any error;
    store-level lock/serialization failures are re-raised as
    ConcurrencyConflict.

    Usage:
        async with serialized_transaction(factory) as db:
            ...
    """
    async with session_factory() as session:
        try:
            async with session.begin():
                if session.bind.dialect.name == "postgresql":
                    # lock_timeout does not accept bind parameters
                    await session.execute(
                        text(f"SET LOCAL lock_timeout = {int(settings.DATABASE_LOCK_TIMEOUT_MS)}")
                    )
                yield session
        except (DBAPIError, StaleDataError) as e:
            if is_conflict_error(e):
                logger.warning(f"Transaction aborted by concurrent access: {e}")
                raise ConcurrencyConflict() from e
            raise


async def init_db() -> None:
    """Create all tables. Run during app startup."""
    # Import models so they register on Base.metadata
    import shared.models.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose engine. Run during app shutdown."""
    await engine.dispose()
