"""Database engine, sessions and the insert-if-absent primitive.

WHAT:
    Provides the async SQLAlchemy engine and session factory, the FastAPI
    dependency that hands a session to each request, and `insert_if_absent`,
    the only write primitive that is allowed to race.

WHY:
    - The tracking endpoint is I/O bound (datastore + GeoIP), so everything
      runs on asyncio with asyncpg in production.
    - Every write step in the ingestion pipeline commits on its own. There is
      no multi-statement transaction; consistency comes from primary keys.
    - Two first-events for the same new session id can arrive at once. The
      loser must learn "somebody else inserted it" as a value, not by parsing
      a driver error message.

ARCHITECTURE:
    ┌───────────────────┐
    │  Async Engine     │   postgresql+asyncpg (prod) / sqlite+aiosqlite (tests)
    └─────────┬─────────┘
    ┌─────────▼─────────┐
    │ AsyncSessionLocal │
    └─────────┬─────────┘
    ┌─────────▼─────────┐
    │  get_async_db()   │   FastAPI dependency
    └───────────────────┘

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
"""

import enum
import os
from typing import Any, AsyncGenerator, Dict, Sequence

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from .utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


def get_async_database_url(url: str) -> str:
    """Convert a plain DATABASE_URL to its asyncio driver form.

    WHAT:
        postgresql:// and postgres:// become postgresql+asyncpg://,
        sqlite:// becomes sqlite+aiosqlite://. URLs that already name a
        driver are returned unchanged.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        # Heroku-style URL
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def build_engine(url: str):
    """Create an async engine with pool settings suited to the backend."""
    async_url = get_async_database_url(url)
    if async_url.startswith("sqlite"):
        # SQLite engines do not support pool_size/max_overflow
        return create_async_engine(async_url, connect_args={"check_same_thread": False})
    return create_async_engine(
        async_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
        echo=False,             # Set True for SQL debugging
    )


def build_session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Rows stay readable after each step commits
        autoflush=False,
    )


DATABASE_URL = _get_database_url()
async_engine = build_engine(DATABASE_URL)
AsyncSessionLocal = build_session_factory(async_engine)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for FastAPI dependency injection.

    Example:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_async_db)):
            result = await db.execute(select(Item))
            return result.scalars().all()
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# =============================================================================
# INSERT-IF-ABSENT
# =============================================================================

class InsertOutcome(str, enum.Enum):
    """Result of `insert_if_absent`."""
    inserted = "inserted"
    already_exists = "already_exists"


async def insert_if_absent(
    db: AsyncSession,
    model,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
) -> InsertOutcome:
    """Insert a row unless one with the same key already exists.

    WHAT:
        Issues `INSERT ... ON CONFLICT (<key>) DO NOTHING` and reports whether
        this call created the row. Commits immediately.

    WHY:
        Concurrent first-events for one session id are expected traffic, not
        an error. `ON CONFLICT DO NOTHING` makes the race a value the caller
        can branch on, and it never aborts the surrounding connection state.

    Args:
        db: Session to execute on
        model: Mapped class to insert into
        values: Column values for the new row
        conflict_columns: Columns of the primary key / unique index that
            decide "already exists"

    Returns:
        InsertOutcome.inserted or InsertOutcome.already_exists
    """
    dialect = db.get_bind().dialect.name

    if dialect in ("postgresql", "sqlite"):
        dialect_insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = dialect_insert(model).values(**values).on_conflict_do_nothing(
            index_elements=list(conflict_columns)
        )
        result = await db.execute(stmt)
        await db.commit()
        return InsertOutcome.inserted if result.rowcount == 1 else InsertOutcome.already_exists

    # Backends without ON CONFLICT: rely on the typed constraint violation
    try:
        await db.execute(insert(model).values(**values))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return InsertOutcome.already_exists
    return InsertOutcome.inserted
