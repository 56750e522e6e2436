"""
Database engine, session management, and base model class.

This module sets up SQLAlchemy 2.0 with async support. Key components:

  - engine: The async database engine (connection pool for production DBs)
  - AsyncSessionLocal: Factory for creating async database sessions
  - Base: Declarative base class that all ORM models inherit from
  - get_db(): FastAPI dependency that provides a session per request
  - insert_ignore(): dialect-specific INSERT ... ON CONFLICT DO NOTHING

Architecture note:
  We use async SQLAlchemy (aiosqlite for SQLite, asyncpg for PostgreSQL).
  Row locks (FOR UPDATE), SKIP LOCKED and advisory locks only take effect on
  PostgreSQL; on SQLite every state change is additionally guarded by a
  compare-and-swap UPDATE, so correctness does not depend on the locks.

Session lifecycle:
  Each API request gets its own session via get_db(). Worker handlers get
  theirs from the worker pool. Both commit on success and roll back on
  unexpected exceptions.
"""

from typing import Any

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from app.config import settings
from app.exceptions import PaymentsAPIError


# echo=True in debug mode logs all SQL statements
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
)

# expire_on_commit=False prevents lazy-load errors after commit: without it,
# accessing attributes on a committed object would trigger a synchronous DB
# call, which fails in async context.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


async def get_db():
    """
    FastAPI dependency that provides a database session.

    Usage in a route:
        @router.get("/items")
        async def list_items(db: AsyncSession = Depends(get_db)):
            ...

    The session is committed on success and on domain errors (validation
    failures are raised before anything is written, so this only keeps rows a
    service deliberately flushed), rolled back on anything else, then closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except PaymentsAPIError:
            await session.commit()
            raise
        except Exception:
            await session.rollback()
            raise


def dialect_name(db: AsyncSession) -> str:
    """Name of the SQL dialect the session is bound to ("postgresql", "sqlite", ...)."""
    return db.get_bind().dialect.name


async def insert_ignore(
    db: AsyncSession,
    model: type[Base],
    values: dict[str, Any],
    *,
    conflict_columns: list[str],
) -> Any | None:
    """
    Insert one row unless it collides with a unique constraint.

    Returns the new row's primary key, or None when the insert was ignored
    because a row with the same conflict_columns already exists. The
    uniqueness check is done by the database, so concurrent inserts of the
    same key cannot both succeed.
    """
    name = dialect_name(db)
    if name == "postgresql":
        stmt = postgresql.insert(model)
    elif name == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {name}")

    stmt = (
        stmt.values(**values)
        .on_conflict_do_nothing(index_elements=conflict_columns)
        .returning(model.id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def insert_returning_id(db: AsyncSession, model: type[Base], values: dict[str, Any]) -> Any:
    """Plain INSERT returning the generated primary key."""
    result = await db.execute(insert(model).values(**values).returning(model.id))
    return result.scalar_one()
