"""
Database configuration and session management.

Uses SQLAlchemy 2.0 async engine with asyncpg (PostgreSQL) or aiosqlite
(SQLite) drivers.

Provides:
- Declarative base with a constraint naming convention
- Async session factory and context manager
- Dialect-aware upsert statement builder
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Iterable, Optional

from sqlalchemy import MetaData, func, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from fundsync.core.config import settings

logger = logging.getLogger(__name__)


# Naming convention for constraints (Alembic auto-generation)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite ``DateTime`` columns return."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _build_connect_args() -> dict:
    """
    Build connection arguments for the async driver.

    SQLite databases don't need special connect_args.
    """
    if settings.database_url.startswith("sqlite"):
        return {}

    connect_args = {}
    # PgBouncer compatibility: disable prepared statement cache
    if settings.database_url.startswith("postgresql"):
        connect_args["statement_cache_size"] = 0
    return connect_args


engine = create_async_engine(
    settings.database_url,
    echo=settings.should_echo_sql,
    pool_pre_ping=True,
    poolclass=NullPool,
    connect_args=_build_connect_args(),
)


async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields an async database session.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions outside of request scope.

    Commits on success, rolls back on error.

    Usage:
        async with get_db_context() as db:
            result = await db.execute(select(Model))
    """
    factory = session_factory or async_session_factory
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_upsert_stmt(
    model,
    index_elements: Iterable[str],
    values: dict[str, Any],
    dialect_name: str,
    update_columns: Optional[Iterable[str]] = None,
    preserve_existing: Iterable[str] = (),
):
    """
    Generate a dialect-specific upsert statement.

    Args:
        model: ORM class to insert into
        index_elements: Columns of the conflict target (unique key)
        values: Row to insert
        dialect_name: "postgresql" or "sqlite"
        update_columns: Columns overwritten on conflict (default: every
            non-key column present in ``values``)
        preserve_existing: Columns where a NULL in ``values`` keeps the
            stored value instead of overwriting it
    """
    preserve_existing = set(preserve_existing)
    table = model.__table__
    index_elements = list(index_elements)
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    else:
        from sqlalchemy.dialects.sqlite import insert as dialect_insert

    stmt = dialect_insert(model).values(values)
    columns = (
        list(update_columns)
        if update_columns is not None
        else [name for name in values if name not in index_elements]
    )
    return stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={
            name: (
                func.coalesce(stmt.excluded[name], table.c[name])
                if name in preserve_existing
                else stmt.excluded[name]
            )
            for name in columns
        },
    )


async def create_all_tables(bind: Optional[AsyncEngine] = None) -> None:
    """Create every table registered on ``Base.metadata``."""
    import fundsync.models  # noqa: F401  (registers models on the metadata)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_connection(max_retries: int = 3) -> bool:
    """
    Check if database connection is healthy with retries.

    Returns:
        True if connection is successful, False otherwise.
    """
    import asyncio

    for attempt in range(max_retries):
        try:
            async with async_session_factory() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            logger.warning(f"Database connection attempt {attempt + 1} failed: {e}")
            if attempt < max_retries - 1:
                await asyncio.sleep(1 * (attempt + 1))
            else:
                logger.error("All database connection attempts failed.")
    return False
