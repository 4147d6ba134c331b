"""Database setup with SQLAlchemy async."""

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from tablesync.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

REQUIRED_TABLES = (
    "refresh_config",
    "refresh_audit_log",
    "refresh_checkpoints",
    "refresh_dependencies",
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def check_db_ready() -> None:
    """
    Verify database connectivity and expected schema.

    Checks that the refresh infrastructure tables exist.
    """
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))

        columns = ", ".join(
            f"to_regclass('{settings.default_schema}.{name}') AS {name}"
            for name in REQUIRED_TABLES
        )
        tables = await conn.execute(text(f"SELECT {columns}"))
        row = tables.first()

        missing = [
            name
            for index, name in enumerate(REQUIRED_TABLES)
            if row is None or row[index] is None
        ]
        if missing:
            raise RuntimeError(
                f"Database schema is missing tables: {', '.join(missing)} "
                "(run database init or check migrations)."
            )
