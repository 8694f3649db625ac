"""
Async SQLAlchemy plumbing shared by the SQL billing repository and the CLI.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import DateTime, text
from sqlalchemy.engine import Dialect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from paycore.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def get_async_database_url(config: Settings | None = None) -> str:
    """Configured URL with a plain driver prefix swapped for its async one."""
    url = (config or get_settings()).database.sqlalchemy_url
    for sync_prefix, async_prefix in _ASYNC_DRIVERS.items():
        if url.startswith(sync_prefix):
            return async_prefix + url[len(sync_prefix) :]
    return url


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator[datetime]):
    """
    Aware datetimes in, aware UTC datetimes out.

    SQLite has no timezone support, so values are written there as naive UTC
    and tagged again on read. Range filters on billing dates then compare the
    same way on SQLite and Postgres.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        utc_value = (value if value.tzinfo else value.replace(tzinfo=UTC)).astimezone(UTC)
        return utc_value.replace(tzinfo=None) if dialect.name == "sqlite" else utc_value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def create_engine_from_settings(config: Settings | None = None) -> AsyncEngine:
    """A new engine for the configured database; the caller disposes it."""
    config = config or get_settings()
    return create_async_engine(get_async_database_url(config), echo=config.database.echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Repositories hand back pydantic copies after commit, so rows must stay loaded
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create any billing tables that do not exist yet."""
    # Importing the module registers its tables on Base.metadata
    import paycore.billing.storage.sql  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Billing tables ready", url=engine.url.render_as_string(hide_password=True))


async def check_database_health(engine: AsyncEngine) -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Database health check failed", error=str(e))
        return False
    return True


__all__ = [
    "Base",
    "UTCDateTime",
    "check_database_health",
    "create_engine_from_settings",
    "create_session_factory",
    "get_async_database_url",
    "init_db",
]
