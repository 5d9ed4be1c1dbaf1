"""Async SQLAlchemy engine and session factories for the SQL adapter."""

import logging

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from tenantkit.core.config import Settings, settings
from tenantkit.core.logging import get_logging_context

LOGGER = logging.getLogger(__name__)


class PoolConfig(BaseModel, frozen=True):
    """Database connection pool configuration.

    Attributes:
        size: Number of connections to keep in pool
        max_overflow: Max connections beyond pool_size
        timeout: Seconds to wait for available connection
        recycle: Seconds before recycling connection (-1 to disable)
        pre_ping: Test connection validity before use

    Example:
        config = PoolConfig(size=20, max_overflow=40, timeout=10.0)
    """

    size: int = Field(default=5, ge=1, le=100, description="Pool size")
    max_overflow: int = Field(default=10, ge=0, le=100, description="Max overflow")
    timeout: float = Field(default=30.0, ge=1.0, description="Connection timeout")
    recycle: int = Field(default=3600, ge=-1, description="Connection recycle time")
    pre_ping: bool = Field(default=True, description="Enable pre-ping health check")

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "PoolConfig":
        config = config or settings
        return cls(
            size=config.db_pool_size,
            max_overflow=config.db_max_overflow,
            timeout=config.db_pool_timeout,
            recycle=config.db_pool_recycle,
            pre_ping=config.db_pool_pre_ping,
        )


def create_db_engine(
    database_url: str | None = None,
    *,
    echo: bool | None = None,
    pool: PoolConfig | None = None,
) -> AsyncEngine:
    """Create the async engine.

    Args:
        database_url: Database connection URL (default: settings.database_url)
        echo: Echo SQL statements to logs (default: settings.sqlalchemy_echo)
        pool: Connection pool configuration (default: PoolConfig.from_settings())

    Example:
        engine = create_db_engine("postgresql+asyncpg://...", pool=PoolConfig(size=10))
    """
    pool_config = pool or PoolConfig.from_settings()
    LOGGER.debug("db_engine_created", extra={**get_logging_context(), "pool_size": pool_config.size})
    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.sqlalchemy_echo if echo is None else echo,
        pool_size=pool_config.size,
        max_overflow=pool_config.max_overflow,
        pool_timeout=pool_config.timeout,
        pool_recycle=pool_config.recycle,
        pool_pre_ping=pool_config.pre_ping,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create the tables. Test and development helper; production schemas are migrated."""
    # registers the tables on SQLModel.metadata
    import tenantkit.db.tables  # noqa: F401

    async with engine.begin() as connection:
        await connection.run_sync(SQLModel.metadata.create_all)


async def drop_db(engine: AsyncEngine) -> None:
    import tenantkit.db.tables  # noqa: F401

    async with engine.begin() as connection:
        await connection.run_sync(SQLModel.metadata.drop_all)
