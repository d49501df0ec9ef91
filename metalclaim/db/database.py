"""Database connection and session management."""
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from metalclaim.config import settings

engine = create_async_engine(
    settings.database.url,
    echo=settings.database.echo,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def create_session_factory(
    url: str, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create a standalone engine and session factory (tests, tooling)."""
    standalone_engine = create_async_engine(url, echo=echo)
    factory = async_sessionmaker(
        standalone_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return standalone_engine, factory


def to_db_time(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to the naive UTC form stored in the database."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


async def init_db(target: AsyncEngine | None = None) -> None:
    """Initialize database tables."""
    from metalclaim.db.models import Base

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
