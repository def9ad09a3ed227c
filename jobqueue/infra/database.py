from datetime import UTC, datetime
from typing import AsyncGenerator

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from jobqueue.config.settings import Settings, get_settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class UTCDateTime(TypeDecorator):
    """
    Timestamp column stored as naive UTC and read back as aware UTC.

    SQLite drops tzinfo on the way in; normalising here keeps comparisons
    against an aware "now" valid on every backend.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        engine_options: dict = {"echo": settings.debug}
        if not settings.is_sqlite:
            engine_options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
            )
        self.engine = create_async_engine(settings.database_url, **engine_options)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        """Create tables for every registered model (tests and local use)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


# Global database instance
_database: Database | None = None


def get_database(settings: Settings | None = None) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database(settings or get_settings())
    return _database


async def get_session(
    database: Database | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that rolls back on error."""
    database = database or get_database()
    async with database.SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
