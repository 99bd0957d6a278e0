from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from meetbot.config.settings import Settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None):
        self.settings = settings
        self.engine = engine or create_async_engine(
            settings.database_url, **self._engine_options(settings)
        )
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @staticmethod
    def _engine_options(settings: Settings) -> dict:
        options = {"echo": settings.db_echo, "pool_pre_ping": True}
        if settings.database_url.startswith("sqlite"):
            # SQLite serializes writers; wait for the lock instead of failing fast
            options["connect_args"] = {"timeout": 30}
            return options
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
        )
        return options

    async def create_all(self) -> None:
        """Create tables directly from metadata (development and tests)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()

