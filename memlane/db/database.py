"""SQLite embedded database setup with async SQLAlchemy."""

import logging
import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the engine and session factory.

    Built once when the application starts and handed to every store; nothing
    else creates engines.
    """

    def __init__(self, url: str):
        self.url = url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        """Create the engine and the tables if needed."""
        if self.url.startswith("sqlite") and ":///" in self.url:
            db_dir = os.path.dirname(self.url.split(":///", 1)[1])
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self._engine = create_async_engine(self.url, echo=False)
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info(f"Database initialized at {self.url}")

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
