"""
Database session management with SQLAlchemy async
"""

from typing import Optional
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite connections get a generous busy timeout so that concurrent
    partition workers queue up behind each other's short write
    transactions instead of failing with "database is locked".
    """
    url = database_url or settings.DATABASE_URL
    connect_args = {}

    if url.startswith("sqlite"):
        connect_args["timeout"] = 30

    return create_async_engine(
        url,
        echo=echo,
        poolclass=NullPool,  # Connections are short lived; workers open their own
        connect_args=connect_args,
        future=True
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to an engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )
