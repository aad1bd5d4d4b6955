"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(url: str = None, echo: bool = None) -> AsyncEngine:
    """
    Create an async engine for the catalog database.

    Connections are not pooled: the API, the scheduler and the CLI scripts
    each open short-lived sessions and sync jobs may outlive a request.
    """
    return create_async_engine(
        url or settings.DATABASE_URL,
        echo=settings.SQL_ECHO if echo is None else echo,
        poolclass=NullPool,
        future=True
    )


engine = build_engine()

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


async def dispose_engine():
    """Close remaining connections on shutdown"""
    await engine.dispose()
    logger.info("Database engine disposed")
