"""
FastAPI dependencies
"""

from typing import AsyncGenerator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import async_session_maker
from ingestion.orchestrator import SyncOrchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Application-wide sync orchestrator (holds background sync tasks)"""
    return request.app.state.orchestrator
