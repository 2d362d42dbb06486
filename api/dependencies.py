"""
FastAPI dependencies
"""

from typing import AsyncGenerator, Optional
from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import async_session_maker
from sync.scheduler import SyncScheduler

_scheduler: Optional[SyncScheduler] = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async with async_session_maker() as session:
        yield session


def get_scheduler() -> SyncScheduler:
    """Process-wide scheduler; manual triggers share its running-task registry."""
    global _scheduler
    if _scheduler is None:
        _scheduler = SyncScheduler(async_session_maker)
    return _scheduler


async def require_api_key(x_api_key: Optional[str] = Header(None)):
    """Guard for state-changing endpoints when API_KEY is configured."""
    if settings.API_KEY and x_api_key != settings.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
