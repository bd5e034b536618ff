"""
FastAPI dependencies shared by the routers
"""

from typing import AsyncGenerator, Optional
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from ingestion.command_center import CommandCenter
from ingestion.runner import SyncRunner


def get_runner(request: Request) -> SyncRunner:
    """Runner created at application startup"""
    return request.app.state.runner


def get_command_center(request: Request) -> CommandCenter:
    return request.app.state.command_center


async def get_db(runner: SyncRunner = Depends(get_runner)) -> AsyncGenerator[AsyncSession, None]:
    """Database session bound to the runner's engine"""
    async with runner.session_factory() as session:
        yield session


async def require_admin_key(x_admin_key: Optional[str] = Header(None)) -> None:
    """Reject operator requests without the configured admin key"""
    if settings.ADMIN_API_KEY and x_admin_key != settings.ADMIN_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-Admin-Key header")
