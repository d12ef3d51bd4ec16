"""Engagement heartbeat router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import heartbeat_throttle
from services.engagement import engagement_config, get_engagement_stats, process_heartbeat

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/heartbeat")
async def heartbeat(
    _throttle: None = Depends(heartbeat_throttle),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Called periodically while the engagement surface is visible."""
    result = await process_heartbeat(user.id, db)
    return {
        "credits_earned": result.credits_earned,
        "total_credits": result.total_credits,
        "session_seconds": result.session_seconds,
        "credits_per_minute": settings.CREDITS_PER_MINUTE,
    }


@router.get("/stats")
async def stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_engagement_stats(user.id, db)


@router.get("/config")
async def config():
    return engagement_config()
