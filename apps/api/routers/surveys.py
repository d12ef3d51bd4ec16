"""CPX Research survey router, including the server-to-server postback."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.errors import api_error
from services.surveys import (
    fetch_available_surveys,
    handle_postback,
    survey_user_hash,
    surveys_config,
    surveys_configured,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


@router.get("")
async def list_surveys(
    request: Request,
    _rate_limit: None = Depends(rate_limit("surveys_list", limit=60, window_seconds=3600)),
    user: User = Depends(get_current_user),
):
    return await fetch_available_surveys(
        user.id,
        ip_user=_client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )


@router.get("/hash")
async def user_hash(user: User = Depends(get_current_user)):
    if not surveys_configured():
        raise api_error(503, "SURVEYS_NOT_CONFIGURED", "CPX Research is not configured")
    return {"user_id": user.id, "secure_hash": survey_user_hash(user.id)}


@router.get("/config")
async def config():
    return surveys_config()


@router.get("/postback")
async def postback(request: Request, db: AsyncSession = Depends(get_db)):
    """Called by CPX servers when a survey completes or is reversed."""
    params = request.query_params
    logger.info(
        "CPX postback received status=%s trans=%s user=%s amount_usd=%s offer=%s",
        params.get("status"),
        params.get("trans_id"),
        params.get("user_id"),
        params.get("amount_usd"),
        params.get("offer_id"),
    )
    return await handle_postback(params, db)
