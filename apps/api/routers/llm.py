"""LLM estimate/execute router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context, get_current_user
from routers.rate_limit import rate_limit
from services.execution import estimate_prompt_cost, execute_prompt
from services.pricing import AVAILABLE_MODELS, DEFAULT_MODELS

router = APIRouter()


class EstimateRequest(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, ge=1, le=200000)


class ExecuteRequest(EstimateRequest):
    system_prompt: Optional[str] = None


@router.get("/models")
async def list_models():
    return {"providers": AVAILABLE_MODELS, "defaults": DEFAULT_MODELS}


@router.post("/estimate")
async def estimate(
    request: EstimateRequest,
    _rate_limit: None = Depends(rate_limit("llm_estimate", limit=300, window_seconds=3600)),
    _auth: AuthContext = Depends(get_auth_context),
):
    return estimate_prompt_cost(
        provider=request.provider,
        model=request.model,
        prompt=request.prompt,
        max_tokens=request.max_tokens,
    )


@router.post("/execute")
async def execute(
    request: ExecuteRequest,
    _rate_limit: None = Depends(rate_limit("llm_execute", limit=120, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await execute_prompt(
        user.id,
        db,
        provider=request.provider,
        model=request.model,
        prompt=request.prompt,
        max_tokens=request.max_tokens,
        system_prompt=request.system_prompt,
    )
    return result.as_dict()
