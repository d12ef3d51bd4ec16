"""Operator endpoints for minting, allocating and adjusting credits."""

from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import require_admin
from services.credits import append_credit_entry, get_credit_balance
from services.errors import api_error

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


class CreditEntryRequest(BaseModel):
    user_id: str
    amount: float
    description: Optional[str] = None


async def _post_entry(
    request: CreditEntryRequest,
    db: AsyncSession,
    *,
    reason: str,
    default_description: str,
    positive_only: bool,
) -> float:
    if not math.isfinite(request.amount):
        raise api_error(400, "INVALID_AMOUNT", "Amount must be a finite number")
    if positive_only and request.amount <= 0:
        raise api_error(400, "INVALID_AMOUNT", "A positive amount is required")
    if request.amount == 0:
        raise api_error(400, "INVALID_AMOUNT", "Amount must be non-zero")

    user = (await db.execute(select(User.id).where(User.id == request.user_id))).scalar_one_or_none()
    if user is None:
        raise api_error(404, "UNKNOWN_USER", "User not found")

    await append_credit_entry(
        request.user_id,
        db,
        delta=request.amount,
        reason=reason,
        description=request.description or default_description,
    )
    logger.info("admin_%s user=%s amount=%s", reason, request.user_id, request.amount)
    return await get_credit_balance(request.user_id, db)


@router.post("/credits/mint")
async def mint(request: CreditEntryRequest, db: AsyncSession = Depends(get_db)):
    new_balance = await _post_entry(
        request, db, reason="mint", default_description="Admin minted credits", positive_only=True
    )
    return {"success": True, "user_id": request.user_id, "amount_minted": request.amount, "new_balance": new_balance}


@router.post("/credits/allocate")
async def allocate(request: CreditEntryRequest, db: AsyncSession = Depends(get_db)):
    new_balance = await _post_entry(
        request, db, reason="allocate", default_description="Credits allocated", positive_only=True
    )
    return {"success": True, "user_id": request.user_id, "amount_allocated": request.amount, "new_balance": new_balance}


@router.post("/credits/adjust")
async def adjust(request: CreditEntryRequest, db: AsyncSession = Depends(get_db)):
    """Corrections; negative amounts may drive the balance below zero."""
    new_balance = await _post_entry(
        request, db, reason="adjust", default_description="Credit adjustment", positive_only=False
    )
    return {"success": True, "user_id": request.user_id, "amount_adjusted": request.amount, "new_balance": new_balance}
