"""Credit balance router."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from services.credits import get_credit_balance, get_credit_summary

router = APIRouter()


@router.get("/balance")
async def credit_balance(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"credit_balance": await get_credit_balance(user.id, db)}


@router.get("/summary")
async def credit_summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(user.id, db)
