"""Credit ledger and balance accounting helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging
import math
import uuid

from sqlalchemy import Float, String, func, insert, literal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import LEDGER_REASONS, CreditLedger
from models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpendResult:
    success: bool
    new_balance: float
    entry_id: Optional[str] = None


def _balance_expression(user_id: str):
    return (
        select(func.coalesce(func.sum(CreditLedger.delta), 0.0))
        .where(CreditLedger.user_id == user_id)
        .scalar_subquery()
    )


async def get_credit_balance(user_id: str, db: AsyncSession) -> float:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.delta), 0.0)).where(CreditLedger.user_id == user_id)
    )
    return round(float(result.scalar() or 0.0), 2)


async def append_credit_entry(
    user_id: str,
    db: AsyncSession,
    *,
    delta: float,
    reason: str,
    description: Optional[str] = None,
    external_ref: Optional[str] = None,
    commit: bool = True,
) -> CreditLedger:
    """Append one immutable ledger row. No balance validation happens here.

    With ``commit=False`` the row joins the caller's unit of work and is
    written by the caller's commit.
    """
    if reason not in LEDGER_REASONS:
        raise ValueError(f"Unknown ledger reason: {reason}")
    if not math.isfinite(float(delta)):
        raise ValueError(f"Ledger delta must be finite: {delta}")
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        delta=float(delta),
        reason=reason,
        description=description,
        external_ref=external_ref,
    )
    db.add(entry)
    if commit:
        await db.commit()
    return entry


async def spend_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: float,
    description: Optional[str] = None,
) -> SpendResult:
    """Debit ``amount`` only if the balance covers it.

    The balance check and the insert run as one INSERT ... SELECT statement,
    after locking the user row on backends that support SELECT ... FOR UPDATE,
    so concurrent spends cannot both pass against the same funds.
    """
    debit = max(float(amount), 0.0)
    if debit == 0:
        return SpendResult(success=True, new_balance=await get_credit_balance(user_id, db))

    await db.execute(select(User.id).where(User.id == user_id).with_for_update())

    entry_id = str(uuid.uuid4())
    conditional_row = select(
        literal(entry_id, String),
        literal(user_id, String),
        literal(-debit, Float),
        literal("spend", String),
        literal(description, String),
    ).where(_balance_expression(user_id) >= debit)
    statement = (
        insert(CreditLedger)
        .from_select(["id", "user_id", "delta", "reason", "description"], conditional_row)
        .returning(CreditLedger.id)
    )
    inserted = (await db.execute(statement)).scalar_one_or_none()
    await db.commit()

    balance = await get_credit_balance(user_id, db)
    if inserted is None:
        logger.info("spend_rejected user=%s amount=%s balance=%s", user_id, debit, balance)
        return SpendResult(success=False, new_balance=balance)
    return SpendResult(success=True, new_balance=balance, entry_id=inserted)


async def find_entry_by_external_ref(external_ref: str, db: AsyncSession) -> Optional[CreditLedger]:
    result = await db.execute(select(CreditLedger).where(CreditLedger.external_ref == external_ref))
    return result.scalar_one_or_none()


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "credit_balance": balance,
        "recent_entries": [
            {
                "id": entry.id,
                "delta": entry.delta,
                "reason": entry.reason,
                "description": entry.description,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
