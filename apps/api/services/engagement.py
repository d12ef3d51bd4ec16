"""Engagement session metering: heartbeats in, time-based credits out."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.engagement_session import EngagementSession
from services.credits import append_credit_entry, get_credit_balance

logger = logging.getLogger(__name__)

MIN_LEDGER_CREDITS = 0.01


@dataclass(frozen=True)
class HeartbeatResult:
    credits_earned: float
    total_credits: float
    session_seconds: int


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_elapsed_seconds(last_heartbeat: datetime, now: datetime, timeout_seconds: int) -> int:
    """Billable seconds since the previous beat, capped at the session timeout."""
    elapsed = int((_as_utc(now) - _as_utc(last_heartbeat)).total_seconds())
    return max(0, min(elapsed, int(timeout_seconds)))


def compute_engagement_credits(seconds: int, credits_per_minute: float) -> float:
    raw = Decimal(seconds) / Decimal(60) * Decimal(str(credits_per_minute))
    return float(raw.quantize(Decimal("0.01"), rounding=ROUND_DOWN))


def _is_fresh(session: EngagementSession, now: datetime) -> bool:
    age = (_as_utc(now) - _as_utc(session.last_heartbeat)).total_seconds()
    return age <= settings.SESSION_TIMEOUT_SECONDS


async def _latest_active_session(user_id: str, db: AsyncSession) -> Optional[EngagementSession]:
    result = await db.execute(
        select(EngagementSession)
        .where(EngagementSession.user_id == user_id, EngagementSession.is_active.is_(True))
        .order_by(EngagementSession.last_heartbeat.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _retire_active_sessions(user_id: str, db: AsyncSession) -> None:
    await db.execute(
        update(EngagementSession)
        .where(EngagementSession.user_id == user_id, EngagementSession.is_active.is_(True))
        .values(is_active=False)
    )


async def _start_session(user_id: str, db: AsyncSession, now: datetime) -> Optional[EngagementSession]:
    """Retire stale sessions and open a new one.

    Returns None when a concurrent heartbeat already opened the user's
    active session and the unique index rejected this insert.
    """
    await _retire_active_sessions(user_id, db)
    session = EngagementSession(
        id=str(uuid.uuid4()),
        user_id=user_id,
        started_at=now,
        last_heartbeat=now,
        total_seconds=0,
        credits_earned=0.0,
        is_active=True,
    )
    db.add(session)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Concurrent engagement session start for user %s; reusing winner", user_id)
        return None
    logger.info("engagement_session_start user=%s session=%s", user_id, session.id)
    return session


async def process_heartbeat(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> HeartbeatResult:
    current = _as_utc(now or datetime.now(timezone.utc))

    session = await _latest_active_session(user_id, db)
    if session is None or not _is_fresh(session, current):
        session = await _start_session(user_id, db, current)
        if session is None:
            session = await _latest_active_session(user_id, db)
        # Nothing has elapsed yet in a fresh session, so nothing is billed.
        return HeartbeatResult(
            credits_earned=0.0,
            total_credits=await get_credit_balance(user_id, db),
            session_seconds=int(session.total_seconds or 0) if session else 0,
        )

    seconds = compute_elapsed_seconds(session.last_heartbeat, current, settings.SESSION_TIMEOUT_SECONDS)
    earned = compute_engagement_credits(seconds, settings.CREDITS_PER_MINUTE)

    session.last_heartbeat = current
    session.total_seconds = int(session.total_seconds or 0) + seconds
    session.credits_earned = round(float(session.credits_earned or 0.0) + earned, 2)
    session_seconds = session.total_seconds
    if earned >= MIN_LEDGER_CREDITS:
        await append_credit_entry(
            user_id,
            db,
            delta=earned,
            reason="engagement_earn",
            description=f"Engagement session {session.id}: {seconds}s",
            commit=False,
        )
    # Session progress and its ledger credit land together or not at all.
    await db.commit()

    return HeartbeatResult(
        credits_earned=earned,
        total_credits=await get_credit_balance(user_id, db),
        session_seconds=session_seconds,
    )


async def get_engagement_stats(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """All-time and current UTC day totals from the user's sessions.

    "Today" is attributed per session, not per second: a session whose last
    heartbeat is at or after UTC midnight counts in full, so a session that
    crosses midnight carries its pre-midnight seconds and credits into today.
    """
    current = _as_utc(now or datetime.now(timezone.utc))
    day_start = current.replace(hour=0, minute=0, second=0, microsecond=0)

    totals = (
        await db.execute(
            select(
                func.coalesce(func.sum(EngagementSession.total_seconds), 0),
                func.coalesce(func.sum(EngagementSession.credits_earned), 0.0),
            ).where(EngagementSession.user_id == user_id)
        )
    ).one()
    today = (
        await db.execute(
            select(
                func.coalesce(func.sum(EngagementSession.total_seconds), 0),
                func.coalesce(func.sum(EngagementSession.credits_earned), 0.0),
            ).where(
                EngagementSession.user_id == user_id,
                EngagementSession.last_heartbeat >= day_start,
            )
        )
    ).one()

    return {
        "total_seconds_all_time": int(totals[0] or 0),
        "total_credits_earned": round(float(totals[1] or 0.0), 2),
        "total_seconds_today": int(today[0] or 0),
        "credits_earned_today": round(float(today[1] or 0.0), 2),
        "current_balance": await get_credit_balance(user_id, db),
        "credits_per_minute": settings.CREDITS_PER_MINUTE,
    }


def engagement_config() -> Dict[str, Any]:
    return {
        "credits_per_minute": settings.CREDITS_PER_MINUTE,
        "heartbeat_interval_seconds": settings.HEARTBEAT_INTERVAL_SECONDS,
        "session_timeout_seconds": settings.SESSION_TIMEOUT_SECONDS,
        "min_heartbeat_interval_seconds": settings.MIN_HEARTBEAT_INTERVAL_SECONDS,
    }
