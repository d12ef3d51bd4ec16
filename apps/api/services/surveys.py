"""CPX Research survey wall: listing and postback reconciliation."""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User
from services.credits import append_credit_entry, find_entry_by_external_ref
from services.errors import api_error

logger = logging.getLogger(__name__)

STATUS_COMPLETED = 1
STATUS_REVERSED = 2
REQUIRED_POSTBACK_FIELDS = ("trans_id", "user_id", "status", "amount_usd", "hash")


def surveys_configured() -> bool:
    return bool(settings.CPX_APP_ID and settings.CPX_SECURE_HASH)


def _md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def survey_user_hash(user_id: str) -> str:
    """Secure hash CPX expects alongside ext_user_id."""
    return _md5_hex(f"{user_id}-{settings.CPX_SECURE_HASH}")


def postback_signature(trans_id: str) -> str:
    return _md5_hex(f"{trans_id}-{settings.CPX_SECURE_HASH}")


def credits_for_payout(payout_usd: float) -> int:
    return int(math.floor(payout_usd * settings.CPX_CREDITS_PER_DOLLAR))


def surveys_config() -> Dict[str, Any]:
    return {
        "configured": surveys_configured(),
        "app_id": settings.CPX_APP_ID or None,
        "credits_per_dollar": settings.CPX_CREDITS_PER_DOLLAR,
    }


def _to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _serialize_survey(survey: Mapping[str, Any]) -> Dict[str, Any]:
    payout_usd = _to_float(survey.get("payout_publisher_usd"), 0.0) or 0.0
    return {
        "id": str(survey.get("id", "")),
        "length_minutes": _to_int(survey.get("loi")),
        "payout_usd": payout_usd,
        "credits_reward": credits_for_payout(payout_usd),
        "conversion_rate": _to_float(survey.get("conversion_rate"), 0.0),
        "href": survey.get("href"),
        "type": survey.get("type"),
        "rating": _to_float(survey.get("statistics_rating_avg")) or None,
        "rating_count": _to_int(survey.get("statistics_rating_count")),
    }


async def fetch_available_surveys(
    user_id: str,
    *,
    ip_user: str,
    user_agent: str = "",
    limit: int = 12,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Fetch the surveys CPX currently offers this user."""
    if not surveys_configured():
        raise api_error(503, "SURVEYS_NOT_CONFIGURED", "CPX Research is not configured")

    params = {
        "app_id": settings.CPX_APP_ID,
        "ext_user_id": user_id,
        "output_method": "api",
        "ip_user": ip_user,
        "user_agent": user_agent,
        "limit": str(limit),
        "secure_hash": survey_user_hash(user_id),
    }
    try:
        async with httpx.AsyncClient(
            base_url=settings.CPX_API_BASE,
            timeout=settings.CPX_REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        ) as client:
            response = await client.get("/get-surveys.php", params=params)
            response.raise_for_status()
            payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("CPX survey fetch failed for user %s: %s", user_id, exc)
        raise api_error(502, "SURVEYS_UPSTREAM_ERROR", "Failed to fetch surveys from CPX Research") from exc

    if not isinstance(payload, dict) or payload.get("status") != "success":
        logger.warning("CPX survey fetch returned non-success for user %s", user_id)
        raise api_error(502, "SURVEYS_UPSTREAM_ERROR", "Failed to fetch surveys from CPX Research")

    surveys: List[Dict[str, Any]] = [_serialize_survey(item) for item in payload.get("surveys") or []]
    return {
        "surveys": surveys,
        "count": _to_int(payload.get("count_returned_surveys"), len(surveys)),
        "total_available": _to_int(payload.get("count_available_surveys"), len(surveys)),
        "credits_per_dollar": settings.CPX_CREDITS_PER_DOLLAR,
    }


def _postback_ref(status_code: int, trans_id: str) -> str:
    kind = "completed" if status_code == STATUS_COMPLETED else "reversed"
    return f"cpx:{kind}:{trans_id}"


def _acknowledgement(status_code: int, credits: float, duplicate: bool = False) -> Dict[str, Any]:
    key = "credits_awarded" if status_code == STATUS_COMPLETED else "credits_reversed"
    payload: Dict[str, Any] = {"status": "ok", key: abs(credits)}
    if duplicate:
        payload["duplicate"] = True
        payload["message"] = "Transaction already processed"
    return payload


async def handle_postback(params: Mapping[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Verify a CPX postback and post its ledger entry exactly once."""
    values = {key: str(params.get(key) or "").strip() for key in REQUIRED_POSTBACK_FIELDS}
    missing = [key for key, value in values.items() if not value]
    if missing:
        logger.warning("CPX postback missing params: %s", missing)
        raise api_error(400, "MISSING_PARAMETERS", "Missing required parameters", missing=missing)

    if not settings.CPX_SECURE_HASH:
        raise api_error(503, "SURVEYS_NOT_CONFIGURED", "CPX Research is not configured")

    trans_id = values["trans_id"]
    user_id = values["user_id"]
    if not hmac.compare_digest(values["hash"].lower(), postback_signature(trans_id)):
        logger.warning("CPX postback hash mismatch user=%s trans=%s", user_id, trans_id)
        raise api_error(403, "INVALID_SIGNATURE", "Invalid hash")

    status_code = _to_int(values["status"], -1)
    if status_code not in (STATUS_COMPLETED, STATUS_REVERSED):
        raise api_error(400, "UNKNOWN_STATUS", "Unknown status code")

    payout_usd = _to_float(values["amount_usd"])
    if payout_usd is None or not math.isfinite(payout_usd) or payout_usd < 0:
        raise api_error(400, "INVALID_PAYOUT", "amount_usd must be a non-negative number")

    external_ref = _postback_ref(status_code, trans_id)
    existing = await find_entry_by_external_ref(external_ref, db)
    if existing is not None:
        logger.info("CPX postback duplicate trans=%s", trans_id)
        return _acknowledgement(status_code, existing.delta, duplicate=True)

    user = (await db.execute(select(User.id).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        raise api_error(400, "UNKNOWN_USER", "Unknown user_id")

    credits = credits_for_payout(payout_usd)
    offer_id = str(params.get("offer_id") or "unknown")
    if status_code == STATUS_COMPLETED:
        delta = credits
        reason = "survey_complete"
        description = f"CPX Survey {offer_id} (Trans: {trans_id}, ${payout_usd})"
    else:
        delta = -credits
        reason = "adjust"
        description = f"CPX Survey reversed (Trans: {trans_id})"

    try:
        await append_credit_entry(
            user_id,
            db,
            delta=delta,
            reason=reason,
            description=description,
            external_ref=external_ref,
        )
    except IntegrityError:
        # A concurrent delivery of the same postback committed first.
        await db.rollback()
        logger.info("CPX postback duplicate (concurrent) trans=%s", trans_id)
        return _acknowledgement(status_code, credits, duplicate=True)

    logger.info("CPX postback %s user=%s trans=%s credits=%s", reason, user_id, trans_id, delta)
    return _acknowledgement(status_code, credits)
