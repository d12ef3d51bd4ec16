"""
Health probes for the API, its ledger store and its upstream providers.
"""

from typing import Dict, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import select, func

from config import settings
from models.credit_ledger import CreditLedger
from services.surveys import surveys_configured

router = APIRouter()

PROVIDER_KEY_SETTINGS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GOOGLE_AI_API_KEY",
}


def _provider_keys() -> Dict[str, str]:
    return {
        provider: "configured" if getattr(settings, key_name) else "missing"
        for provider, key_name in PROVIDER_KEY_SETTINGS.items()
    }


async def _ledger_status() -> str:
    # Touching the ledger table also catches a database without the schema.
    try:
        from database import engine
        async with engine.connect() as conn:
            await conn.execute(select(func.count()).select_from(CreditLedger.__table__).limit(1))
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


async def _redis_status() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


@router.get("/health")
async def health_check():
    """
    Overall status. Only the ledger store can degrade it; Redis merely
    backs request quotas and falls back to process memory.
    """
    database = await _ledger_status()
    return {
        "status": "healthy" if database == "up" else "degraded",
        "api": "up",
        "database": database,
        "redis": await _redis_status(),
        "providers": _provider_keys(),
        "surveys": "configured" if surveys_configured() else "missing",
    }


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe: ledger reachable and a provider usable."""
    missing: List[str] = []
    if "configured" not in _provider_keys().values():
        missing.append("|".join(PROVIDER_KEY_SETTINGS.values()))
    if await _ledger_status() != "up":
        missing.append("DATABASE_URL")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
