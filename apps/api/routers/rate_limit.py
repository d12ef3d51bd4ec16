"""Rate limiting dependencies.

``rate_limit`` is a Redis-backed fixed-window quota per client address.
``heartbeat_throttle`` enforces a minimum spacing between one user's
heartbeats in process memory; it only smooths client retries, the
server-side elapsed-time cap is what bounds engagement earnings.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, Request
import redis.asyncio as redis

from config import settings
from routers.auth_scope import AuthContext, get_auth_context
from services.errors import api_error


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()

_last_heartbeat_at: Dict[str, float] = {}


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        client_id = _client_identifier(request)
        key = f"payless:rate:{prefix}:{client_id}"

        try:
            redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            try:
                current = await redis_client.incr(key)
                if current == 1:
                    await redis_client.expire(key, window_seconds)
            finally:
                await redis_client.aclose()
            allowed = current <= limit
        except Exception:
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise api_error(
                429,
                "RATE_LIMITED",
                f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(window_seconds)},
                retry_after=window_seconds,
            )

    return _dependency


def heartbeat_retry_after(user_id: str, now: Optional[float] = None) -> int:
    """Seconds the user must still wait, or 0 after recording an accepted call."""
    current = time.monotonic() if now is None else now
    min_interval = float(settings.MIN_HEARTBEAT_INTERVAL_SECONDS)
    last = _last_heartbeat_at.get(user_id)
    if last is not None and current - last < min_interval:
        return max(1, math.ceil(min_interval - (current - last)))
    # Entries past the interval no longer throttle anyone.
    for stale_user in [key for key, seen in _last_heartbeat_at.items() if current - seen >= min_interval]:
        del _last_heartbeat_at[stale_user]
    _last_heartbeat_at[user_id] = current
    return 0


async def heartbeat_throttle(
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
) -> None:
    if getattr(request.app.state, "disable_rate_limits", False):
        return

    wait_seconds = heartbeat_retry_after(auth.user_id)
    if wait_seconds:
        raise api_error(
            429,
            "RATE_LIMITED",
            f"Rate limited. Please wait {wait_seconds} seconds.",
            headers={"Retry-After": str(wait_seconds)},
            retry_after=wait_seconds,
        )
