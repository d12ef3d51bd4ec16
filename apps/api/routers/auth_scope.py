"""Authentication dependencies resolving the caller's identity."""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import User
from services.errors import api_error
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise api_error(401, "UNAUTHORIZED", "Missing or invalid authorization header")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise api_error(401, "INVALID_TOKEN", str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
        display_name=payload.get("name") or None,
        avatar_url=payload.get("picture") or None,
    )


async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load the caller's user row, creating it on first authenticated contact."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    placeholder_email = f"{auth.user_id}@local.invalid"
    user = await _provision_user(db, auth, auth.email or placeholder_email)
    if user is None:
        result = await db.execute(select(User).where(User.id == auth.user_id))
        user = result.scalar_one_or_none()
    if user is None and auth.email:
        # The token's email already belongs to another subject.
        logger.warning("Email for subject %s is already taken; provisioning with placeholder", auth.user_id)
        user = await _provision_user(db, auth, placeholder_email)
        if user is None:
            result = await db.execute(select(User).where(User.id == auth.user_id))
            user = result.scalar_one_or_none()
    if user is None:
        raise api_error(409, "EMAIL_IN_USE", "Could not provision user for this token")
    return user


async def _provision_user(db: AsyncSession, auth: AuthContext, email: str) -> Optional[User]:
    """Insert the user row; None when a unique constraint rejected it."""
    user = User(
        id=auth.user_id,
        email=email,
        display_name=auth.display_name,
        avatar_url=auth.avatar_url,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return None
    return user


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Gate operator endpoints behind the shared admin key."""
    expected = (settings.ADMIN_SECRET_KEY or "").strip()
    if not expected:
        raise api_error(503, "ADMIN_NOT_CONFIGURED", "Admin key not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode("utf-8"), expected.encode("utf-8")):
        raise api_error(403, "FORBIDDEN", "Admin access required")
