"""Machine-readable API error helpers."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


def api_error(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    **extra: Any,
) -> HTTPException:
    """Build an HTTPException whose detail carries a stable error code."""
    detail: Dict[str, Any] = {"code": code, "message": message}
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail, headers=headers)
