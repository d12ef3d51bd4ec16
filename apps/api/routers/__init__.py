"""Routers package."""

from . import (
    health,
    auth,
    credits,
    llm,
    engagement,
    surveys,
    admin,
)
