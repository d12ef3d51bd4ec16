"""EngagementSession model for time-based credit accrual."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class EngagementSession(Base):
    """One continuous earning period, extended by heartbeats."""

    __tablename__ = "engagement_sessions"
    __table_args__ = (
        # At most one active session per user.
        Index(
            "uq_engagement_sessions_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_heartbeat = Column(DateTime(timezone=True), nullable=False)
    total_seconds = Column(Integer, nullable=False, default=0)
    credits_earned = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="engagement_sessions")
