"""CreditLedger model, the source of truth for credit balances."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


LEDGER_REASONS = (
    "mint",
    "allocate",
    "spend",
    "adjust",
    "engagement_earn",
    "survey_complete",
)


class CreditLedger(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_ledger"
    __table_args__ = (Index("ix_credit_ledger_user_created", "user_id", "created_at"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    delta = Column(Float, nullable=False)
    reason = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    # Idempotency key for server-to-server postbacks.
    external_ref = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_entries")
