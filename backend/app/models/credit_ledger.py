"""
Append-only credit ledger.
The sum of a user's deltas always equals users.credits_remaining.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index
from datetime import datetime
import enum

from app.models.base import Base, generate_uuid


class LedgerReason(str, enum.Enum):
    """Why a balance changed."""
    VIDEO_GENERATION = "video_generation"  # -1 per submitted job
    REFUND = "refund"  # +1
    WELCOME = "welcome"  # +N on signup
    PROMO = "promo"  # +N manual grant
    SUBSCRIPTION_RENEWAL = "subscription_renewal"  # +N per paid invoice


class CreditLedgerEntry(Base):
    """Immutable record of one balance change."""

    __tablename__ = "credits_ledger"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    delta = Column(Integer, nullable=False)
    reason = Column(String(50), nullable=False)
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=True)
    related_id = Column(String(255), nullable=True)  # e.g. Stripe invoice id
    plan = Column(String(50), nullable=True)  # Plan a renewal grant belongs to

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_credits_ledger_user_id", "user_id"),
        Index("idx_credits_ledger_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<CreditLedgerEntry(user_id={self.user_id}, delta={self.delta}, reason={self.reason})>"
