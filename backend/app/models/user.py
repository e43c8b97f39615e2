"""
User model with credit balance and subscription plan state.
Authenticated via Firebase (firebase_uid).
credits_remaining is a cache of the ledger sum and is only written by
CreditService, in the same transaction as the ledger insert.
"""
from sqlalchemy import Column, String, Integer, Index, DateTime
from datetime import datetime
from app.models.base import Base, generate_uuid


class User(Base):
    """User model with credit-based video generation access."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    firebase_uid = Column(String(128), nullable=True, unique=True)  # Firebase user ID
    email = Column(String(255), nullable=True)  # Email from Firebase token
    credits_remaining = Column(Integer, nullable=False, default=0)  # Denormalized ledger balance

    # Subscription state, mutated only by the payment event processor
    active_plan = Column(String(50), nullable=True)  # e.g. "basic", "pro"
    subscription_status = Column(String(20), nullable=False, default="inactive")  # inactive | active | canceled
    credits_renew_at = Column(DateTime, nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, unique=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_user_firebase_uid", "firebase_uid"),
        Index("idx_user_stripe_customer", "stripe_customer_id"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, firebase_uid={self.firebase_uid}, credits={self.credits_remaining})>"
