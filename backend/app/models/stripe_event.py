"""
Stripe dedup tables.

ProcessedStripeEvent: one row per handled Stripe event id, of any type,
whether or not it granted anything.
ProcessedInvoice: one row per invoice whose credits were granted. Written in
the same transaction as the grant, so its existence means the credits exist.
"""
from sqlalchemy import Column, String, Integer, DateTime
from datetime import datetime

from app.models.base import Base


class ProcessedStripeEvent(Base):
    """Stripe webhook event log for idempotency."""

    __tablename__ = "processed_stripe_events"

    event_id = Column(String(255), primary_key=True)  # e.g. "evt_1Abc..."
    event_type = Column(String(100), nullable=False)
    outcome = Column(String(50), nullable=False)  # granted, skipped, linked, canceled, ...
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<ProcessedStripeEvent({self.event_id}, {self.event_type}, {self.outcome})>"


class ProcessedInvoice(Base):
    """Invoice whose subscription credits were already granted."""

    __tablename__ = "processed_invoices"

    invoice_id = Column(String(255), primary_key=True)  # e.g. "in_1Abc..."
    user_id = Column(String(36), nullable=False)
    event_id = Column(String(255), nullable=False)
    plan = Column(String(50), nullable=False)
    credits_granted = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<ProcessedInvoice({self.invoice_id}, credits={self.credits_granted})>"
