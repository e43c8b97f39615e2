"""
Business logic services.
"""
from app.services.credit_service import CreditService
from app.services.job_store import JobStore
from app.services.payment_event_service import PaymentEventService

__all__ = [
    "CreditService",
    "JobStore",
    "PaymentEventService",
]
