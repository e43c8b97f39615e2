"""
Database models package.
"""
from app.models.base import Base
from app.models.user import User
from app.models.job import Job, JobStatus
from app.models.video import Video
from app.models.credit_ledger import CreditLedgerEntry, LedgerReason
from app.models.stripe_event import ProcessedStripeEvent, ProcessedInvoice

__all__ = [
    "Base",
    "User",
    "Job",
    "JobStatus",
    "Video",
    "CreditLedgerEntry",
    "LedgerReason",
    "ProcessedStripeEvent",
    "ProcessedInvoice",
]
