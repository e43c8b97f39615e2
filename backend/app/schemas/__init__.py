"""
Pydantic schemas for API request/response validation.
"""
from app.schemas.job import (
    CreateJobRequest,
    CreateJobResponse,
    JobResponse,
    CallbackAck,
)
from app.schemas.video import (
    VideoResponse,
    LedgerEntryResponse,
    CreditsResponse,
)

__all__ = [
    "CreateJobRequest",
    "CreateJobResponse",
    "JobResponse",
    "CallbackAck",
    "VideoResponse",
    "LedgerEntryResponse",
    "CreditsResponse",
]
