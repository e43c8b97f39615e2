"""
Pydantic schemas for video and credit endpoints.
"""
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime


class VideoResponse(BaseModel):
    """Schema for video response."""
    id: str
    task_id: str
    prompt: str
    title: Optional[str] = None
    provider_video_url: Optional[str] = None
    resolution: Optional[str] = None
    fallback_flag: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


class LedgerEntryResponse(BaseModel):
    """One credit ledger row."""
    id: str
    delta: int
    reason: str
    job_id: Optional[str] = None
    related_id: Optional[str] = None
    plan: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CreditsResponse(BaseModel):
    """Balance plus recent ledger history."""
    credits_remaining: int
    active_plan: Optional[str] = None
    subscription_status: str
    credits_renew_at: Optional[datetime] = None
    history: List[LedgerEntryResponse] = []
