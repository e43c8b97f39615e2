"""
Pydantic schemas for video job endpoints.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from app.config import settings
from app.models.job import JobStatus


class CreateJobRequest(BaseModel):
    """Schema for requesting a new video generation."""
    prompt: str = Field(..., min_length=1, description="Text prompt describing the video")
    aspect_ratio: Optional[str] = Field(None, description="Ignored; only 9:16 is supported")
    seeds: Optional[int] = Field(None, description="Provider seed, random if omitted")

    @field_validator("seeds")
    @classmethod
    def validate_seeds(cls, v: Optional[int]) -> Optional[int]:
        # Same bounds as the random default in JobService.submit
        if v is not None and not settings.seed_min <= v <= settings.seed_max:
            raise ValueError(f"seeds must be between {settings.seed_min} and {settings.seed_max}")
        return v


class CreateJobResponse(BaseModel):
    """Schema returned after a successful submission."""
    job_id: str
    task_id: str
    status: JobStatus


class JobResponse(BaseModel):
    """Schema for a job with its video."""
    id: str
    task_id: str
    status: JobStatus
    error_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    prompt: Optional[str] = None
    provider_video_url: Optional[str] = None
    resolution: Optional[str] = None

    class Config:
        from_attributes = True


class CallbackAck(BaseModel):
    """Schema for the provider callback acknowledgement."""
    received: bool = True
    task_id: str
    status: str
    applied: bool
