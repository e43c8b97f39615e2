"""
Video model: the user-facing artifact paired 1:1 with a Job by task id.
"""
from sqlalchemy import Column, String, Text, Boolean, DateTime, ForeignKey, Index
from datetime import datetime

from app.models.base import Base, generate_uuid


class Video(Base):
    """Prompt and provider output for one generation task."""

    __tablename__ = "videos"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    task_id = Column(String(255), nullable=False, unique=True)
    prompt = Column(Text, nullable=False)
    title = Column(String(255), nullable=True)

    # Populated by whichever reconciliation path observes success
    provider_video_url = Column(Text, nullable=True)
    resolution = Column(String(20), nullable=True)
    fallback_flag = Column(Boolean, nullable=False, default=False)  # Provider degraded to a fallback model

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_video_user_id", "user_id"),
    )

    def __repr__(self):
        return f"<Video(id={self.id}, task_id={self.task_id}, url={self.provider_video_url})>"
