"""
Job model tracking the lifecycle of one provider generation task.
QUEUED -> PROCESSING -> READY | FAILED. READY and FAILED are terminal.
"""
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Enum as SQLEnum, Index
from datetime import datetime
import enum

from app.models.base import Base, generate_uuid


class JobStatus(str, enum.Enum):
    """Job status enum."""
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


TERMINAL_STATUSES = (JobStatus.READY, JobStatus.FAILED)
ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)


class Job(Base):
    """Job keyed by the provider task id (placeholder until the provider assigns one)."""

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    # Nullable: callbacks for unknown task ids create orphan jobs with no owner
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    task_id = Column(String(255), nullable=False, unique=True)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.QUEUED)
    error_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_job_user_id", "user_id"),
        Index("idx_job_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Job(id={self.id}, task_id={self.task_id}, status={self.status})>"
