"""
Job store: Job and Video rows keyed by provider task id.

Status writes are compare-and-set UPDATEs filtered on the allowed source
statuses, so a terminal state can never be overwritten no matter how the
webhook handler and the poller interleave.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.job import Job, JobStatus, ACTIVE_STATUSES, TERMINAL_STATUSES
from app.models.video import Video

logger = logging.getLogger(__name__)

TRUNCATION_SUFFIX = "...[truncated]"

# Source statuses each target status may be entered from
_ALLOWED_SOURCES: Dict[JobStatus, Tuple[JobStatus, ...]] = {
    JobStatus.QUEUED: (),
    JobStatus.PROCESSING: (JobStatus.QUEUED,),
    JobStatus.READY: ACTIVE_STATUSES,
    JobStatus.FAILED: ACTIVE_STATUSES,
}


class RekeyError(Exception):
    """Job/Video pair could not be renamed to the provider task id."""


def truncate_reason(message: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """Bound an error message for storage. The result, suffix included, never exceeds the limit."""
    if message is None:
        return None
    limit = max_length or settings.error_reason_max_length
    if len(message) <= limit:
        return message
    if limit <= len(TRUNCATION_SUFFIX):
        return message[:limit]
    return message[:limit - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


class JobStore:
    """Persistence operations for Job + Video pairs."""

    @staticmethod
    async def create(
        db: AsyncSession,
        user_id: Optional[str],
        task_id: str,
        prompt: str,
        status: JobStatus = JobStatus.QUEUED,
        error_reason: Optional[str] = None,
        video_fields: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """
        Create a Job and its Video in one transaction.

        Raises:
            IntegrityError: If a job with this task id already exists
        """
        now = datetime.utcnow()
        job = Job(
            user_id=user_id,
            task_id=task_id,
            status=status,
            error_reason=truncate_reason(error_reason),
            completed_at=now if status in TERMINAL_STATUSES else None,
        )
        video = Video(
            user_id=user_id,
            task_id=task_id,
            prompt=prompt,
            **(video_fields or {}),
        )
        db.add(job)
        db.add(video)
        await db.commit()
        return job

    @staticmethod
    async def get(db: AsyncSession, task_id: str) -> Optional[Job]:
        """Fetch the current Job row, refreshing any stale identity-map copy."""
        result = await db.execute(
            select(Job)
            .where(Job.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_video(db: AsyncSession, task_id: str) -> Optional[Video]:
        result = await db.execute(
            select(Video)
            .where(Video.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def set_status(
        db: AsyncSession,
        task_id: str,
        status: JobStatus,
        error_reason: Optional[str] = None,
        video_updates: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Compare-and-set the job status.

        The UPDATE only matches rows whose current status is an allowed
        source for `status`, which makes terminal states absorbing and
        repeated writes of the same status no-ops. Video fields are written
        in the same transaction, and only by the caller that won.

        Returns:
            True if this call performed the transition, False otherwise
        """
        sources = _ALLOWED_SOURCES[status]
        if not sources:
            return False

        now = datetime.utcnow()
        values: Dict[str, Any] = {"status": status, "updated_at": now}
        if status == JobStatus.FAILED:
            values["error_reason"] = truncate_reason(error_reason)
        if status in TERMINAL_STATUSES:
            values["completed_at"] = now

        result = await db.execute(
            update(Job)
            .where(Job.task_id == task_id)
            .where(Job.status.in_(sources))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        won = result.rowcount == 1

        if won and video_updates:
            await db.execute(
                update(Video)
                .where(Video.task_id == task_id)
                .values(**video_updates)
                .execution_options(synchronize_session=False)
            )

        await db.commit()
        return won

    @staticmethod
    async def apply_artifacts_if_missing(
        db: AsyncSession,
        task_id: str,
        video_updates: Dict[str, Any],
    ) -> bool:
        """Fill in the provider URL on a Video that has none. Never touches Job."""
        result = await db.execute(
            update(Video)
            .where(Video.task_id == task_id)
            .where(Video.provider_video_url.is_(None))
            .values(**video_updates)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    @staticmethod
    async def rekey(
        db: AsyncSession,
        old_task_id: str,
        new_task_id: str,
        status: JobStatus = JobStatus.PROCESSING,
    ) -> Job:
        """
        Rename the Job and Video from the placeholder id to the provider id
        and move the job to `status`, all in one transaction.

        If the provider's callback beat us here, an ownerless job already
        holds new_task_id. It is absorbed: its terminal state and artifact
        are copied onto our pair and the orphan rows are removed, so the
        debit recorded against our job id stays attached.

        Returns:
            The renamed Job

        Raises:
            RekeyError: If either row is missing or the new id belongs to
                another user's job. Nothing is changed in that case.
        """
        try:
            orphan = await JobStore.get(db, new_task_id)
            orphan_video = await JobStore.get_video(db, new_task_id) if orphan else None
            job_values: Dict[str, Any] = {"task_id": new_task_id, "updated_at": datetime.utcnow()}
            video_values: Dict[str, Any] = {"task_id": new_task_id}

            if orphan is not None:
                if orphan.user_id is not None:
                    raise RekeyError(f"Task id {new_task_id} already belongs to job {orphan.id}")
                job_values.update(
                    status=orphan.status,
                    error_reason=orphan.error_reason,
                    completed_at=orphan.completed_at,
                )
                if orphan_video is not None and orphan_video.provider_video_url:
                    video_values.update(
                        provider_video_url=orphan_video.provider_video_url,
                        resolution=orphan_video.resolution,
                        fallback_flag=orphan_video.fallback_flag,
                    )
                await db.execute(delete(Video).where(Video.task_id == new_task_id))
                await db.execute(delete(Job).where(Job.task_id == new_task_id))
                logger.warning(
                    f"Absorbed orphan job for task {new_task_id} into {old_task_id}",
                    extra={"event": "orphan_job_absorbed", "task_id": new_task_id},
                )
            else:
                job_values["status"] = status

            job_result = await db.execute(
                update(Job)
                .where(Job.task_id == old_task_id)
                .where(Job.status == JobStatus.QUEUED)
                .values(**job_values)
                .execution_options(synchronize_session=False)
            )
            video_result = await db.execute(
                update(Video)
                .where(Video.task_id == old_task_id)
                .values(**video_values)
                .execution_options(synchronize_session=False)
            )

            if job_result.rowcount != 1 or video_result.rowcount != 1:
                raise RekeyError(
                    f"Rekey {old_task_id} -> {new_task_id} matched "
                    f"{job_result.rowcount} job(s) and {video_result.rowcount} video(s)"
                )

            await db.commit()
        except (RekeyError, IntegrityError) as e:
            await db.rollback()
            if isinstance(e, RekeyError):
                raise
            raise RekeyError(f"Rekey {old_task_id} -> {new_task_id} failed: {e}") from e

        job = await JobStore.get(db, new_task_id)
        await JobStore.get_video(db, new_task_id)
        return job

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: str, limit: int = 50) -> List[Tuple[Job, Optional[Video]]]:
        """User's jobs, newest first, each paired with its video."""
        result = await db.execute(
            select(Job, Video)
            .outerjoin(Video, Video.task_id == Job.task_id)
            .where(Job.user_id == user_id)
            .order_by(Job.created_at.desc())
            .limit(limit)
        )
        return [(job, video) for job, video in result.all()]

    @staticmethod
    async def list_stale_processing(db: AsyncSession, older_than: datetime) -> List[Job]:
        """PROCESSING jobs created before `older_than`."""
        result = await db.execute(
            select(Job)
            .where(Job.status == JobStatus.PROCESSING)
            .where(Job.created_at < older_than)
            .order_by(Job.created_at)
        )
        return list(result.scalars().all())
