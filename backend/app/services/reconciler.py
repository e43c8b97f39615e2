"""
Completion reconciler: drives jobs to READY or FAILED from the provider
callback, the fallback poller and the periodic stale-job sweep.

All three writers go through JobStore.set_status, whose compare-and-set
guarantees that whichever source lands first wins and the others are no-ops.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.job import JobStatus
from app.services.job_store import JobStore, truncate_reason
from app.services.polling_registry import CancellationToken, PollingRegistry, PollOutcome
from app.services.provider_gateway import (
    CallbackResult,
    KieGateway,
    ProviderError,
    StatusResult,
)
from app.utils.logging import log_job_transition, log_poll_attempt
from app.utils.metrics import video_job_transitions_total

logger = logging.getLogger(__name__)

POLLING_TIMEOUT_REASON = "Polling timeout - video generation took too long"
NO_RESULT_URLS_REASON = "No result URLs provided in callback"

SOURCE_WEBHOOK = "webhook"
SOURCE_POLLER = "poller"
SOURCE_SWEEP = "sweep"


@dataclass
class CallbackOutcome:
    """What handle_callback did, returned to the webhook route."""
    task_id: str
    status: str
    applied: bool
    orphan: bool = False


def _video_updates(urls: List[str], resolution: Optional[str], degraded: bool) -> Dict[str, Any]:
    return {
        "provider_video_url": urls[0],
        "resolution": resolution or "1080p",
        "fallback_flag": degraded,
    }


async def _write_status(
    db: AsyncSession,
    task_id: str,
    status: JobStatus,
    source: str,
    error_reason: Optional[str] = None,
    video_updates: Optional[Dict[str, Any]] = None,
) -> bool:
    applied = await JobStore.set_status(
        db, task_id, status, error_reason=error_reason, video_updates=video_updates
    )
    if applied:
        video_job_transitions_total.labels(source=source, status=status.value).inc()
    log_job_transition(
        logger,
        task_id=task_id,
        status=status.value,
        source=source,
        applied=applied,
        error=error_reason,
    )
    return applied


class CompletionReconciler:
    """
    Reconciles provider results into the Job store.

    Holds a session factory rather than a session because pollers outlive
    the request that started them.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: KieGateway,
        registry: PollingRegistry,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.registry = registry

    def start_polling(self, task_id: str) -> bool:
        """Begin fallback polling for a freshly submitted job."""
        return self.registry.start(task_id, lambda attempt, token: self.poll_once(task_id, attempt, token))

    def cancel_polling(self, task_id: str) -> bool:
        return self.registry.cancel(task_id)

    async def handle_callback(self, result: CallbackResult) -> CallbackOutcome:
        """
        Apply a provider callback.

        - Unknown task id: record an ownerless job directly in its terminal
          state so the artifact is not lost (warning logged for review).
        - Job already terminal: only fill in a missing video URL.
        - Otherwise transition to READY (or FAILED when no URL was sent).

        The poller for the task is always stopped.
        """
        task_id = result.task_id
        self.registry.cancel(task_id)

        if result.success and result.result_urls:
            status = JobStatus.READY
            error_reason = None
            video_updates = _video_updates(result.result_urls, result.resolution, result.degraded)
        elif result.success:
            status = JobStatus.FAILED
            error_reason = NO_RESULT_URLS_REASON
            video_updates = None
        else:
            status = JobStatus.FAILED
            error_reason = result.error_message or "Provider reported failure"
            video_updates = None

        async with self.session_factory() as db:
            job = await JobStore.get(db, task_id)

            if job is None:
                return await self._record_orphan(db, task_id, status, error_reason, video_updates)

            return await self._apply_to_existing(db, task_id, status, error_reason, video_updates)

    async def _record_orphan(
        self,
        db: AsyncSession,
        task_id: str,
        status: JobStatus,
        error_reason: Optional[str],
        video_updates: Optional[Dict[str, Any]],
    ) -> CallbackOutcome:
        logger.warning(
            f"Callback for unknown task {task_id}, recording orphan job as {status.value}",
            extra={"event": "orphan_job_created", "task_id": task_id, "status": status.value},
        )
        try:
            await JobStore.create(
                db,
                user_id=None,
                task_id=task_id,
                prompt="",
                status=status,
                error_reason=error_reason,
                video_fields=video_updates,
            )
        except IntegrityError:
            # The submitter's rekey (or a concurrent callback) claimed the id first
            await db.rollback()
            return await self._apply_to_existing(db, task_id, status, error_reason, video_updates)

        video_job_transitions_total.labels(source=SOURCE_WEBHOOK, status=status.value).inc()
        return CallbackOutcome(task_id=task_id, status=status.value, applied=True, orphan=True)

    async def _apply_to_existing(
        self,
        db: AsyncSession,
        task_id: str,
        status: JobStatus,
        error_reason: Optional[str],
        video_updates: Optional[Dict[str, Any]],
    ) -> CallbackOutcome:
        applied = await _write_status(
            db,
            task_id,
            status,
            SOURCE_WEBHOOK,
            error_reason=error_reason,
            video_updates=video_updates,
        )
        if not applied and video_updates:
            await JobStore.apply_artifacts_if_missing(db, task_id, video_updates)
        current = await JobStore.get(db, task_id)
        return CallbackOutcome(
            task_id=task_id,
            status=current.status.value if current else status.value,
            applied=applied,
        )

    async def poll_once(self, task_id: str, attempt: int, token: CancellationToken) -> PollOutcome:
        """
        One polling tick.

        The token is checked after the provider call returns and before any
        write, so a callback that arrives while the lookup is in flight wins.
        Reaching polling_max_attempts without a result fails the job.
        """
        max_attempts = self.registry.max_attempts
        if token.cancelled:
            return PollOutcome.STOPPED

        async with self.session_factory() as db:
            job = await JobStore.get(db, task_id)
            if job is None or job.is_terminal:
                return PollOutcome.STOPPED

        try:
            status_result: Optional[StatusResult] = await self.gateway.fetch_status(task_id)
            provider_error: Optional[str] = None
        except ProviderError as e:
            status_result = None
            provider_error = str(e)

        log_poll_attempt(
            logger,
            task_id=task_id,
            attempt=attempt,
            max_attempts=max_attempts,
            ready=status_result.ready if status_result else None,
            error=provider_error,
        )

        if token.cancelled:
            return PollOutcome.STOPPED

        if status_result is not None and status_result.ready:
            async with self.session_factory() as db:
                applied = await _write_status(
                    db,
                    task_id,
                    JobStatus.READY,
                    SOURCE_POLLER,
                    video_updates=_video_updates(
                        status_result.result_urls, status_result.resolution, status_result.degraded
                    ),
                )
            return PollOutcome.READY if applied else PollOutcome.STOPPED

        if attempt < max_attempts:
            return PollOutcome.CONTINUE

        reason = truncate_reason(provider_error) if provider_error else POLLING_TIMEOUT_REASON
        async with self.session_factory() as db:
            applied = await _write_status(db, task_id, JobStatus.FAILED, SOURCE_POLLER, error_reason=reason)
        return PollOutcome.FAILED if applied else PollOutcome.STOPPED


async def sweep_stale_jobs(
    session_factory: async_sessionmaker,
    gateway: KieGateway,
    stale_minutes: Optional[int] = None,
    registry: Optional[PollingRegistry] = None,
) -> Dict[str, int]:
    """
    Recover PROCESSING jobs whose poller was lost.

    Each job older than stale_minutes without a live local poller gets one
    fetch_status. READY if the provider has URLs. Without URLs the job is
    failed with the polling timeout reason once the full polling window
    (interval * max attempts) has passed since creation, otherwise it is left
    for the next sweep. Provider errors also leave the job for the next sweep.

    Returns:
        Counts of jobs checked, readied, failed, left pending and errored
    """
    minutes = stale_minutes if stale_minutes is not None else settings.stale_job_minutes
    now = datetime.utcnow()
    cutoff = now - timedelta(minutes=minutes)
    polling_window = timedelta(
        seconds=settings.polling_interval_seconds * settings.polling_max_attempts
    )
    counts = {"checked": 0, "ready": 0, "failed": 0, "pending": 0, "errors": 0}

    async with session_factory() as db:
        stale_jobs = await JobStore.list_stale_processing(db, cutoff)
        candidates = [
            (job.task_id, job.created_at)
            for job in stale_jobs
            if registry is None or not registry.is_active(job.task_id)
        ]

        for task_id, created_at in candidates:
            counts["checked"] += 1
            try:
                status_result = await gateway.fetch_status(task_id)
            except ProviderError as e:
                counts["errors"] += 1
                logger.warning(f"Stale sweep could not check task {task_id}: {e}")
                continue

            if status_result.ready:
                applied = await _write_status(
                    db,
                    task_id,
                    JobStatus.READY,
                    SOURCE_SWEEP,
                    video_updates=_video_updates(
                        status_result.result_urls, status_result.resolution, status_result.degraded
                    ),
                )
                if applied:
                    counts["ready"] += 1
            elif now - created_at >= polling_window:
                applied = await _write_status(
                    db, task_id, JobStatus.FAILED, SOURCE_SWEEP, error_reason=POLLING_TIMEOUT_REASON
                )
                if applied:
                    counts["failed"] += 1
            else:
                counts["pending"] += 1

    logger.info(
        f"Stale job sweep finished: {counts}",
        extra={"event": "stale_job_sweep", **counts},
    )
    return counts
