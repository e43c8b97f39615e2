"""
Job submission flow.

validate -> placeholder task id -> Job(QUEUED) + Video -> debit one credit
-> provider submit -> rekey to the provider id + PROCESSING -> start poller.

The credit is debited before the provider is called, so a user without
credits never reaches the provider.
"""
import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.job import JobStatus
from app.schemas.job import CreateJobRequest
from app.services.credit_service import CreditService
from app.services.job_store import JobStore, RekeyError, truncate_reason
from app.services.provider_gateway import KieGateway, ProviderError
from app.services.reconciler import CompletionReconciler
from app.utils.logging import log_job_created, log_job_submitted, log_job_transition
from app.utils.metrics import video_jobs_created_total

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "veo_task_"
CALLBACK_PATH = "/api/webhooks/veo-callback"
INSUFFICIENT_CREDITS_REASON = "insufficient_credits"


class InsufficientCreditsError(Exception):
    """User has no credit left for a generation."""


class CallbackUrlError(Exception):
    """No public URL the provider could call back on."""


@dataclass
class SubmitOutcome:
    job_id: str
    task_id: str
    status: JobStatus
    run_id: Optional[str] = None


def build_callback_url(request_host: Optional[str]) -> str:
    """
    Callback URL from APP_BASE_URL, else from the request host.

    Raises:
        CallbackUrlError: If neither is usable (no base URL and host is localhost)
    """
    if settings.app_base_url:
        return f"{settings.app_base_url.rstrip('/')}{CALLBACK_PATH}"
    if request_host and request_host not in ("localhost", "127.0.0.1"):
        return f"https://{request_host}{CALLBACK_PATH}"
    logger.error("No APP_BASE_URL configured and request host is localhost")
    raise CallbackUrlError("Server configuration error: Unable to construct callback URL")


def generate_placeholder_task_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4()}"


class JobService:
    """Orchestrates a video generation request end to end."""

    @staticmethod
    async def submit(
        db: AsyncSession,
        user_id: str,
        request: CreateJobRequest,
        gateway: KieGateway,
        reconciler: CompletionReconciler,
        callback_url: str,
    ) -> SubmitOutcome:
        """
        Create, pay for and submit one video job.

        Raises:
            InsufficientCreditsError: Debit failed; job left FAILED, provider not called
            ProviderError: Submit failed; job left FAILED
            RekeyError: Provider accepted but the rename failed; job left FAILED
        """
        aspect_ratio = settings.default_aspect_ratio
        if request.aspect_ratio and request.aspect_ratio != aspect_ratio:
            logger.info(f"Overriding aspect ratio {request.aspect_ratio} with {aspect_ratio}")
        seeds = request.seeds if request.seeds is not None else random.randint(settings.seed_min, settings.seed_max)

        placeholder_id = generate_placeholder_task_id()
        job = await JobStore.create(db, user_id=user_id, task_id=placeholder_id, prompt=request.prompt)
        job_id = job.id
        log_job_created(
            logger,
            task_id=placeholder_id,
            user_id=user_id,
            job_id=job_id,
            prompt_length=len(request.prompt),
            seeds=seeds,
        )

        if not await CreditService.debit_one(db, user_id, job_id=job_id):
            await JobStore.set_status(db, placeholder_id, JobStatus.FAILED, error_reason=INSUFFICIENT_CREDITS_REASON)
            video_jobs_created_total.labels(outcome="insufficient_credits").inc()
            log_job_transition(
                logger,
                task_id=placeholder_id,
                status=JobStatus.FAILED.value,
                source="submit",
                applied=True,
                error=INSUFFICIENT_CREDITS_REASON,
            )
            raise InsufficientCreditsError("No credits remaining. Add more to generate videos.")

        start_time = time.time()
        try:
            submitted = await gateway.submit(
                prompt=request.prompt,
                aspect_ratio=aspect_ratio,
                seeds=seeds,
                callback_url=callback_url,
            )
        except ProviderError as e:
            await JobStore.set_status(db, placeholder_id, JobStatus.FAILED, error_reason=truncate_reason(str(e)))
            video_jobs_created_total.labels(outcome="provider_error").inc()
            log_job_transition(
                logger,
                task_id=placeholder_id,
                status=JobStatus.FAILED.value,
                source="submit",
                applied=True,
                error=str(e),
            )
            if settings.refund_on_submit_failure:
                await CreditService.refund(db, user_id, job_id=job_id)
                logger.info(f"Refunded credit for failed submission {placeholder_id}")
            raise

        try:
            job = await JobStore.rekey(db, placeholder_id, submitted.task_id, status=JobStatus.PROCESSING)
        except RekeyError as e:
            logger.error(f"Rekey failed after provider accepted {submitted.task_id}: {e}")
            await JobStore.set_status(
                db,
                placeholder_id,
                JobStatus.FAILED,
                error_reason=truncate_reason(f"Provider task {submitted.task_id} could not be recorded: {e}"),
            )
            video_jobs_created_total.labels(outcome="rekey_error").inc()
            raise

        video_jobs_created_total.labels(outcome="submitted").inc()
        log_job_submitted(
            logger,
            placeholder_id=placeholder_id,
            task_id=submitted.task_id,
            user_id=user_id,
            duration_ms=(time.time() - start_time) * 1000,
            run_id=submitted.run_id,
        )

        # The callback may already have landed (absorbed during rekey)
        if job.status == JobStatus.PROCESSING:
            reconciler.start_polling(submitted.task_id)

        return SubmitOutcome(
            job_id=job.id,
            task_id=submitted.task_id,
            status=job.status,
            run_id=submitted.run_id,
        )
