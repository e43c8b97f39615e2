"""
Video job endpoints.
Submission plus read access to the authenticated user's jobs.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from app.api.dependencies import get_provider_gateway, get_reconciler
from app.auth.dependencies import get_current_user
from app.database import get_db
from app.models.user import User
from app.schemas.job import CreateJobRequest, CreateJobResponse, JobResponse
from app.services.job_service import (
    CallbackUrlError,
    InsufficientCreditsError,
    JobService,
    build_callback_url,
)
from app.services.job_store import JobStore, RekeyError
from app.services.provider_gateway import KieGateway, ProviderError
from app.services.reconciler import CompletionReconciler

router = APIRouter()


def _to_response(job, video) -> JobResponse:
    return JobResponse(
        id=job.id,
        task_id=job.task_id,
        status=job.status,
        error_reason=job.error_reason,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
        prompt=video.prompt if video else None,
        provider_video_url=video.provider_video_url if video else None,
        resolution=video.resolution if video else None,
    )


@router.post("", response_model=CreateJobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    body: CreateJobRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: KieGateway = Depends(get_provider_gateway),
    reconciler: CompletionReconciler = Depends(get_reconciler),
):
    """
    Start a video generation.

    One credit is debited before the provider is called. Returns the
    provider task id the client polls with GET /jobs/{task_id}.
    """
    try:
        callback_url = build_callback_url(request.url.hostname)
    except CallbackUrlError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

    try:
        outcome = await JobService.submit(
            db,
            user_id=current_user.id,
            request=body,
            gateway=gateway,
            reconciler=reconciler,
            callback_url=callback_url,
        )
    except InsufficientCreditsError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=str(e)
        )
    except ProviderError:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to start video generation"
        )
    except RekeyError:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Video generation started but could not be recorded"
        )

    return CreateJobResponse(job_id=outcome.job_id, task_id=outcome.task_id, status=outcome.status)


@router.get("", response_model=List[JobResponse])
async def list_jobs(
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List the user's jobs, newest first."""
    rows = await JobStore.list_for_user(db, current_user.id, limit=min(max(limit, 1), 100))
    return [_to_response(job, video) for job, video in rows]


@router.get("/{task_id}", response_model=JobResponse)
async def get_job(
    task_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Get one job by task id. Jobs of other users are reported as not found."""
    job = await JobStore.get(db, task_id)
    if not job or job.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {task_id} not found"
        )
    video = await JobStore.get_video(db, task_id)
    return _to_response(job, video)
