"""
Job endpoints.
Submit credit-gated provider jobs and poll their status.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.ai.factory import get_compute_provider
from app.auth.dependencies import get_current_user
from app.config import settings
from app.database import get_db
from app.models.job import JobStatus
from app.models.user import User
from app.schemas.job import (
    JobCreate,
    JobCreateResponse,
    JobListResponse,
    JobResponse,
    JobStatusResponse,
)
from app.services.credit_service import CreditService
from app.services.errors import (
    InsufficientCreditsError,
    JobNotFoundError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from app.services.job_service import JobService, ReconcileResult
from app.tasks.reconcile_jobs import reconcile_job_task

logger = logging.getLogger(__name__)

router = APIRouter()


def get_job_service() -> JobService:
    """
    FastAPI dependency returning a JobService bound to the configured provider.

    Raises:
        HTTPException 503: If the provider is not configured
    """
    try:
        provider = get_compute_provider()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return JobService(provider)


def status_response(result: ReconcileResult) -> JobStatusResponse:
    job = JobResponse.model_validate(result.job)
    return JobStatusResponse(
        **job.model_dump(),
        reconcile_outcome=result.outcome.value,
        retry_later=result.transient,
    )


@router.post("", response_model=JobCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    request: JobCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    job_service: JobService = Depends(get_job_service),
):
    """
    Submit a training or generation job.

    Credits are deducted before submission and refunded if the provider
    rejects the job. Requires valid Firebase JWT token.
    """
    cost = settings.job_cost(request.job_type.value)

    try:
        job = await job_service.submit_job(
            db,
            current_user.id,
            request.job_type,
            request.input,
            declared_cost=cost,
            model_name=request.model_name,
            trained_model_id=request.trained_model_id,
        )
    except InsufficientCreditsError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": str(e),
                "required": e.required,
                "available": e.available,
            },
        )
    except ProviderUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Provider unavailable, credits refunded: {e}",
        )
    except ProviderRequestError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Provider rejected the job, credits refunded: {e}",
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if job.status == JobStatus.SUBMITTED:
        # First poll without waiting for the beat sweep
        try:
            reconcile_job_task.apply_async(
                args=[job.id], countdown=settings.reconcile_first_poll_seconds
            )
        except Exception as e:
            # The beat sweep still picks the job up
            logger.warning(
                f"Failed to enqueue reconcile for job {job.id}: {e}",
                extra={"event": "reconcile_enqueue_failed", "job_id": job.id},
            )

    remaining = await CreditService.get_balance(db, current_user.id)
    return JobCreateResponse(
        job_id=job.id,
        status=job.status,
        cost=job.cost,
        remaining_credits=remaining,
    )


@router.get("", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List the authenticated user's jobs, newest first."""
    jobs = await JobService.list_jobs(db, current_user.id, limit=limit)
    return JobListResponse(jobs=[JobResponse.model_validate(job) for job in jobs])


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    job_service: JobService = Depends(get_job_service),
):
    """
    Run one reconciliation pass and return the job.

    A transient provider error still returns the stored job, with
    retry_later=true.
    """
    try:
        result = await job_service.get_job_status(db, job_id, current_user.id)
    except JobNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found or does not belong to user",
        )
    return status_response(result)
