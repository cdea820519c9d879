"""
Admin endpoints for job diagnostics and credit corrections.
Access is restricted to the emails listed in ADMIN_EMAILS.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.jobs import get_job_service, status_response
from app.auth.dependencies import get_current_user
from app.config import settings
from app.database import get_db
from app.models.credit import GRANT_KINDS, LedgerEntryKind
from app.models.user import User
from app.schemas.credit import (
    AccountAuditResponse,
    CreditAdjustmentRequest,
    CreditAdjustmentResponse,
)
from app.schemas.job import JobStatusResponse
from app.services.credit_service import CreditService
from app.services.errors import AccountNotFoundError, InsufficientCreditsError, JobNotFoundError
from app.services.job_service import JobService

logger = logging.getLogger(__name__)

router = APIRouter()


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Dependency that only lets configured admin emails through."""
    admins = {email.lower() for email in settings.admin_emails}
    if not current_user.email or current_user.email.lower() not in admins:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


@router.post("/jobs/{job_id}/reconcile", response_model=JobStatusResponse)
async def force_reconcile(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    job_service: JobService = Depends(get_job_service),
):
    """Run one reconciliation pass for any user's job."""
    try:
        result = await job_service.reconcile(db, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    logger.info(
        f"Admin {admin.id} reconciled job {job_id}: {result.outcome.value}",
        extra={"event": "admin_reconcile", "job_id": job_id, "user_id": admin.id},
    )
    return status_response(result)


@router.post("/credits/grant", response_model=CreditAdjustmentResponse)
async def grant_credits(
    request: CreditAdjustmentRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Grant credits; repeated idempotency keys are applied once."""
    if request.kind not in GRANT_KINDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Grant kind must be one of: {', '.join(k.value for k in GRANT_KINDS)}",
        )
    try:
        result = await CreditService.grant(
            db,
            request.user_id,
            request.amount,
            request.kind,
            request.description,
            idempotency_key=request.idempotency_key,
        )
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    return CreditAdjustmentResponse(
        success=result.success,
        new_balance=result.new_balance,
        already_applied=result.already_applied,
    )


@router.post("/credits/refund", response_model=CreditAdjustmentResponse)
async def refund_credits(
    request: CreditAdjustmentRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Refund credits, or remove credits granted in error (kind=removal)."""
    if request.kind not in (LedgerEntryKind.REFUND, LedgerEntryKind.REMOVAL):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Refund kind must be refund or removal",
        )
    try:
        result = await CreditService.refund(
            db,
            request.user_id,
            request.amount,
            request.description,
            idempotency_key=request.idempotency_key,
            kind=request.kind,
        )
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except InsufficientCreditsError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "required": e.required, "available": e.available},
        )

    return CreditAdjustmentResponse(
        success=result.success,
        new_balance=result.new_balance,
        already_applied=result.already_applied,
    )


@router.get("/credits/{user_id}/audit", response_model=AccountAuditResponse)
async def audit_account(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Replay a user's ledger against the materialized balance."""
    try:
        audit = await CreditService.audit_account(db, user_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credit account not found")

    return AccountAuditResponse(
        user_id=audit.user_id,
        balance=audit.balance,
        total_granted=audit.total_granted,
        total_used=audit.total_used,
        ledger_sum=audit.ledger_sum,
        entry_count=audit.entry_count,
        consistent=audit.consistent,
    )
