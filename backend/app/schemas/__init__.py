"""
Pydantic schemas for API request/response validation.
"""
from app.schemas.job import (
    JobCreate,
    JobCreateResponse,
    JobResponse,
    JobStatusResponse,
    JobListResponse,
)
from app.schemas.credit import (
    CreditsResponse,
    LedgerEntryResponse,
    CreditHistoryResponse,
    CreditAdjustmentRequest,
    CreditAdjustmentResponse,
    AccountAuditResponse,
)

__all__ = [
    "JobCreate",
    "JobCreateResponse",
    "JobResponse",
    "JobStatusResponse",
    "JobListResponse",
    "CreditsResponse",
    "LedgerEntryResponse",
    "CreditHistoryResponse",
    "CreditAdjustmentRequest",
    "CreditAdjustmentResponse",
    "AccountAuditResponse",
]
