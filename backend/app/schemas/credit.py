"""
Pydantic schemas for credit endpoints.
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from app.models.credit import LedgerEntryKind


class CreditsResponse(BaseModel):
    """Response schema for credits endpoint."""
    credits: int
    user_id: str


class LedgerEntryResponse(BaseModel):
    id: str
    amount: int
    kind: LedgerEntryKind
    balance_after: int
    description: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CreditHistoryResponse(BaseModel):
    balance: int
    entries: List[LedgerEntryResponse]


class CreditAdjustmentRequest(BaseModel):
    """Admin grant/refund request. The idempotency key identifies the triggering event."""
    user_id: str
    amount: int = Field(..., gt=0)
    kind: LedgerEntryKind
    description: str
    idempotency_key: str = Field(..., min_length=1)


class CreditAdjustmentResponse(BaseModel):
    success: bool
    new_balance: int
    already_applied: bool


class AccountAuditResponse(BaseModel):
    user_id: str
    balance: int
    total_granted: int
    total_used: int
    ledger_sum: int
    entry_count: int
    consistent: bool
