"""
User profile endpoints.
Returns credit information about the authenticated user.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.user import User
from app.auth.dependencies import get_current_user
from app.schemas.credit import CreditsResponse, CreditHistoryResponse, LedgerEntryResponse
from app.services.credit_service import CreditService

router = APIRouter()


@router.get("/credits", response_model=CreditsResponse)
async def get_credits(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Get current credit balance for authenticated user.
    Requires valid Firebase JWT token.
    """
    balance = await CreditService.get_balance(db, current_user.id)

    return CreditsResponse(
        credits=balance,
        user_id=current_user.id
    )


@router.get("/credits/history", response_model=CreditHistoryResponse)
async def get_credit_history(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Ledger entries for the authenticated user, newest first."""
    balance = await CreditService.get_balance(db, current_user.id)
    entries = await CreditService.get_history(db, current_user.id, limit=limit)

    return CreditHistoryResponse(
        balance=balance,
        entries=[LedgerEntryResponse.model_validate(entry) for entry in entries]
    )
