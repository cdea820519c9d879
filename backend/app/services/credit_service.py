"""
Credit service for managing prepaid credits.
Provides atomic debit/credit operations backed by an append-only ledger.

Every balance change writes exactly one LedgerEntry in the same transaction
as the balance update, so balance == sum(ledger amounts) at all times.
Debits use a conditional UPDATE (balance >= amount) as the single
serialization point per user row.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.credit import CreditAccount, LedgerEntry, LedgerEntryKind
from app.models.user import User
from app.services.errors import AccountNotFoundError, InsufficientCreditsError
from app.utils.logging import log_credit_change
from app.utils.metrics import credit_deductions_refused_total, credit_operations_total

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    """Outcome of a ledger mutation."""
    success: bool
    new_balance: int
    already_applied: bool = False  # Idempotency key was seen before; nothing changed
    entry_id: Optional[str] = None


@dataclass
class AccountAudit:
    """Replay of a user's ledger against the materialized balance."""
    user_id: str
    balance: int
    total_granted: int
    total_used: int
    ledger_sum: int
    entry_count: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum == self.total_granted - self.total_used


class CreditService:
    """Service for credit management with atomic operations."""

    @staticmethod
    async def _current_balance(db: AsyncSession, user_id: str) -> Optional[int]:
        result = await db.execute(
            select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_entry(db: AsyncSession, idempotency_key: str) -> Optional[LedgerEntry]:
        result = await db.execute(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def ensure_account(db: AsyncSession, user_id: str) -> None:
        """
        Make sure a CreditAccount row exists for the user (zero balance).
        The new row is flushed into the current transaction, not committed.

        Raises:
            AccountNotFoundError: If the user does not exist
        """
        if await CreditService._current_balance(db, user_id) is not None:
            return

        user = await db.get(User, user_id)
        if user is None:
            raise AccountNotFoundError(f"User {user_id} not found")

        db.add(CreditAccount(user_id=user_id, balance=0, total_granted=0, total_used=0))
        await db.flush()

    @staticmethod
    async def has_credits(db: AsyncSession, user_id: str, amount: int) -> bool:
        """
        Check if user has sufficient credits. Read-only.

        Returns:
            True if user has >= amount credits
        """
        balance = await CreditService._current_balance(db, user_id)
        if balance is None:
            return False
        return balance >= amount

    @staticmethod
    async def get_balance(db: AsyncSession, user_id: str) -> int:
        """
        Get current credit balance for user.

        Returns:
            Current credit balance (0 if no account yet)
        """
        balance = await CreditService._current_balance(db, user_id)
        return balance or 0

    @staticmethod
    async def _apply_debit(
        db: AsyncSession,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind,
        description: str,
        reference_id: Optional[str],
        idempotency_key: Optional[str],
        commit: bool,
    ) -> LedgerResult:
        # Refusals and repeated keys write nothing, so the caller's session
        # and any pending work in it are left as they were.
        if idempotency_key:
            existing = await CreditService._find_entry(db, idempotency_key)
            if existing is not None:
                balance = await CreditService.get_balance(db, user_id)
                logger.info(
                    f"Ledger key {idempotency_key} already applied, skipping",
                    extra={"event": "credits_already_applied", "user_id": user_id},
                )
                return LedgerResult(True, balance, already_applied=True, entry_id=existing.id)

        # Balance check and write are one conditional UPDATE
        result = await db.execute(
            update(CreditAccount)
            .execution_options(synchronize_session=False)
            .where(CreditAccount.user_id == user_id)
            .where(CreditAccount.balance >= amount)
            .values(
                balance=CreditAccount.balance - amount,
                total_used=CreditAccount.total_used + amount,
                updated_at=datetime.utcnow(),
            )
        )

        if result.rowcount == 0:
            available = await CreditService._current_balance(db, user_id) or 0
            credit_deductions_refused_total.inc()
            raise InsufficientCreditsError(required=amount, available=available)

        new_balance = await CreditService._current_balance(db, user_id)
        entry = LedgerEntry(
            user_id=user_id,
            amount=-amount,
            kind=kind,
            balance_after=new_balance,
            description=description,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )
        db.add(entry)

        if commit:
            try:
                await db.commit()
            except IntegrityError:
                # Same key committed concurrently; our debit is discarded with the rollback
                await db.rollback()
                existing = await CreditService._find_entry(db, idempotency_key) if idempotency_key else None
                if existing is None:
                    raise
                balance = await CreditService.get_balance(db, user_id)
                return LedgerResult(True, balance, already_applied=True, entry_id=existing.id)
        else:
            await db.flush()

        credit_operations_total.labels(kind=kind.value).inc()
        log_credit_change(
            logger,
            event="credits_deducted",
            user_id=user_id,
            amount=-amount,
            kind=kind.value,
            new_balance=new_balance,
            reference_id=reference_id,
        )
        return LedgerResult(True, new_balance, entry_id=entry.id)

    @staticmethod
    async def _apply_credit(
        db: AsyncSession,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind,
        description: str,
        reference_id: Optional[str],
        idempotency_key: Optional[str],
        commit: bool,
        event: str,
    ) -> LedgerResult:
        await CreditService.ensure_account(db, user_id)

        if idempotency_key:
            existing = await CreditService._find_entry(db, idempotency_key)
            if existing is not None:
                balance = await CreditService.get_balance(db, user_id)
                logger.info(
                    f"Ledger key {idempotency_key} already applied, skipping",
                    extra={"event": "credits_already_applied", "user_id": user_id},
                )
                return LedgerResult(True, balance, already_applied=True, entry_id=existing.id)

        await db.execute(
            update(CreditAccount)
            .execution_options(synchronize_session=False)
            .where(CreditAccount.user_id == user_id)
            .values(
                balance=CreditAccount.balance + amount,
                total_granted=CreditAccount.total_granted + amount,
                updated_at=datetime.utcnow(),
            )
        )
        new_balance = await CreditService._current_balance(db, user_id)
        entry = LedgerEntry(
            user_id=user_id,
            amount=amount,
            kind=kind,
            balance_after=new_balance,
            description=description,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )
        db.add(entry)

        if commit:
            try:
                await db.commit()
            except IntegrityError:
                # Same key committed concurrently by another caller
                await db.rollback()
                existing = await CreditService._find_entry(db, idempotency_key) if idempotency_key else None
                if existing is None:
                    raise
                balance = await CreditService.get_balance(db, user_id)
                return LedgerResult(True, balance, already_applied=True, entry_id=existing.id)
        else:
            await db.flush()

        credit_operations_total.labels(kind=kind.value).inc()
        log_credit_change(
            logger,
            event=event,
            user_id=user_id,
            amount=amount,
            kind=kind.value,
            new_balance=new_balance,
            reference_id=reference_id,
        )
        return LedgerResult(True, new_balance, entry_id=entry.id)

    @staticmethod
    async def deduct(
        db: AsyncSession,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind,
        description: str,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerResult:
        """
        Atomically deduct credits from user balance.
        Deductions are refused, never clamped.

        Args:
            db: Database session
            user_id: User ID
            amount: Credits to deduct (must be positive)
            kind: Charge kind (training_charge, generation_charge, animation_charge)
            description: Human readable description for the ledger
            reference_id: Optional related object (job id)
            idempotency_key: Optional key; a repeated key changes nothing
            commit: Commit the transaction (False lets the caller batch more writes)

        Returns:
            LedgerResult with the new balance

        Raises:
            ValueError: If amount is not positive
            InsufficientCreditsError: If balance < amount (nothing is written; the
                caller decides whether to roll back its own pending work)
        """
        if amount <= 0:
            raise ValueError("Deduction amount must be positive")

        return await CreditService._apply_debit(
            db, user_id, amount, kind, description, reference_id, idempotency_key, commit
        )

    @staticmethod
    async def grant(
        db: AsyncSession,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind,
        description: str,
        idempotency_key: str,
        reference_id: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerResult:
        """
        Add credits to user balance, exactly once per idempotency key.

        Grants are triggered by redeliverable external events (webhooks, cron),
        so the key must identify the triggering event (invoice id, signup).

        Returns:
            LedgerResult; already_applied=True when the key was seen before

        Raises:
            ValueError: If amount is not positive or key is missing
            AccountNotFoundError: If the user does not exist
        """
        if amount <= 0:
            raise ValueError("Grant amount must be positive")
        if not idempotency_key:
            raise ValueError("Grants require an idempotency key")

        return await CreditService._apply_credit(
            db, user_id, amount, kind, description, reference_id, idempotency_key,
            commit, event="credits_granted",
        )

    @staticmethod
    async def refund(
        db: AsyncSession,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None,
        kind: LedgerEntryKind = LedgerEntryKind.REFUND,
        reference_id: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerResult:
        """
        Reverse an erroneous balance change.

        kind=refund returns credits to the user (e.g. a job that failed after
        being charged). kind=removal takes back credits granted in error
        (e.g. a grant that preceded payment confirmation) and, like any
        deduction, is refused rather than clamped.

        Raises:
            ValueError: If amount is not positive or kind is not refund/removal
            InsufficientCreditsError: Removal larger than the current balance
        """
        if amount <= 0:
            raise ValueError("Refund amount must be positive")

        if kind == LedgerEntryKind.REFUND:
            return await CreditService._apply_credit(
                db, user_id, amount, kind, reason, reference_id, idempotency_key,
                commit, event="credits_refunded",
            )
        if kind == LedgerEntryKind.REMOVAL:
            return await CreditService._apply_debit(
                db, user_id, amount, kind, reason, reference_id, idempotency_key, commit
            )
        raise ValueError(f"Refund kind must be refund or removal, got {kind}")

    @staticmethod
    async def grant_signup_credits(db: AsyncSession, user_id: str) -> LedgerResult:
        """Grant the free welcome credits once per user."""
        return await CreditService.grant(
            db,
            user_id,
            settings.free_signup_credits,
            LedgerEntryKind.FREE_GRANT,
            "Free welcome credits",
            idempotency_key=f"signup:{user_id}",
        )

    @staticmethod
    async def grant_subscription_credits(
        db: AsyncSession, user_id: str, invoice_id: str
    ) -> LedgerResult:
        """Grant monthly subscription credits once per paid invoice."""
        return await CreditService.grant(
            db,
            user_id,
            settings.subscription_monthly_credits,
            LedgerEntryKind.SUBSCRIPTION_GRANT,
            "Monthly subscription grant",
            idempotency_key=f"subscription:{invoice_id}",
            reference_id=invoice_id,
        )

    @staticmethod
    async def get_history(db: AsyncSession, user_id: str, limit: int = 50) -> List[LedgerEntry]:
        """Ledger entries for a user, newest first."""
        result = await db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def audit_account(db: AsyncSession, user_id: str) -> AccountAudit:
        """
        Replay the ledger for a user and compare with the materialized balance.

        Raises:
            AccountNotFoundError: If the user has no credit account
        """
        account = (
            await db.execute(
                select(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(f"No credit account for user {user_id}")

        totals = await db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0), func.count(LedgerEntry.id))
            .where(LedgerEntry.user_id == user_id)
        )
        ledger_sum, entry_count = totals.one()

        return AccountAudit(
            user_id=user_id,
            balance=account.balance,
            total_granted=account.total_granted,
            total_used=account.total_used,
            ledger_sum=int(ledger_sum),
            entry_count=int(entry_count),
        )
