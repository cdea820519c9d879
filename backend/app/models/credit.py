"""
Credit ledger models.
CreditAccount holds the materialized balance; LedgerEntry is the append-only
audit log. Sum of LedgerEntry.amount for a user always equals the balance.
"""
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from app.models.base import Base, generate_uuid


class LedgerEntryKind(str, enum.Enum):
    """Kind of balance change recorded in the ledger."""
    PURCHASE = "purchase"
    SUBSCRIPTION_GRANT = "subscription_grant"
    FREE_GRANT = "free_grant"
    TRAINING_CHARGE = "training_charge"
    GENERATION_CHARGE = "generation_charge"
    ANIMATION_CHARGE = "animation_charge"
    REFUND = "refund"
    REMOVAL = "removal"


GRANT_KINDS = (
    LedgerEntryKind.PURCHASE,
    LedgerEntryKind.SUBSCRIPTION_GRANT,
    LedgerEntryKind.FREE_GRANT,
)

CHARGE_KINDS = (
    LedgerEntryKind.TRAINING_CHARGE,
    LedgerEntryKind.GENERATION_CHARGE,
    LedgerEntryKind.ANIMATION_CHARGE,
)


class CreditAccount(Base):
    """Per-user credit balance. balance == total_granted - total_used."""

    __tablename__ = "credit_accounts"

    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    total_granted = Column(Integer, nullable=False, default=0)
    total_used = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="credit_account")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
    )

    def __repr__(self):
        return f"<CreditAccount(user_id={self.user_id}, balance={self.balance})>"


class LedgerEntry(Base):
    """Immutable record of a single balance change."""

    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    amount = Column(Integer, nullable=False)  # Positive = grant/refund, negative = charge/removal
    kind = Column(
        SQLEnum(
            LedgerEntryKind,
            native_enum=False,
            length=32,
            values_callable=lambda kinds: [k.value for k in kinds],
        ),
        nullable=False,
    )
    balance_after = Column(Integer, nullable=False)  # Snapshot for audit
    description = Column(String(500), nullable=True)

    reference_id = Column(String(64), nullable=True)  # e.g. job id
    idempotency_key = Column(String(255), nullable=True, unique=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_ledger_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<LedgerEntry(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, kind={self.kind})>"
        )
