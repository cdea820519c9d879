"""
Database models package.
"""
from app.models.base import Base
from app.models.user import User
from app.models.credit import CreditAccount, LedgerEntry, LedgerEntryKind
from app.models.trained_model import TrainedModel, TrainedModelStatus
from app.models.job import GenerationJob, JobStatus, JobType, FailureReason

__all__ = [
    "Base",
    "User",
    "CreditAccount",
    "LedgerEntry",
    "LedgerEntryKind",
    "TrainedModel",
    "TrainedModelStatus",
    "GenerationJob",
    "JobStatus",
    "JobType",
    "FailureReason",
]
