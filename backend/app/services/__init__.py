"""
Business logic services.
"""
from app.services.credit_service import CreditService
from app.services.job_service import JobService, ReconcileOutcome, ReconcileResult

__all__ = [
    "CreditService",
    "JobService",
    "ReconcileOutcome",
    "ReconcileResult",
]
