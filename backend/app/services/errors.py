"""
Typed errors for the credit ledger and job lifecycle.
Routers translate these into HTTP responses; the reconciliation loop
reports provider problems through ReconcileResult instead of raising.
"""
from typing import Optional


class StudioError(Exception):
    """Base class for domain errors."""


class InsufficientCreditsError(StudioError):
    """User balance is lower than the amount required."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. You have {available} credits but need {required}."
        )


class AccountNotFoundError(StudioError):
    """No user exists for the given id."""


class JobNotFoundError(StudioError):
    """Job does not exist or does not belong to the caller."""


class ProviderError(StudioError):
    """Base class for compute provider errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderUnavailableError(ProviderError):
    """Transient failure: network error, timeout, 429 or 5xx. Retry later."""


class ProviderRequestError(ProviderError):
    """Provider rejected the request (4xx). Not retryable as-is."""


class ProviderReportedFailure(StudioError):
    """The remote job itself failed or was canceled."""

    def __init__(self, message: str, canceled: bool = False):
        self.canceled = canceled
        super().__init__(message)


class UnresolvedOutputError(StudioError):
    """Provider reported success but no trustworthy artifact could be resolved."""

    def __init__(self, reason: str, anomalies: Optional[list] = None):
        self.reason = reason
        self.anomalies = anomalies or []
        super().__init__(reason)
