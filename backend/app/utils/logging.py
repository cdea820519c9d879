"""
Production logging utility for structured JSON logging.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- job_id
- user_id
- duration_ms

Usage:
    from app.utils.logging import configure_logging, log_job_submitted

    configure_logging('studio-api', 'INFO')
    log_job_submitted(logger, job_id='123', user_id='456', job_type='training', cost=20)
"""
import logging
import sys
from typing import Optional, Dict, Any
from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO"):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier (studio-api or studio-worker)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        if cls._configured:
            return  # Already configured

        cls._service_name = service_name

        # Remove default handlers
        root_logger = logging.getLogger()
        root_logger.handlers = []

        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(levelname)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        # Console handler (for docker logs)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True


def _build_log_extra(
    event: str,
    job_id: Optional[str] = None,
    user_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Build extra fields for structured logging.

    Args:
        event: Event name (mandatory)
        job_id: Optional job ID
        user_id: Optional user ID
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields

    Returns:
        Dictionary of extra fields
    """
    extra = {
        "event": event,
        **kwargs
    }

    if job_id:
        extra["job_id"] = job_id
    if user_id:
        extra["user_id"] = user_id
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


# Job lifecycle events

def log_job_submitted(
    logger: logging.Logger,
    job_id: str,
    user_id: str,
    job_type: str,
    remote_job_id: Optional[str] = None,
    cost: Optional[int] = None,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log job submission to the provider.

    Args:
        logger: Logger instance
        job_id: Local job ID (required)
        user_id: User ID (required)
        job_type: training, image_generation or video_generation
        remote_job_id: Provider-assigned ID
        cost: Credits charged for the job
        duration_ms: Optional duration in milliseconds
    """
    extra = _build_log_extra(
        event="job_submitted",
        job_id=job_id,
        user_id=user_id,
        duration_ms=duration_ms,
        job_type=job_type,
        **kwargs
    )
    if remote_job_id:
        extra["remote_job_id"] = remote_job_id
    if cost is not None:
        extra["cost"] = cost

    logger.info(f"Job submitted: {job_id}", extra=extra)


def log_job_progress(
    logger: logging.Logger,
    job_id: str,
    progress: int,
    source: str,
    provider_status: Optional[str] = None,
    **kwargs
):
    """Log a progress update written by a reconciliation pass."""
    extra = _build_log_extra(
        event="job_progress",
        job_id=job_id,
        progress=progress,
        progress_source=source,
        **kwargs
    )
    if provider_status:
        extra["provider_status"] = provider_status

    logger.debug(f"Job progress: {job_id} {progress}% ({source})", extra=extra)


def log_job_completed(
    logger: logging.Logger,
    job_id: str,
    user_id: str,
    job_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log the terminal completion transition of a job.

    Args:
        logger: Logger instance
        job_id: Job ID (required)
        user_id: User ID (required)
        job_type: Optional job type
        duration_ms: Time between submission and completion
        **kwargs: Additional fields (resolved artifacts, source)
    """
    extra = _build_log_extra(
        event="job_completed",
        job_id=job_id,
        user_id=user_id,
        duration_ms=duration_ms,
        **kwargs
    )
    if job_type:
        extra["job_type"] = job_type

    logger.info(f"Job completed: {job_id}", extra=extra)


def log_job_failed(
    logger: logging.Logger,
    job_id: str,
    user_id: Optional[str] = None,
    reason: Optional[str] = None,
    error: Optional[str] = None,
    job_type: Optional[str] = None,
    include_traceback: bool = False,
    **kwargs
):
    """
    Log the terminal failure transition of a job.

    Args:
        logger: Logger instance
        job_id: Job ID (required)
        user_id: Optional user ID
        reason: Failure reason code
        error: Provider error message
        job_type: Optional job type
        include_traceback: Whether to include stack trace
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="job_failed",
        job_id=job_id,
        user_id=user_id,
        **kwargs
    )
    if job_type:
        extra["job_type"] = job_type
    if reason:
        extra["reason"] = reason
    if error:
        extra["error"] = str(error)

    message = f"Job failed: {job_id}"
    if error:
        message += f" - {error}"

    if include_traceback and sys.exc_info()[0] is not None:
        logger.error(message, extra=extra, exc_info=sys.exc_info())
    else:
        logger.error(message, extra=extra)


def log_job_reconcile_transient(
    logger: logging.Logger,
    job_id: str,
    error: str,
    **kwargs
):
    """Log a reconciliation pass that left the job untouched due to a transient error."""
    extra = _build_log_extra(
        event="job_reconcile_transient",
        job_id=job_id,
        error=str(error),
        **kwargs
    )
    logger.warning(f"Reconcile deferred for job {job_id}: {error}", extra=extra)


def log_output_anomaly(
    logger: logging.Logger,
    anomaly: str,
    job_id: Optional[str] = None,
    **kwargs
):
    """Log a recoverable anomaly found while resolving provider output."""
    extra = _build_log_extra(
        event="output_anomaly",
        job_id=job_id,
        anomaly=anomaly,
        **kwargs
    )
    logger.warning(f"Output anomaly: {anomaly}", extra=extra)


# Credit ledger events

def log_credit_change(
    logger: logging.Logger,
    event: str,
    user_id: str,
    amount: int,
    kind: str,
    new_balance: int,
    **kwargs
):
    """
    Log a ledger mutation (credits_deducted, credits_granted, credits_refunded).

    Args:
        logger: Logger instance
        event: Event name
        user_id: User ID (required)
        amount: Signed amount applied to the balance
        kind: Ledger entry kind
        new_balance: Balance after the change
    """
    extra = _build_log_extra(
        event=event,
        user_id=user_id,
        amount=amount,
        kind=kind,
        new_balance=new_balance,
        **kwargs
    )
    logger.info(f"Credits {kind} {amount:+d} for user {user_id} -> {new_balance}", extra=extra)


# Provider event functions

def log_provider_request(
    logger: logging.Logger,
    provider: str,
    operation: str,
    duration_ms: Optional[float] = None,
    job_id: Optional[str] = None,
    **kwargs
):
    """
    Log compute provider request event.

    Args:
        logger: Logger instance
        provider: Provider name (required)
        operation: Operation name (submit, fetch, list_versions, ...) (required)
        duration_ms: Optional duration in milliseconds
        job_id: Optional job ID
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="provider_request",
        job_id=job_id,
        duration_ms=duration_ms,
        provider=provider,
        operation=operation,
        **kwargs
    )

    logger.info(f"Provider request: {provider}.{operation}", extra=extra)


def log_provider_failure(
    logger: logging.Logger,
    provider: str,
    operation: str,
    error: str,
    duration_ms: Optional[float] = None,
    job_id: Optional[str] = None,
    **kwargs
):
    """
    Log compute provider failure event.

    Args:
        logger: Logger instance
        provider: Provider name (required)
        operation: Operation name (required)
        error: Error message (required)
        duration_ms: Optional duration in milliseconds
        job_id: Optional job ID
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="provider_failure",
        job_id=job_id,
        duration_ms=duration_ms,
        provider=provider,
        operation=operation,
        error=str(error),
        **kwargs
    )

    logger.error(f"Provider failure: {provider}.{operation} - {error}", extra=extra)


def configure_logging(service_name: str, log_level: str = "INFO"):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level)
