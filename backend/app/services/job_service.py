"""
Job service: credit-gated submission and reconciliation of provider jobs.

reconcile() is safe to call from any number of concurrent callers (poll
endpoint, Celery beat sweep, admin tools). Terminal transitions are guarded
by a conditional UPDATE on status; only the caller whose update affects a
row performs completion side effects and refunds.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.ai.base import ComputeProvider, JobSpec, ProviderJob, ProviderStatus
from app.config import settings
from app.models.credit import LedgerEntryKind
from app.models.job import (
    TERMINAL_STATUSES,
    FailureReason,
    GenerationJob,
    JobStatus,
    JobType,
)
from app.models.trained_model import TrainedModel, TrainedModelStatus
from app.services.credit_service import CreditService
from app.services.errors import (
    InsufficientCreditsError,
    JobNotFoundError,
    ProviderError,
    ProviderReportedFailure,
    ProviderUnavailableError,
    StudioError,
    UnresolvedOutputError,
)
from app.services.output_resolver import OutputResolver
from app.services.progress_estimator import estimate_progress, next_progress
from app.utils.logging import (
    log_job_completed,
    log_job_failed,
    log_job_progress,
    log_job_reconcile_transient,
    log_job_submitted,
)
from app.utils.metrics import (
    job_duration_seconds,
    jobs_active,
    jobs_completed_total,
    jobs_failed_total,
    jobs_submitted_total,
    reconcile_outcomes_total,
    unresolved_output_total,
)

logger = logging.getLogger(__name__)

CHARGE_KINDS = {
    JobType.TRAINING: LedgerEntryKind.TRAINING_CHARGE,
    JobType.IMAGE_GENERATION: LedgerEntryKind.GENERATION_CHARGE,
    JobType.VIDEO_GENERATION: LedgerEntryKind.ANIMATION_CHARGE,
}

TRAINING_DEFAULTS = {
    "steps": 1000,
    "lora_rank": 16,
    "learning_rate": 0.0004,
    "batch_size": 1,
    "resolution": "512,768,1024",
    "autocaption": True,
}

_NON_TERMINAL = (JobStatus.PENDING, JobStatus.SUBMITTED, JobStatus.PROCESSING)


class ReconcileOutcome(str, enum.Enum):
    CACHED = "cached"
    UNCHANGED = "unchanged"
    PROGRESSED = "progressed"
    COMPLETED = "completed"
    FAILED = "failed"
    UNRESOLVED = "unresolved"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass and the job as stored afterwards."""
    job: GenerationJob
    outcome: ReconcileOutcome
    error: Optional[StudioError] = None

    @property
    def transient(self) -> bool:
        return self.outcome == ReconcileOutcome.TRANSIENT_ERROR


def charge_key(job_id: str) -> str:
    return f"charge:job:{job_id}"


def refund_key(job_id: str) -> str:
    return f"refund:job:{job_id}"


def destination_for_user(user_id: str) -> str:
    return f"{settings.replicate_username}/user-{user_id[:8]}-selfie-lora"


def trigger_word_for_user(user_id: str) -> str:
    return f"user{user_id[:8]}"


def ensure_trigger_word(prompt: str, trigger_word: str) -> str:
    """Prefix the prompt with the trigger word unless it already contains it."""
    if trigger_word.lower() in prompt.lower():
        return prompt
    return f"{trigger_word} {prompt}".strip()


def _remote_kind(job: GenerationJob) -> str:
    return "training" if job.job_type == JobType.TRAINING else "prediction"


class JobService:
    """Submission and reconciliation of asynchronous provider jobs."""

    def __init__(self, provider: ComputeProvider, resolver: Optional[OutputResolver] = None):
        self.provider = provider
        self.resolver = resolver or OutputResolver(provider)

    # Loading

    @staticmethod
    async def _load(db: AsyncSession, job_id: str) -> Optional[GenerationJob]:
        result = await db.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_job(db: AsyncSession, job_id: str, user_id: Optional[str] = None) -> GenerationJob:
        """
        Load a job, optionally checking ownership.

        Raises:
            JobNotFoundError: Missing, or owned by another user
        """
        job = await JobService._load(db, job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    @staticmethod
    async def list_jobs(db: AsyncSession, user_id: str, limit: int = 20) -> List[GenerationJob]:
        result = await db.execute(
            select(GenerationJob)
            .where(GenerationJob.user_id == user_id)
            .order_by(GenerationJob.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # Submission

    async def _build_spec(
        self,
        db: AsyncSession,
        job: GenerationJob,
        payload: Dict[str, Any],
        trained_model_id: Optional[str],
    ) -> JobSpec:
        if job.job_type == JobType.TRAINING:
            return JobSpec(
                kind="training",
                model=settings.trainer_model,
                version=settings.trainer_version,
                destination=job.destination_hint,
                input={**TRAINING_DEFAULTS, **payload},
            )

        model_ref = (
            settings.image_generation_version
            if job.job_type == JobType.IMAGE_GENERATION
            else settings.video_generation_model
        )
        model, version = model_ref, None
        if ":" in model_ref:
            model, _, version = model_ref.partition(":")

        spec_input = dict(payload)
        if trained_model_id:
            result = await db.execute(
                select(TrainedModel).where(
                    TrainedModel.id == trained_model_id,
                    TrainedModel.user_id == job.user_id,
                )
            )
            trained = result.scalar_one_or_none()
            if trained is None or trained.status != TrainedModelStatus.READY or not trained.weights_url:
                raise ValueError("Trained model is not ready for generation")
            spec_input["lora_weights"] = trained.weights_url
            if isinstance(spec_input.get("prompt"), str):
                spec_input["prompt"] = ensure_trigger_word(spec_input["prompt"], trained.trigger_word)

        return JobSpec(kind="prediction", model=model, version=version, input=spec_input)

    async def submit_job(
        self,
        db: AsyncSession,
        user_id: str,
        job_type: JobType,
        input_payload: Dict[str, Any],
        declared_cost: int,
        model_name: Optional[str] = None,
        trained_model_id: Optional[str] = None,
    ) -> GenerationJob:
        """
        Charge credits, record the job, then submit it to the provider.

        The charge and the pending job commit together. If the provider
        rejects or cannot be reached, the charge is refunded and the job is
        marked failed in one transaction before the error propagates.

        Raises:
            InsufficientCreditsError: Balance lower than declared_cost (nothing persisted)
            ProviderUnavailableError: Provider unreachable or the submit call failed
                unexpectedly (charge refunded)
            ProviderRequestError: Provider rejected the job (charge refunded)
            ValueError: Invalid cost or trained model not ready
        """
        job_type = JobType(job_type)
        if declared_cost < 0:
            raise ValueError("Job cost cannot be negative")

        job = GenerationJob(
            user_id=user_id,
            job_type=job_type,
            status=JobStatus.PENDING,
            progress=0,
            cost=declared_cost,
            input_payload=input_payload,
            trained_model_id=trained_model_id,
        )
        db.add(job)
        await db.flush()

        if job_type == JobType.TRAINING:
            destination = destination_for_user(user_id)
            trigger_word = trigger_word_for_user(user_id)
            trained = TrainedModel(
                user_id=user_id,
                name=model_name or f"Model {trigger_word}",
                trigger_word=trigger_word,
                destination_model=destination,
                status=TrainedModelStatus.TRAINING,
            )
            db.add(trained)
            await db.flush()
            job.trained_model_id = trained.id
            job.destination_hint = destination
            input_payload = {**input_payload, "trigger_word": trigger_word}

        try:
            spec = await self._build_spec(db, job, input_payload, trained_model_id)
        except ValueError:
            await db.rollback()
            raise

        if declared_cost > 0:
            try:
                await CreditService.deduct(
                    db,
                    user_id,
                    declared_cost,
                    CHARGE_KINDS[job_type],
                    description=f"{job_type.value.replace('_', ' ').capitalize()} job",
                    reference_id=job.id,
                    idempotency_key=charge_key(job.id),
                    commit=False,
                )
            except InsufficientCreditsError:
                # Discard the pending job and trained model
                await db.rollback()
                raise
            job.cost_charged = True
        await db.commit()

        try:
            if spec.destination:
                await self.provider.ensure_model(
                    spec.destination, description=f"LoRA model for user {user_id}"
                )
            remote_id = await self.provider.submit(spec)
        except ProviderError as e:
            await self._fail_submission(db, job, e)
            raise
        except Exception as e:
            logger.exception(
                f"Unexpected error submitting job {job.id}",
                extra={"event": "job_submit_error", "job_id": job.id, "user_id": user_id},
            )
            error = ProviderUnavailableError(f"Submission failed: {e}")
            await self._fail_submission(db, job, error)
            raise error from e

        accepted = await db.execute(
            update(GenerationJob)
            .execution_options(synchronize_session=False)
            .where(GenerationJob.id == job.id, GenerationJob.status == JobStatus.PENDING)
            .values(
                remote_job_id=remote_id,
                status=JobStatus.SUBMITTED,
                started_at=datetime.utcnow(),
            )
        )
        await db.commit()
        job = await self._load(db, job.id)
        if accepted.rowcount == 0:
            # Abandoned by the sweep while the provider call was in flight
            logger.warning(
                f"Job {job.id} was failed before submission returned; remote job {remote_id} is orphaned",
                extra={"event": "job_submit_orphaned", "job_id": job.id, "remote_job_id": remote_id},
            )
            return job

        jobs_submitted_total.labels(job_type=job_type.value).inc()
        log_job_submitted(
            logger,
            job_id=job.id,
            user_id=user_id,
            job_type=job_type.value,
            remote_job_id=remote_id,
            cost=declared_cost,
        )
        return job

    async def _fail_submission(self, db: AsyncSession, job: GenerationJob, error: StudioError) -> bool:
        """
        Fail a job that never reached the provider and refund its charge.

        Returns False when the job was already terminal (nothing changed).
        """
        now = datetime.utcnow()
        claimed = await self._claim_terminal(
            db,
            job.id,
            {
                "status": JobStatus.FAILED,
                "failure_reason": FailureReason.SUBMISSION_FAILED.value,
                "failure_message": str(error),
                "completed_at": now,
            },
        )
        if not claimed:
            await db.rollback()
            return False

        if job.cost_charged and not job.cost_refunded and job.cost > 0:
            await CreditService.refund(
                db,
                job.user_id,
                job.cost,
                reason=f"Refund: submission failed for job {job.id}",
                idempotency_key=refund_key(job.id),
                reference_id=job.id,
                commit=False,
            )
            await db.execute(
                update(GenerationJob)
                .execution_options(synchronize_session=False)
                .where(GenerationJob.id == job.id)
                .values(cost_refunded=True)
            )
        if job.trained_model_id and job.job_type == JobType.TRAINING:
            await db.execute(
                update(TrainedModel)
                .execution_options(synchronize_session=False)
                .where(TrainedModel.id == job.trained_model_id)
                .values(status=TrainedModelStatus.FAILED, completed_at=now)
            )
        await db.commit()
        await self._load(db, job.id)

        jobs_failed_total.labels(
            job_type=job.job_type.value, reason=FailureReason.SUBMISSION_FAILED.value
        ).inc()
        log_job_failed(
            logger,
            job_id=job.id,
            user_id=job.user_id,
            reason=FailureReason.SUBMISSION_FAILED.value,
            error=str(error),
            job_type=job.job_type.value,
        )
        return True

    # Reconciliation

    async def get_job_status(self, db: AsyncSession, job_id: str, user_id: str) -> ReconcileResult:
        """Ownership-checked reconcile pass for the polling endpoint."""
        await self.get_job(db, job_id, user_id)
        return await self.reconcile(db, job_id)

    async def reconcile(self, db: AsyncSession, job_id: str) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Terminal jobs are returned as stored without contacting the provider.
        Provider errors never propagate; they come back as transient_error
        with the job untouched.

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = await self.get_job(db, job_id)
        result = await self._reconcile(db, job)
        reconcile_outcomes_total.labels(outcome=result.outcome.value).inc()
        return result

    async def _reconcile(self, db: AsyncSession, job: GenerationJob) -> ReconcileResult:
        if job.is_terminal:
            return ReconcileResult(job, ReconcileOutcome.CACHED)
        if not job.remote_job_id:
            # Submission still in flight
            return ReconcileResult(job, ReconcileOutcome.UNCHANGED)

        try:
            remote = await self.provider.fetch(job.remote_job_id, kind=_remote_kind(job))
        except ProviderError as e:
            log_job_reconcile_transient(logger, job.id, str(e), user_id=job.user_id)
            return ReconcileResult(job, ReconcileOutcome.TRANSIENT_ERROR, error=e)

        if remote.status in (ProviderStatus.STARTING, ProviderStatus.PROCESSING):
            return await self._record_progress(db, job, remote)
        if remote.status == ProviderStatus.SUCCEEDED:
            return await self._complete(db, job, remote)
        if remote.status in (ProviderStatus.FAILED, ProviderStatus.CANCELED):
            canceled = remote.status == ProviderStatus.CANCELED
            reason = FailureReason.PROVIDER_CANCELED if canceled else FailureReason.PROVIDER_FAILED
            message = remote.error or ("Job was canceled" if canceled else "Job failed")
            failure = ProviderReportedFailure(message, canceled=canceled)
            return await self._fail(db, job, reason, failure, remote.raw_status)

        message = f"Unrecognized provider status: {remote.raw_status!r}"
        log_job_reconcile_transient(logger, job.id, message, user_id=job.user_id)
        return ReconcileResult(job, ReconcileOutcome.TRANSIENT_ERROR, error=ProviderUnavailableError(message))

    async def _record_progress(
        self, db: AsyncSession, job: GenerationJob, remote: ProviderJob
    ) -> ReconcileResult:
        snapshot = estimate_progress(
            remote.status,
            metrics_fraction=remote.progress_fraction,
            logs=remote.logs,
            started_at=job.started_at,
            expected_seconds=settings.expected_duration(job.job_type.value),
        )
        new_progress = next_progress(job.progress, snapshot)
        changed = False

        if job.status == JobStatus.SUBMITTED:
            result = await db.execute(
                update(GenerationJob)
                .execution_options(synchronize_session=False)
                .where(GenerationJob.id == job.id, GenerationJob.status == JobStatus.SUBMITTED)
                .values(status=JobStatus.PROCESSING, provider_status=remote.raw_status)
            )
            changed = result.rowcount > 0

        if new_progress is not None:
            stmt = update(GenerationJob).execution_options(synchronize_session=False).where(
                GenerationJob.id == job.id,
                GenerationJob.status.in_(_NON_TERMINAL),
            )
            if not snapshot.from_provider:
                stmt = stmt.where(GenerationJob.progress < new_progress)
            result = await db.execute(stmt.values(progress=new_progress))
            changed = changed or result.rowcount > 0

        await db.commit()
        job = await self._load(db, job.id)

        if job.is_terminal:
            return ReconcileResult(job, ReconcileOutcome.CACHED)
        if not changed:
            return ReconcileResult(job, ReconcileOutcome.UNCHANGED)

        log_job_progress(
            logger, job.id, job.progress, snapshot.source.value, provider_status=remote.raw_status
        )
        return ReconcileResult(job, ReconcileOutcome.PROGRESSED)

    async def _claim_terminal(self, db: AsyncSession, job_id: str, values: Dict[str, Any]) -> bool:
        result = await db.execute(
            update(GenerationJob)
            .execution_options(synchronize_session=False)
            .where(GenerationJob.id == job_id, GenerationJob.status.notin_(TERMINAL_STATUSES))
            .values(**values)
        )
        return result.rowcount > 0

    async def _lost_race(self, db: AsyncSession, job_id: str) -> ReconcileResult:
        await db.rollback()
        job = await self._load(db, job_id)
        return ReconcileResult(job, ReconcileOutcome.CACHED)

    async def _complete(self, db: AsyncSession, job: GenerationJob, remote: ProviderJob) -> ReconcileResult:
        try:
            resolved = await self.resolver.resolve(
                remote.output,
                destination_hint=job.destination_hint,
                expects_weights=job.job_type == JobType.TRAINING,
                job_id=job.id,
            )
        except ProviderError as e:
            log_job_reconcile_transient(logger, job.id, str(e), user_id=job.user_id, stage="resolve")
            return ReconcileResult(job, ReconcileOutcome.TRANSIENT_ERROR, error=e)

        if not resolved.resolved:
            unresolved_output_total.labels(job_type=job.job_type.value).inc()
            return await self._fail(
                db,
                job,
                FailureReason.UNRESOLVED_OUTPUT,
                UnresolvedOutputError(resolved.unresolved_reason, resolved.anomalies),
                remote.raw_status,
                refund_allowed=settings.refund_on_unresolved_output,
                outcome=ReconcileOutcome.UNRESOLVED,
            )

        now = datetime.utcnow()
        artifacts = resolved.to_artifacts()
        claimed = await self._claim_terminal(
            db,
            job.id,
            {
                "status": JobStatus.COMPLETED,
                "progress": 100,
                "completed_at": now,
                "result_artifacts": artifacts,
                "provider_status": remote.raw_status,
            },
        )
        if not claimed:
            return await self._lost_race(db, job.id)

        if job.trained_model_id and job.job_type == JobType.TRAINING:
            model_values = {
                "status": TrainedModelStatus.READY,
                "version_id": resolved.version_id,
                "weights_url": resolved.weights_url,
                "completed_at": now,
            }
            if resolved.model_id:
                model_values["destination_model"] = resolved.model_id
            await db.execute(
                update(TrainedModel)
                .execution_options(synchronize_session=False)
                .where(TrainedModel.id == job.trained_model_id)
                .values(**model_values)
            )
        await db.commit()

        job = await self._load(db, job.id)
        jobs_completed_total.labels(job_type=job.job_type.value).inc()
        duration_ms = None
        if job.started_at:
            duration = (now - job.started_at).total_seconds()
            duration_ms = duration * 1000
            job_duration_seconds.labels(job_type=job.job_type.value, status="completed").observe(duration)
        log_job_completed(
            logger,
            job_id=job.id,
            user_id=job.user_id,
            job_type=job.job_type.value,
            duration_ms=duration_ms,
            artifacts=artifacts,
            anomalies=resolved.anomalies,
        )
        return ReconcileResult(job, ReconcileOutcome.COMPLETED)

    async def _fail(
        self,
        db: AsyncSession,
        job: GenerationJob,
        reason: FailureReason,
        error: StudioError,
        provider_status: Optional[str],
        refund_allowed: bool = True,
        outcome: ReconcileOutcome = ReconcileOutcome.FAILED,
    ) -> ReconcileResult:
        now = datetime.utcnow()
        claimed = await self._claim_terminal(
            db,
            job.id,
            {
                "status": JobStatus.FAILED,
                "failure_reason": reason.value,
                "failure_message": str(error),
                "completed_at": now,
                "provider_status": provider_status,
            },
        )
        if not claimed:
            return await self._lost_race(db, job.id)

        if job.trained_model_id and job.job_type == JobType.TRAINING:
            await db.execute(
                update(TrainedModel)
                .execution_options(synchronize_session=False)
                .where(TrainedModel.id == job.trained_model_id)
                .values(status=TrainedModelStatus.FAILED, completed_at=now)
            )

        refund = (
            refund_allowed
            and job.cost_charged
            and not job.cost_refunded
            and job.cost > 0
            and job.job_type.value in settings.refund_failed_job_types
        )
        if refund:
            await CreditService.refund(
                db,
                job.user_id,
                job.cost,
                reason=f"Refund: {job.job_type.value} job {job.id} failed",
                idempotency_key=refund_key(job.id),
                reference_id=job.id,
                commit=False,
            )
            await db.execute(
                update(GenerationJob)
                .execution_options(synchronize_session=False)
                .where(GenerationJob.id == job.id)
                .values(cost_refunded=True)
            )
        await db.commit()

        job = await self._load(db, job.id)
        jobs_failed_total.labels(job_type=job.job_type.value, reason=reason.value).inc()
        if job.started_at:
            job_duration_seconds.labels(job_type=job.job_type.value, status="failed").observe(
                (now - job.started_at).total_seconds()
            )
        log_job_failed(
            logger,
            job_id=job.id,
            user_id=job.user_id,
            reason=reason.value,
            error=str(error),
            job_type=job.job_type.value,
            refunded=refund,
        )
        return ReconcileResult(job, outcome, error=error)

    # Sweep

    async def fail_stale_submissions(
        self, db: AsyncSession, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> int:
        """
        Fail and refund pending jobs that never received a remote id.

        A job stays pending only while its submit call is in flight; one older
        than submission_grace_seconds was lost (worker crash, unexpected error
        after the charge committed).

        Returns:
            Number of jobs failed
        """
        cutoff = (now or datetime.utcnow()) - timedelta(seconds=settings.submission_grace_seconds)
        result = await db.execute(
            select(GenerationJob.id)
            .where(
                GenerationJob.status == JobStatus.PENDING,
                GenerationJob.remote_job_id.is_(None),
                GenerationJob.created_at < cutoff,
            )
            .order_by(GenerationJob.created_at.asc())
            .limit(limit or settings.reconcile_sweep_batch_size)
        )
        stale_ids = list(result.scalars().all())

        failed = 0
        for job_id in stale_ids:
            job = await self._load(db, job_id)
            if job is None or job.status != JobStatus.PENDING:
                continue
            error = ProviderUnavailableError("Submission did not complete; job abandoned")
            if await self._fail_submission(db, job, error):
                failed += 1
        return failed

    async def sweep_active_jobs(self, db: AsyncSession, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Fail abandoned submissions, then reconcile every non-terminal job
        that has a remote id, oldest first.

        Returns:
            Count of passes per outcome (abandoned submissions under "submission_failed")
        """
        counts: Dict[str, int] = {}
        abandoned = await self.fail_stale_submissions(db, limit)
        if abandoned:
            counts[FailureReason.SUBMISSION_FAILED.value] = abandoned

        result = await db.execute(
            select(GenerationJob.id)
            .where(
                GenerationJob.status.in_((JobStatus.SUBMITTED, JobStatus.PROCESSING)),
                GenerationJob.remote_job_id.isnot(None),
            )
            .order_by(GenerationJob.created_at.asc())
            .limit(limit or settings.reconcile_sweep_batch_size)
        )
        job_ids = list(result.scalars().all())
        jobs_active.set(len(job_ids))

        for job_id in job_ids:
            outcome = (await self.reconcile(db, job_id)).outcome.value
            counts[outcome] = counts.get(outcome, 0) + 1

        logger.info(
            f"Reconcile sweep finished: {len(job_ids)} jobs",
            extra={"event": "reconcile_sweep", "jobs": len(job_ids), "outcomes": counts},
        )
        return counts
