"""
Tests for job submission and reconciliation.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.ai.base import ModelVersion
from app.models.credit import LedgerEntry, LedgerEntryKind
from app.models.job import FailureReason, GenerationJob, JobStatus, JobType
from app.models.trained_model import TrainedModel, TrainedModelStatus
from app.models.user import User
from app.services.credit_service import CreditService
from app.services.errors import (
    InsufficientCreditsError,
    JobNotFoundError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from app.services.job_service import JobService, ReconcileOutcome

TRAINER_VERSION = "26dce37af90b9d997eeb970d92e47de3064d46c300504ae376c75bef6a9022d2"


async def _ledger_count(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(select(LedgerEntry).where(LedgerEntry.user_id == user_id))
    return len(result.scalars().all())


class TestSubmitJob:
    """Tests for credit-gated submission."""

    @pytest.mark.asyncio
    async def test_submit_charges_and_submits(self, db_session: AsyncSession, test_user: User, job_service, provider):
        job = await job_service.submit_job(
            db_session, test_user.id, JobType.IMAGE_GENERATION, {"prompt": "a cat"}, declared_cost=5
        )

        assert job.status == JobStatus.SUBMITTED
        assert job.remote_job_id == "remote-1"
        assert job.cost_charged is True
        assert job.started_at is not None
        assert await CreditService.get_balance(db_session, test_user.id) == 5
        assert provider.submitted[0].input == {"prompt": "a cat"}

        entry = (await db_session.execute(
            select(LedgerEntry).where(LedgerEntry.reference_id == job.id)
        )).scalar_one()
        assert entry.kind == LedgerEntryKind.GENERATION_CHARGE
        assert entry.idempotency_key == f"charge:job:{job.id}"

    @pytest.mark.asyncio
    async def test_insufficient_credits_persists_nothing(
        self, db_session: AsyncSession, test_user_no_credits: User, job_service, provider
    ):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await job_service.submit_job(
                db_session, test_user_no_credits.id, JobType.TRAINING, {}, declared_cost=20
            )

        assert exc_info.value.required == 20
        assert exc_info.value.available == 0
        assert provider.calls["submit"] == 0
        jobs = (await db_session.execute(select(GenerationJob))).scalars().all()
        assert jobs == []
        models = (await db_session.execute(select(TrainedModel))).scalars().all()
        assert models == []

    @pytest.mark.asyncio
    async def test_provider_unavailable_refunds(self, db_session: AsyncSession, test_user: User, job_service, provider):
        """Test submission failure refunds the charge before the error propagates."""
        provider.submit_error = ProviderUnavailableError("timeout")

        with pytest.raises(ProviderUnavailableError):
            await job_service.submit_job(
                db_session, test_user.id, JobType.VIDEO_GENERATION, {"image": "https://x/y.png"}, declared_cost=3
            )

        assert await CreditService.get_balance(db_session, test_user.id) == 10
        job = (await db_session.execute(select(GenerationJob))).scalar_one()
        assert job.status == JobStatus.FAILED
        assert job.failure_reason == FailureReason.SUBMISSION_FAILED.value
        assert job.cost_refunded is True
        audit = await CreditService.audit_account(db_session, test_user.id)
        assert audit.consistent

    @pytest.mark.asyncio
    async def test_provider_rejection_refunds(self, db_session: AsyncSession, test_user: User, job_service, provider):
        provider.submit_error = ProviderRequestError("invalid input", status_code=422)

        with pytest.raises(ProviderRequestError):
            await job_service.submit_job(
                db_session, test_user.id, JobType.IMAGE_GENERATION, {}, declared_cost=1
            )

        assert await CreditService.get_balance(db_session, test_user.id) == 10

    @pytest.mark.asyncio
    async def test_unexpected_submit_error_refunds(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        """Test an adapter bug after the charge still refunds and fails the job."""
        user_id = test_user.id
        provider.submit_error = RuntimeError("adapter bug")

        with pytest.raises(ProviderUnavailableError, match="adapter bug"):
            await job_service.submit_job(
                db_session, user_id, JobType.IMAGE_GENERATION, {"prompt": "x"}, declared_cost=5
            )

        assert await CreditService.get_balance(db_session, user_id) == 10
        job = (await db_session.execute(select(GenerationJob))).scalar_one()
        assert job.status == JobStatus.FAILED
        assert job.failure_reason == FailureReason.SUBMISSION_FAILED.value
        assert job.cost_charged is True
        assert job.cost_refunded is True
        audit = await CreditService.audit_account(db_session, user_id)
        assert audit.consistent

    @pytest.mark.asyncio
    async def test_training_submission_creates_destination(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        job = await job_service.submit_job(
            db_session, test_user.id, JobType.TRAINING, {"input_images": "https://x/selfies.zip"},
            declared_cost=10, model_name="Me",
        )

        destination = f"studio/user-{test_user.id[:8]}-selfie-lora"
        assert job.destination_hint == destination
        assert provider.ensured == [destination]

        spec = provider.submitted[0]
        assert spec.kind == "training"
        assert spec.destination == destination
        assert spec.input["trigger_word"] == f"user{test_user.id[:8]}"
        assert spec.input["input_images"] == "https://x/selfies.zip"

        trained = await db_session.get(TrainedModel, job.trained_model_id)
        assert trained.status == TrainedModelStatus.TRAINING
        assert trained.name == "Me"
        assert await CreditService.get_balance(db_session, test_user.id) == 0

    @pytest.mark.asyncio
    async def test_generation_with_unready_model_is_rejected(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        user_id = test_user.id
        trained = TrainedModel(
            user_id=test_user.id, name="Me", trigger_word="userabc", destination_model="studio/x",
        )
        db_session.add(trained)
        await db_session.commit()

        with pytest.raises(ValueError, match="not ready"):
            await job_service.submit_job(
                db_session, test_user.id, JobType.IMAGE_GENERATION, {"prompt": "hi"},
                declared_cost=1, trained_model_id=trained.id,
            )

        assert await CreditService.get_balance(db_session, user_id) == 10
        assert provider.calls["submit"] == 0

    @pytest.mark.asyncio
    async def test_generation_with_ready_model_uses_weights(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        trained = TrainedModel(
            user_id=test_user.id, name="Me", trigger_word="userabc", destination_model="studio/x",
            status=TrainedModelStatus.READY, weights_url="https://x/w.tar",
        )
        db_session.add(trained)
        await db_session.commit()

        await job_service.submit_job(
            db_session, test_user.id, JobType.IMAGE_GENERATION, {"prompt": "portrait at the beach"},
            declared_cost=1, trained_model_id=trained.id,
        )

        spec = provider.submitted[0]
        assert spec.input["lora_weights"] == "https://x/w.tar"
        assert spec.input["prompt"] == "userabc portrait at the beach"


class TestReconcile:
    """Tests for the reconciliation loop."""

    async def _submit(self, db, user, job_service, cost=5, job_type=JobType.IMAGE_GENERATION):
        return await job_service.submit_job(db, user.id, job_type, {"prompt": "x"}, declared_cost=cost)

    @pytest.mark.asyncio
    async def test_end_to_end_generation(self, db_session: AsyncSession, test_user: User, job_service, provider):
        job = await self._submit(db_session, test_user, job_service)
        assert await CreditService.get_balance(db_session, test_user.id) == 5
        assert job.status == JobStatus.SUBMITTED

        provider.set_state(job.remote_job_id, "processing", logs="step 20/100")
        result = await job_service.reconcile(db_session, job.id)
        assert result.outcome == ReconcileOutcome.PROGRESSED
        assert result.job.status == JobStatus.PROCESSING
        assert result.job.progress == 20

        provider.set_state(job.remote_job_id, "succeeded", output={"weights": "https://files.example/w.tar"})
        result = await job_service.reconcile(db_session, job.id)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.job.status == JobStatus.COMPLETED
        assert result.job.progress == 100
        assert result.job.completed_at is not None
        assert result.job.result_artifacts["weights_url"] == "https://files.example/w.tar"

        fetches = provider.calls["fetch"]
        ledger_entries = await _ledger_count(db_session, test_user.id)
        retry = await job_service.reconcile(db_session, job.id)
        assert retry.outcome == ReconcileOutcome.CACHED
        assert provider.calls["fetch"] == fetches
        assert await _ledger_count(db_session, test_user.id) == ledger_entries
        assert retry.job.result_artifacts == result.job.result_artifacts
        assert retry.job.completed_at == result.job.completed_at

    @pytest.mark.asyncio
    async def test_progress_monotonic_across_polls(self, db_session: AsyncSession, test_user: User, job_service, provider):
        job = await self._submit(db_session, test_user, job_service)

        recorded = []
        for step in (10, 40, 90):
            provider.set_state(job.remote_job_id, "processing", logs=f"step {step}/100")
            result = await job_service.reconcile(db_session, job.id)
            recorded.append(result.job.progress)

        assert recorded == [10, 40, 90]

        # Logs vanish: the time fallback must not pull progress back down
        provider.set_state(job.remote_job_id, "processing")
        result = await job_service.reconcile(db_session, job.id)
        assert result.job.progress == 90
        assert result.outcome == ReconcileOutcome.UNCHANGED

    @pytest.mark.asyncio
    async def test_time_estimate_moves_forward(self, db_session: AsyncSession, test_user: User, job_service, provider):
        job = await self._submit(db_session, test_user, job_service)
        await db_session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job.id)
            .values(started_at=datetime.utcnow() - timedelta(hours=1))
        )
        await db_session.commit()

        provider.set_state(job.remote_job_id, "processing")
        result = await job_service.reconcile(db_session, job.id)

        assert result.job.progress == 95

    @pytest.mark.asyncio
    async def test_fetch_error_leaves_job_untouched(self, db_session: AsyncSession, test_user: User, job_service, provider):
        job = await self._submit(db_session, test_user, job_service)
        provider.fetch_error = ProviderUnavailableError("502 from provider")

        result = await job_service.reconcile(db_session, job.id)

        assert result.outcome == ReconcileOutcome.TRANSIENT_ERROR
        assert result.transient
        assert result.job.status == JobStatus.SUBMITTED
        assert result.job.progress == 0

    @pytest.mark.asyncio
    async def test_unknown_status_is_transient(self, db_session: AsyncSession, test_user: User, job_service, provider):
        job = await self._submit(db_session, test_user, job_service)
        provider.set_state(job.remote_job_id, None)

        result = await job_service.reconcile(db_session, job.id)

        assert result.outcome == ReconcileOutcome.TRANSIENT_ERROR
        assert result.job.status == JobStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_failure_refunds_once(self, db_session: AsyncSession, test_user: User, job_service, provider):
        job = await self._submit(db_session, test_user, job_service)
        provider.set_state(job.remote_job_id, "failed", error="NSFW content detected")

        result = await job_service.reconcile(db_session, job.id)
        again = await job_service.reconcile(db_session, job.id)

        assert result.outcome == ReconcileOutcome.FAILED
        assert result.job.failure_reason == FailureReason.PROVIDER_FAILED.value
        assert result.job.failure_message == "NSFW content detected"
        assert result.job.cost_refunded is True
        assert again.outcome == ReconcileOutcome.CACHED
        assert await CreditService.get_balance(db_session, test_user.id) == 10

        refunds = (await db_session.execute(
            select(LedgerEntry).where(LedgerEntry.kind == LedgerEntryKind.REFUND)
        )).scalars().all()
        assert len(refunds) == 1
        assert refunds[0].idempotency_key == f"refund:job:{job.id}"

    @pytest.mark.asyncio
    async def test_canceled_maps_to_failed(self, db_session: AsyncSession, test_user: User, job_service, provider):
        job = await self._submit(db_session, test_user, job_service)
        provider.set_state(job.remote_job_id, "canceled")

        result = await job_service.reconcile(db_session, job.id)

        assert result.job.status == JobStatus.FAILED
        assert result.job.failure_reason == FailureReason.PROVIDER_CANCELED.value

    @pytest.mark.asyncio
    async def test_unresolved_output_fails_without_refund(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        job = await self._submit(db_session, test_user, job_service, cost=10, job_type=JobType.TRAINING)
        provider.set_state(
            job.remote_job_id, "succeeded",
            output={"version": f"ostris/flux-dev-lora-trainer:{TRAINER_VERSION}"},
        )

        result = await job_service.reconcile(db_session, job.id)

        assert result.outcome == ReconcileOutcome.UNRESOLVED
        assert result.job.status == JobStatus.FAILED
        assert result.job.failure_reason == FailureReason.UNRESOLVED_OUTPUT.value
        assert result.job.result_artifacts is None
        assert await CreditService.get_balance(db_session, test_user.id) == 0

        trained = await db_session.get(TrainedModel, job.trained_model_id, populate_existing=True)
        assert trained.status == TrainedModelStatus.FAILED

    @pytest.mark.asyncio
    async def test_training_completion_marks_model_ready(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        job = await self._submit(db_session, test_user, job_service, cost=10, job_type=JobType.TRAINING)
        provider.versions[job.destination_hint] = [ModelVersion(id="v-dest")]
        provider.set_state(
            job.remote_job_id, "succeeded",
            output={"version": f"ostris/flux-dev-lora-trainer:{TRAINER_VERSION}"},
        )
        # Trainer echoed back, but the destination has its own version
        result = await job_service.reconcile(db_session, job.id)

        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.job.result_artifacts["version_id"] == "v-dest"
        assert result.job.result_artifacts["model_id"] == job.destination_hint

        trained = await db_session.get(TrainedModel, job.trained_model_id, populate_existing=True)
        assert trained.status == TrainedModelStatus.READY
        assert trained.version_id == "v-dest"
        assert trained.weights_url == "https://replicate.delivery/pbxt/v-dest/flux-lora.tar"

    @pytest.mark.asyncio
    async def test_version_listing_outage_is_transient(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        job = await self._submit(db_session, test_user, job_service, cost=10, job_type=JobType.TRAINING)
        provider.versions_error = ProviderUnavailableError("timeout")
        provider.set_state(job.remote_job_id, "succeeded", output={})

        result = await job_service.reconcile(db_session, job.id)

        assert result.outcome == ReconcileOutcome.TRANSIENT_ERROR
        assert result.job.status == JobStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_version_listing_outage_with_direct_weights_completes(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        job = await self._submit(db_session, test_user, job_service, cost=10, job_type=JobType.TRAINING)
        provider.versions_error = ProviderUnavailableError("timeout")
        provider.set_state(job.remote_job_id, "succeeded", output={"weights": "https://files.example/w.tar"})

        result = await job_service.reconcile(db_session, job.id)

        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.job.status == JobStatus.COMPLETED
        assert result.job.result_artifacts["weights_url"] == "https://files.example/w.tar"
        trained = await db_session.get(TrainedModel, job.trained_model_id, populate_existing=True)
        assert trained.status == TrainedModelStatus.READY
        assert trained.weights_url == "https://files.example/w.tar"

    @pytest.mark.asyncio
    async def test_concurrent_reconcile_single_transition(
        self, session_maker, make_user, provider
    ):
        """Racing reconcile passes converge; side effects happen once."""
        async with session_maker() as db:
            user = await make_user(db, credits=10)
            job = await JobService(provider).submit_job(
                db, user.id, JobType.IMAGE_GENERATION, {"prompt": "x"}, declared_cost=4
            )
        provider.set_state(job.remote_job_id, "failed", error="boom")

        async def poll():
            async with session_maker() as db:
                return await JobService(provider).reconcile(db, job.id)

        results = await asyncio.gather(*(poll() for _ in range(4)))

        outcomes = [r.outcome for r in results]
        assert outcomes.count(ReconcileOutcome.FAILED) == 1
        assert all(o in (ReconcileOutcome.FAILED, ReconcileOutcome.CACHED) for o in outcomes)

        async with session_maker() as db:
            assert await CreditService.get_balance(db, user.id) == 10
            audit = await CreditService.audit_account(db, user.id)
            assert audit.consistent
            assert audit.entry_count == 3  # seed, charge, one refund

    @pytest.mark.asyncio
    async def test_reconcile_unknown_job(self, db_session: AsyncSession, job_service):
        with pytest.raises(JobNotFoundError):
            await job_service.reconcile(db_session, "missing")


class TestJobQueries:
    """Tests for ownership checks, listing and the sweep."""

    @pytest.mark.asyncio
    async def test_get_job_status_checks_owner(
        self, db_session: AsyncSession, test_user: User, test_user_no_credits: User, job_service
    ):
        job = await job_service.submit_job(
            db_session, test_user.id, JobType.IMAGE_GENERATION, {}, declared_cost=1
        )

        with pytest.raises(JobNotFoundError):
            await job_service.get_job_status(db_session, job.id, test_user_no_credits.id)

    @pytest.mark.asyncio
    async def test_list_jobs(self, db_session: AsyncSession, test_user: User, job_service):
        for _ in range(3):
            await job_service.submit_job(
                db_session, test_user.id, JobType.IMAGE_GENERATION, {}, declared_cost=1
            )

        jobs = await JobService.list_jobs(db_session, test_user.id, limit=2)

        assert len(jobs) == 2

    @pytest.mark.asyncio
    async def test_sweep_reconciles_active_jobs(self, db_session: AsyncSession, test_user: User, job_service, provider):
        first = await job_service.submit_job(
            db_session, test_user.id, JobType.IMAGE_GENERATION, {}, declared_cost=1
        )
        second = await job_service.submit_job(
            db_session, test_user.id, JobType.IMAGE_GENERATION, {}, declared_cost=1
        )
        provider.set_state(first.remote_job_id, "succeeded", output="https://files.example/a.png")
        provider.set_state(second.remote_job_id, "failed", error="boom")

        counts = await job_service.sweep_active_jobs(db_session)
        assert counts == {"completed": 1, "failed": 1}

        counts = await job_service.sweep_active_jobs(db_session)
        assert counts == {}

        done = await job_service.get_job(db_session, first.id)
        assert done.result_artifacts == {"media_url": "https://files.example/a.png"}

    @pytest.mark.asyncio
    async def test_sweep_fails_abandoned_submissions(
        self, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        """Test charged jobs stuck in pending past the grace period are failed and refunded."""
        user_id = test_user.id
        stale = GenerationJob(
            user_id=user_id, job_type=JobType.IMAGE_GENERATION, status=JobStatus.PENDING,
            cost=4, cost_charged=True, created_at=datetime.utcnow() - timedelta(hours=1),
        )
        fresh = GenerationJob(
            user_id=user_id, job_type=JobType.IMAGE_GENERATION, status=JobStatus.PENDING,
            cost=2, cost_charged=True,
        )
        db_session.add_all([stale, fresh])
        await db_session.flush()
        for job in (stale, fresh):
            await CreditService.deduct(
                db_session, user_id, job.cost, LedgerEntryKind.GENERATION_CHARGE, "Image",
                reference_id=job.id, idempotency_key=f"charge:job:{job.id}", commit=False,
            )
        await db_session.commit()
        assert await CreditService.get_balance(db_session, user_id) == 4

        counts = await job_service.sweep_active_jobs(db_session)

        assert counts == {"submission_failed": 1}
        assert await CreditService.get_balance(db_session, user_id) == 8
        failed = await job_service.get_job(db_session, stale.id)
        assert failed.status == JobStatus.FAILED
        assert failed.failure_reason == FailureReason.SUBMISSION_FAILED.value
        assert failed.cost_refunded is True
        assert (await job_service.get_job(db_session, fresh.id)).status == JobStatus.PENDING
        assert provider.calls["submit"] == 0

        assert await job_service.sweep_active_jobs(db_session) == {}
        audit = await CreditService.audit_account(db_session, user_id)
        assert audit.consistent

    @pytest.mark.asyncio
    async def test_submission_abandoned_while_in_flight(
        self, session_maker, db_session: AsyncSession, test_user: User, job_service, provider
    ):
        """Test a late provider answer does not revive a job the sweep already refunded."""
        user_id = test_user.id
        original_submit = provider.submit

        async def submit_after_sweep(spec):
            async with session_maker() as other:
                later = datetime.utcnow() + timedelta(hours=1)
                assert await JobService(provider).fail_stale_submissions(other, now=later) == 1
            return await original_submit(spec)

        provider.submit = submit_after_sweep

        job = await job_service.submit_job(
            db_session, user_id, JobType.IMAGE_GENERATION, {"prompt": "x"}, declared_cost=3
        )

        assert job.status == JobStatus.FAILED
        assert job.remote_job_id is None
        assert job.cost_refunded is True
        assert await CreditService.get_balance(db_session, user_id) == 10
        assert await _ledger_count(db_session, user_id) == 3  # seed, charge, refund
