"""
Test configuration and fixtures.
Uses a throwaway SQLite database (aiosqlite) per test and an in-memory
compute provider, so the suite runs without external services.
"""
import os
import uuid as uuid_module

# Set test environment before any imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./studio_test.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["ENVIRONMENT"] = "test"
os.environ["REPLICATE_USERNAME"] = "studio"
os.environ["ADMIN_EMAILS"] = '["admin@example.com"]'

import pytest
from unittest.mock import patch, MagicMock
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.ai.base import ComputeProvider, JobSpec, ModelVersion, ProviderJob
from app.ai.normalize import normalize_job
from app.models.base import Base
from app.models.credit import LedgerEntryKind
from app.models.user import User
from app.services.credit_service import CreditService
from app.services.job_service import JobService
import app.models  # noqa: F401


class FakeProvider(ComputeProvider):
    """
    In-memory provider. Remote jobs are stored as raw payloads and run
    through the real normalizer on fetch.
    """

    name = "fake"

    def __init__(self):
        self.payloads: Dict[str, Dict[str, Any]] = {}
        self.versions: Dict[str, List[ModelVersion]] = {}
        self.submitted: List[JobSpec] = []
        self.ensured: List[str] = []
        self.calls: Dict[str, int] = {"submit": 0, "fetch": 0, "list_versions": 0, "ensure_model": 0}
        self.submit_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.versions_error: Optional[Exception] = None

    def is_configured(self) -> bool:
        return True

    async def submit(self, spec: JobSpec) -> str:
        self.calls["submit"] += 1
        if self.submit_error:
            raise self.submit_error
        self.submitted.append(spec)
        remote_id = f"remote-{len(self.submitted)}"
        self.payloads[remote_id] = {"id": remote_id, "status": "starting"}
        return remote_id

    async def fetch(self, remote_id: str, kind: str = "prediction") -> ProviderJob:
        self.calls["fetch"] += 1
        if self.fetch_error:
            raise self.fetch_error
        return normalize_job(self.payloads[remote_id])

    async def list_versions(self, model_ref: str) -> List[ModelVersion]:
        self.calls["list_versions"] += 1
        if self.versions_error:
            raise self.versions_error
        return list(self.versions.get(model_ref, []))

    async def ensure_model(self, model_ref: str, description: str = "") -> None:
        self.calls["ensure_model"] += 1
        self.ensured.append(model_ref)

    def set_state(self, remote_id: str, status: Optional[str], **fields):
        """Replace the raw payload the provider returns for a remote job."""
        self.payloads[remote_id] = {"id": remote_id, "status": status, **fields}


@pytest.fixture(scope="function")
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to a fresh SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'studio.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_maker: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_maker() as session:
        yield session


async def create_user(db: AsyncSession, credits: int = 0, email: str = "test@example.com") -> User:
    """Create a user, optionally seeded with purchased credits."""
    user = User(
        id=str(uuid_module.uuid4()),
        firebase_uid=f"firebase-test-uid-{uuid_module.uuid4().hex[:8]}",
        email=email,
    )
    db.add(user)
    await db.commit()

    if credits:
        await CreditService.grant(
            db,
            user.id,
            credits,
            LedgerEntryKind.PURCHASE,
            "Test credits",
            idempotency_key=f"test-seed:{user.id}",
        )
    else:
        await CreditService.ensure_account(db, user.id)
        await db.commit()
    return user


@pytest.fixture(scope="function")
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user with 10 credits."""
    return await create_user(db_session, credits=10)


@pytest.fixture(scope="function")
async def test_user_no_credits(db_session: AsyncSession) -> User:
    """Create a test user with no credits."""
    return await create_user(db_session, credits=0, email="nocredits@example.com")


@pytest.fixture(scope="function")
async def admin_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, credits=0, email="admin@example.com")


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def job_service(provider: FakeProvider) -> JobService:
    return JobService(provider)


def get_test_app(db_session: AsyncSession, user: User, job_service: JobService) -> FastAPI:
    """Create a test FastAPI app with overridden dependencies."""
    from app.main import app
    from app.database import get_db
    from app.auth.dependencies import get_current_user
    from app.api.jobs import get_job_service

    async def override_get_db():
        yield db_session

    async def override_get_current_user():
        return user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_job_service] = lambda: job_service

    return app


async def _client_for(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, test_user: User, job_service: JobService) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    async for ac in _client_for(get_test_app(db_session, test_user, job_service)):
        yield ac


@pytest.fixture(scope="function")
async def client_no_credits(
    db_session: AsyncSession, test_user_no_credits: User, job_service: JobService
) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for user with no credits."""
    async for ac in _client_for(get_test_app(db_session, test_user_no_credits, job_service)):
        yield ac


@pytest.fixture(scope="function")
async def admin_client(
    db_session: AsyncSession, admin_user: User, job_service: JobService
) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client authenticated as an admin."""
    async for ac in _client_for(get_test_app(db_session, admin_user, job_service)):
        yield ac


@pytest.fixture
def make_user():
    """Factory fixture: await make_user(db, credits=..., email=...)."""
    return create_user


@pytest.fixture(autouse=True)
def mock_celery_task():
    """Mock the post-submit reconcile task so no test reaches the broker."""
    with patch("app.tasks.reconcile_jobs.reconcile_job_task.apply_async") as mock:
        mock.return_value = MagicMock(id="mock-task-id")
        yield mock
