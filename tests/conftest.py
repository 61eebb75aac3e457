"""pytest fixtures for ipforge tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped SQLite database (one file per test) with tables created
- session / uow_factory: Database access for the test
- seed: Helper creating training jobs and images
- fake_client: Registration client double recording every call
- test_client: httpx AsyncClient wired to the FastAPI app
"""

import asyncio
import os

# Settings are read when ipforge.app is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./ipforge-test.db")
os.environ["APP_ENV"] = "test"

from datetime import timedelta  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import ipforge.models  # noqa: E402,F401
from ipforge.core.config import Settings  # noqa: E402
from ipforge.core.database import setup_db_session  # noqa: E402
from ipforge.core.timezone import utcnow  # noqa: E402
from ipforge.models.training_image import TrainingImage  # noqa: E402
from ipforge.models.training_job import TrainingJob, TrainingJobStatus  # noqa: E402
from ipforge.services.story.client import RegistrationResult  # noqa: E402
from ipforge.uow import create_uow_factory  # noqa: E402


def ip(n: int) -> str:
    """Deterministic IP id (digits only, so already checksummed)."""
    return "0x" + str(n).zfill(40)


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'ipforge.db'}",
        APP_ENV="test",
        REGISTRATION_MIN_INTERVAL_SECONDS=0,
    )  # type: ignore[call-arg]


@pytest_asyncio.fixture(scope="function")
async def session_factory(settings):
    """Provide a fresh file-backed SQLite database with all tables created."""
    factory = setup_db_session(settings.database_url)
    engine = factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


class Seeder:
    """Creates training jobs and images through the repositories."""

    def __init__(self, uow_factory):
        self.uow_factory = uow_factory
        self._counter = 0

    async def job(
        self,
        external_id: str | None = None,
        status: TrainingJobStatus = TrainingJobStatus.SUCCEEDED,
        trigger_word: str | None = "sks",
        output_model_url: str | None = "https://replicate.delivery/weights.tar",
        completed_at=None,
        completed_days_ago: float | None = None,
        parent_ip_ids: list[str] | None = None,
        ip_id: str | None = None,
        images: list[tuple[str | None, int]] | None = None,
    ) -> TrainingJob:
        """Create a job.

        images is a list of (story_ip_id or None, display_order); images with an
        IP id are stored as registered, the rest as pending.
        """
        self._counter += 1
        if completed_at is None and status == TrainingJobStatus.SUCCEEDED:
            completed_at = utcnow() - timedelta(
                days=completed_days_ago or 0, minutes=self._counter
            )
        async with await self.uow_factory() as uow:
            job = await uow.training_jobs.add(
                TrainingJob(
                    replicate_job_id=external_id or f"r8-job-{self._counter}",
                    status=status,
                    trigger_word=trigger_word,
                    output_model_url=output_model_url,
                    completed_at=completed_at,
                    parent_ip_ids=parent_ip_ids or [],
                    ip_id=ip_id,
                )
            )
            for story_ip_id, display_order in images or []:
                image = TrainingImage(training_job_id=job.id, display_order=display_order)
                if story_ip_id:
                    image.mark_registered(story_ip_id)
                await uow.training_images.add(image)
        return job

    async def image(
        self, job: TrainingJob, display_order: int = 0, story_ip_id: str | None = None
    ) -> TrainingImage:
        async with await self.uow_factory() as uow:
            image = TrainingImage(training_job_id=job.id, display_order=display_order)
            if story_ip_id:
                image.mark_registered(story_ip_id)
            return await uow.training_images.add(image)

    async def get(self, job_id) -> TrainingJob:
        async with await self.uow_factory() as uow:
            job = await uow.training_jobs.get_by_id(job_id)
            assert job is not None
            return job


@pytest.fixture
def seed(uow_factory) -> Seeder:
    return Seeder(uow_factory)


class FakeRegistrationClient:
    """Registration client double.

    Returns a fresh IP id per call unless configured to fail; an optional delay
    keeps calls in flight long enough for concurrent callers to overlap.
    timeout_tx_hash makes the next submission time out after broadcasting;
    receipts maps such hashes to what a later lookup reports.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.delay = 0.0
        self.fail_with: str | None = None
        self.raise_exc: Exception | None = None
        self.timeout_tx_hash: str | None = None
        self.receipts: dict[str, RegistrationResult] = {}
        self.checked: list[str] = []

    async def mint_and_register_derivative(
        self, parent_ip_ids, license_terms_id, metadata, recipient=None
    ) -> RegistrationResult:
        self.calls.append(
            {
                "parent_ip_ids": list(parent_ip_ids),
                "license_terms_id": license_terms_id,
                "metadata": metadata,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with is not None:
            return RegistrationResult(success=False, error=self.fail_with)
        if self.timeout_tx_hash is not None:
            tx_hash, self.timeout_tx_hash = self.timeout_tx_hash, None
            return RegistrationResult(
                success=False,
                pending=True,
                tx_hash=tx_hash,
                error=f"Transaction confirmation timeout: {tx_hash}",
            )
        n = len(self.calls)
        return RegistrationResult(
            success=True, ip_id=ip(9000 + n), token_id=n, tx_hash="0x" + format(n, "064x")
        )

    async def check_registration_transaction(self, tx_hash) -> RegistrationResult:
        self.checked.append(tx_hash)
        return self.receipts.get(tx_hash, RegistrationResult(success=False, pending=True))


@pytest.fixture
def fake_client() -> FakeRegistrationClient:
    return FakeRegistrationClient()


@pytest_asyncio.fixture
async def app(settings, session_factory, fake_client):
    """FastAPI app with the registration pipeline wired to the test database."""
    from ipforge.app import build_services, create_app

    application = create_app(settings)
    build_services(application, settings, session_factory, fake_client)
    yield application
    await application.state.reconciler.drain()


@pytest_asyncio.fixture
async def test_client(app):
    """Provide AsyncClient for testing API endpoints with database access."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

