"""Registration retry and backfill tests.

Tests cover:
- Single job retry (by UUID or external id, with and without force)
- Batch retry isolating per-job failures
- Dry run matching the real batch's selection without side effects
- Registration status reporting
"""

import pytest

from ipforge.core.rate_limit import IntervalRateLimiter
from ipforge.services.exceptions import TrainingJobNotFoundError
from ipforge.services.registration.backfill import RegistrationBackfillService
from ipforge.services.registration.engine import RegistrationEngine, RegistrationOutcomeKind


def ip(n: int) -> str:
    return "0x" + str(n).zfill(40)


class CountingRateLimiter(IntervalRateLimiter):
    def __init__(self):
        super().__init__(0)
        self.waits = 0

    async def wait(self) -> float:
        self.waits += 1
        return await super().wait()


@pytest.fixture
def engine(uow_factory, fake_client):
    return RegistrationEngine(uow_factory=uow_factory, client=fake_client)


@pytest.fixture
def limiter():
    return CountingRateLimiter()


@pytest.fixture
def backfill(uow_factory, engine, limiter):
    return RegistrationBackfillService(uow_factory=uow_factory, engine=engine, rate_limiter=limiter)


@pytest.mark.asyncio
async def test_retry_one_registered_job_is_noop(backfill, fake_client, seed):
    job = await seed.job(external_id="r8-done", ip_id=ip(500), parent_ip_ids=[ip(1)])

    outcome = await backfill.retry_one("r8-done")

    assert outcome.kind == RegistrationOutcomeKind.ALREADY_REGISTERED
    assert outcome.ip_id == ip(500)
    assert fake_client.calls == []
    assert (await seed.get(job.id)).ip_id == ip(500)


@pytest.mark.asyncio
async def test_retry_one_force(backfill, fake_client, seed):
    job = await seed.job(ip_id=ip(500), parent_ip_ids=[ip(1)])

    outcome = await backfill.retry_one(str(job.id), force=True)

    assert outcome.kind == RegistrationOutcomeKind.REGISTERED
    assert len(fake_client.calls) == 1


@pytest.mark.asyncio
async def test_retry_one_unknown_job(backfill):
    with pytest.raises(TrainingJobNotFoundError):
        await backfill.retry_one("r8-missing")


@pytest.mark.asyncio
async def test_retry_batch_newest_first(backfill, fake_client, limiter, seed):
    newest = await seed.job(parent_ip_ids=[ip(1)])
    middle = await seed.job(completed_days_ago=1, parent_ip_ids=[ip(2)])
    await seed.job(completed_days_ago=3, parent_ip_ids=[ip(3)])

    report = await backfill.retry_batch(limit=2)

    assert report.processed == 2
    assert report.registered == 2
    assert [result.job_id for result in report.results] == [newest.id, middle.id]
    assert [call["parent_ip_ids"] for call in fake_client.calls] == [[ip(1)], [ip(2)]]
    assert limiter.waits == 2


@pytest.mark.asyncio
async def test_retry_batch_continues_after_failures(backfill, fake_client, seed):
    """Missing parents and crashing jobs do not stop the rest of the batch."""
    no_parents = await seed.job()
    ok = await seed.job(completed_days_ago=1, parent_ip_ids=[ip(1)])

    report = await backfill.retry_batch(limit=10)

    assert report.processed == 2
    assert report.registered == 1
    assert report.failed == 1
    by_job = {result.job_id: result for result in report.results}
    assert by_job[no_parents.id].outcome == RegistrationOutcomeKind.NO_PARENT_IPS
    assert by_job[ok.id].success
    assert (await seed.get(no_parents.id)).registration_failed is True


@pytest.mark.asyncio
async def test_retry_batch_isolates_engine_exceptions(uow_factory, fake_client, seed):
    first = await seed.job(parent_ip_ids=[ip(1)])
    second = await seed.job(completed_days_ago=1, parent_ip_ids=[ip(2)])

    class ExplodingEngine(RegistrationEngine):
        async def register_job_as_derivative(self, job_ref, force=False):
            if job_ref == first.id:
                raise RuntimeError("database hiccup")
            return await super().register_job_as_derivative(job_ref, force=force)

    engine = ExplodingEngine(uow_factory=uow_factory, client=fake_client)
    backfill = RegistrationBackfillService(uow_factory=uow_factory, engine=engine)

    report = await backfill.retry_batch(limit=10)

    assert report.processed == 2
    assert report.failed == 1
    assert report.registered == 1
    assert report.results[0].error == "database hiccup"
    assert report.results[0].outcome is None
    assert (await seed.get(second.id)).ip_id is not None


@pytest.mark.asyncio
async def test_retry_batch_respects_age_window(backfill, seed):
    await seed.job(completed_days_ago=10, parent_ip_ids=[ip(1)])

    assert (await backfill.retry_batch(limit=10)).processed == 0
    assert (await backfill.retry_batch(limit=10, max_age_days=30)).processed == 1


@pytest.mark.asyncio
async def test_dry_run_matches_real_run_without_side_effects(backfill, fake_client, seed):
    images_job = await seed.job(images=[(ip(1), 0), (ip(2), 1)])
    assets_job = await seed.job(
        completed_days_ago=1, parent_ip_ids=[ip(n) for n in range(100, 118)]
    )
    bare_job = await seed.job(completed_days_ago=2)

    dry = await backfill.dry_run_batch(limit=10)

    assert [c.job_id for c in dry.candidates] == [images_job.id, assets_job.id, bare_job.id]
    assert dry.would_attempt == 2
    assert dry.no_parent_ips == 1
    assets = dry.candidates[1]
    assert assets.flow.value == "assets"
    assert assets.parent_ips_total == 18
    assert assets.parent_ips_to_submit == 16
    assert fake_client.calls == []
    for job in (images_job, assets_job, bare_job):
        stored = await seed.get(job.id)
        assert stored.ip_id is None
        assert stored.registration_failed is False

    report = await backfill.retry_batch(limit=10)
    assert [r.job_id for r in report.results] == [c.job_id for c in dry.candidates]


@pytest.mark.asyncio
async def test_dry_run_force_flags_registered_jobs(backfill, seed):
    await seed.job(ip_id=ip(500), parent_ip_ids=[ip(1)])

    plain = await backfill.dry_run_batch(limit=10)
    forced = await backfill.dry_run_batch(limit=10, force=True)

    assert plain.candidates == []
    assert forced.candidates[0].already_registered is True
    assert forced.candidates[0].would_attempt is True


@pytest.mark.asyncio
async def test_status_report(backfill, seed):
    await seed.job(ip_id=ip(500))
    await seed.job(parent_ip_ids=[ip(1)])

    report = await backfill.status()

    assert report.total == 2
    assert report.registered == 1
    assert report.unregistered == 1
    assert report.unregistered_with_parent_ids == 1
    assert report.registration_rate == 50.0
    assert report.max_age_days is None
