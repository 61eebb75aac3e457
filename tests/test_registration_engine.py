"""Derivative registration engine tests.

Tests cover:
- Parent resolution and the 16-parent ceiling
- Exclusive registration (claim, conditional write, orphan detection)
- Failure bookkeeping that never touches ip_id
- Forced re-registration
- Persistence failure after a successful external call
- Timed-out transactions looked up instead of resubmitted
"""

import asyncio
from uuid import uuid4

import pytest

from ipforge.models.training_job import ProvenanceFlow
from ipforge.services.exceptions import RegistrationPersistenceError, TrainingJobNotFoundError
from ipforge.services.registration.engine import (
    MAX_PARENT_IPS,
    NO_PARENTS_ERROR,
    RegistrationEngine,
    RegistrationOutcomeKind,
    apply_parent_ceiling,
)
from ipforge.services.story.client import RegistrationResult


def ip(n: int) -> str:
    return "0x" + str(n).zfill(40)


@pytest.fixture
def engine(uow_factory, fake_client):
    return RegistrationEngine(uow_factory=uow_factory, client=fake_client, license_terms_id="1")


def test_parent_ceiling_keeps_order():
    parents = [ip(n) for n in range(1, 19)]

    kept = apply_parent_ceiling(parents)

    assert len(kept) == MAX_PARENT_IPS
    assert kept == parents[:16]
    assert apply_parent_ceiling(parents[:3]) == parents[:3]


@pytest.mark.asyncio
async def test_register_from_training_images(engine, fake_client, seed):
    """Registered images are submitted in display order, stale job parents ignored."""
    job = await seed.job(
        parent_ip_ids=[ip(101), ip(102)],
        images=[(ip(3), 2), (ip(1), 0), (ip(2), 1)],
    )

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.kind == RegistrationOutcomeKind.REGISTERED
    assert outcome.success
    assert outcome.flow == ProvenanceFlow.TRAINING_IMAGES
    assert fake_client.calls[0]["parent_ip_ids"] == [ip(1), ip(2), ip(3)]
    assert fake_client.calls[0]["license_terms_id"] == "1"

    stored = await seed.get(job.id)
    assert stored.ip_id == outcome.ip_id
    assert stored.registration_tx_hash == outcome.tx_hash
    assert stored.parent_ip_ids == [ip(1), ip(2), ip(3)]
    assert stored.registered_at is not None
    assert stored.registration_claim is None


@pytest.mark.asyncio
async def test_register_from_job_parents_by_external_id(engine, fake_client, seed):
    job = await seed.job(external_id="r8-assets", parent_ip_ids=[ip(101), ip(102), ip(103)])

    outcome = await engine.register_job_as_derivative("r8-assets")

    assert outcome.kind == RegistrationOutcomeKind.REGISTERED
    assert outcome.flow == ProvenanceFlow.ASSETS
    assert outcome.external_id == "r8-assets"
    assert outcome.job_id == job.id
    assert fake_client.calls[0]["parent_ip_ids"] == [ip(101), ip(102), ip(103)]


@pytest.mark.asyncio
async def test_parent_ceiling_applied_and_stored(engine, fake_client, seed):
    parents = [ip(n) for n in range(1, 19)]
    job = await seed.job(parent_ip_ids=parents)

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.parent_ips_used == 16
    assert outcome.parent_ips_total == 18
    assert fake_client.calls[0]["parent_ip_ids"] == parents[:16]
    stored = await seed.get(job.id)
    assert stored.parent_ip_ids == parents[:16]


@pytest.mark.asyncio
async def test_metadata_describes_model(engine, fake_client, seed):
    await seed.job(external_id="r8-meta", trigger_word="zorp", parent_ip_ids=[ip(1), ip(2)])

    await engine.register_job_as_derivative("r8-meta")

    metadata = fake_client.calls[0]["metadata"]
    assert metadata.title == "AI Model: zorp"
    attributes = {attribute.key: attribute.value for attribute in metadata.attributes}
    assert attributes["Parent IP Count"] == "2"
    assert attributes["Replicate Job ID"] == "r8-meta"


@pytest.mark.asyncio
async def test_no_parents_records_failure_without_call(engine, fake_client, seed):
    job = await seed.job()

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.kind == RegistrationOutcomeKind.NO_PARENT_IPS
    assert outcome.retryable
    assert fake_client.calls == []
    stored = await seed.get(job.id)
    assert stored.ip_id is None
    assert stored.registration_failed is True
    assert stored.registration_error == NO_PARENTS_ERROR


@pytest.mark.asyncio
async def test_external_failure_recorded(engine, fake_client, seed):
    fake_client.fail_with = "Gas estimation failed: execution reverted"
    job = await seed.job(parent_ip_ids=[ip(1)])

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.kind == RegistrationOutcomeKind.EXTERNAL_CALL_FAILED
    assert outcome.error == "Gas estimation failed: execution reverted"
    stored = await seed.get(job.id)
    assert stored.ip_id is None
    assert stored.registration_failed is True
    assert stored.registration_error == "Gas estimation failed: execution reverted"
    assert stored.registration_claim is None


@pytest.mark.asyncio
async def test_client_exception_treated_as_failure(engine, fake_client, seed):
    fake_client.raise_exc = ConnectionError("rpc unreachable")
    job = await seed.job(parent_ip_ids=[ip(1)])

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.kind == RegistrationOutcomeKind.EXTERNAL_CALL_FAILED
    assert outcome.error == "rpc unreachable"
    assert (await seed.get(job.id)).registration_claim is None


@pytest.mark.asyncio
async def test_failure_then_retry_clears_failure(engine, fake_client, seed):
    fake_client.fail_with = "timeout"
    job = await seed.job(parent_ip_ids=[ip(1)])
    await engine.register_job_as_derivative(job.id)

    fake_client.fail_with = None
    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.success
    stored = await seed.get(job.id)
    assert stored.registration_failed is False
    assert stored.registration_error is None


@pytest.mark.asyncio
async def test_already_registered_skips_call(engine, fake_client, seed):
    job = await seed.job(parent_ip_ids=[ip(1)], ip_id=ip(500))

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.kind == RegistrationOutcomeKind.ALREADY_REGISTERED
    assert outcome.ip_id == ip(500)
    assert not outcome.retryable
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_force_replaces_existing_ip_id(engine, fake_client, seed):
    job = await seed.job(parent_ip_ids=[ip(1)], ip_id=ip(500))

    outcome = await engine.register_job_as_derivative(job.id, force=True)

    assert outcome.kind == RegistrationOutcomeKind.REGISTERED
    assert len(fake_client.calls) == 1
    stored = await seed.get(job.id)
    assert stored.ip_id == outcome.ip_id
    assert stored.ip_id != ip(500)


@pytest.mark.asyncio
async def test_unknown_job_raises(engine):
    with pytest.raises(TrainingJobNotFoundError):
        await engine.register_job_as_derivative(str(uuid4()))


@pytest.mark.asyncio
async def test_concurrent_calls_register_once(engine, fake_client, seed):
    """Two overlapping registrations make exactly one external call."""
    fake_client.delay = 0.2
    job = await seed.job(parent_ip_ids=[ip(1)])

    first, second = await asyncio.gather(
        engine.register_job_as_derivative(job.id),
        engine.register_job_as_derivative(job.id),
    )

    kinds = sorted([first.kind.value, second.kind.value])
    assert kinds == ["in_progress", "registered"]
    assert len(fake_client.calls) == 1
    stored = await seed.get(job.id)
    winner = first if first.success else second
    assert stored.ip_id == winner.ip_id


@pytest.mark.asyncio
async def test_lost_race_reports_orphan(engine, fake_client, seed, uow_factory):
    """A registration that lands after someone else stored an ip_id is not written."""
    job = await seed.job(parent_ip_ids=[ip(1)])
    original = fake_client.mint_and_register_derivative

    async def register_and_lose(**kwargs):
        result = await original(**kwargs)
        async with await uow_factory() as uow:
            stored = await uow.training_jobs.get_by_id(job.id)
            stored.ip_id = ip(777)
            await uow.training_jobs.save(stored)
        return result

    fake_client.mint_and_register_derivative = register_and_lose

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.kind == RegistrationOutcomeKind.ALREADY_REGISTERED
    assert outcome.ip_id is None
    assert "orphaned" in outcome.error
    assert (await seed.get(job.id)).ip_id == ip(777)


@pytest.mark.asyncio
async def test_persistence_failure_surfaces_ip_and_tx(fake_client, seed, uow_factory):
    job = await seed.job(parent_ip_ids=[ip(1)])
    calls = {"n": 0}

    async def flaky_uow_factory():
        calls["n"] += 1
        if calls["n"] == 2:
            raise ConnectionError("database went away")
        return await uow_factory()

    engine = RegistrationEngine(uow_factory=flaky_uow_factory, client=fake_client)

    with pytest.raises(RegistrationPersistenceError) as exc_info:
        await engine.register_job_as_derivative(job.id)

    assert exc_info.value.ip_id == ip(9001)
    assert exc_info.value.tx_hash == "0x" + format(1, "064x")
    assert exc_info.value.job_id == str(job.id)


PENDING_TX = "0x" + "77" * 32


@pytest.mark.asyncio
async def test_timeout_keeps_transaction_and_never_resubmits(engine, fake_client, seed):
    fake_client.timeout_tx_hash = PENDING_TX
    job = await seed.job(parent_ip_ids=[ip(1), ip(2)])

    first = await engine.register_job_as_derivative(job.id)

    assert first.kind == RegistrationOutcomeKind.EXTERNAL_CALL_FAILED
    assert first.tx_hash == PENDING_TX
    stored = await seed.get(job.id)
    assert stored.ip_id is None
    assert stored.registration_pending_tx_hash == PENDING_TX
    assert stored.registration_claim is None

    # Receipt not available yet
    second = await engine.register_job_as_derivative(job.id)

    assert second.kind == RegistrationOutcomeKind.IN_PROGRESS
    assert second.tx_hash == PENDING_TX
    assert len(fake_client.calls) == 1
    assert (await seed.get(job.id)).registration_claim is None

    fake_client.receipts[PENDING_TX] = RegistrationResult(
        success=True, ip_id=ip(4242), token_id=3, tx_hash=PENDING_TX
    )
    third = await engine.register_job_as_derivative(job.id)

    assert third.kind == RegistrationOutcomeKind.REGISTERED
    assert third.ip_id == ip(4242)
    assert len(fake_client.calls) == 1
    assert fake_client.checked == [PENDING_TX, PENDING_TX]
    stored = await seed.get(job.id)
    assert stored.ip_id == ip(4242)
    assert stored.registration_tx_hash == PENDING_TX
    assert stored.registration_pending_tx_hash is None
    assert stored.parent_ip_ids == [ip(1), ip(2)]


@pytest.mark.asyncio
async def test_reverted_pending_transaction_is_resubmitted(engine, fake_client, seed):
    fake_client.timeout_tx_hash = PENDING_TX
    job = await seed.job(parent_ip_ids=[ip(1)])
    await engine.register_job_as_derivative(job.id)
    fake_client.receipts[PENDING_TX] = RegistrationResult(
        success=False, tx_hash=PENDING_TX, error=f"Transaction reverted: {PENDING_TX}"
    )

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.kind == RegistrationOutcomeKind.REGISTERED
    assert len(fake_client.calls) == 2
    stored = await seed.get(job.id)
    assert stored.ip_id == outcome.ip_id
    assert stored.registration_pending_tx_hash is None


@pytest.mark.asyncio
async def test_unreadable_receipt_keeps_transaction(engine, fake_client, seed):
    fake_client.timeout_tx_hash = PENDING_TX
    job = await seed.job(parent_ip_ids=[ip(1)])
    await engine.register_job_as_derivative(job.id)
    fake_client.receipts[PENDING_TX] = RegistrationResult(
        success=False, pending=True, tx_hash=PENDING_TX, error="Receipt lookup failed: rpc down"
    )

    outcome = await engine.register_job_as_derivative(job.id)

    assert outcome.kind == RegistrationOutcomeKind.EXTERNAL_CALL_FAILED
    assert outcome.error == "Receipt lookup failed: rpc down"
    assert len(fake_client.calls) == 1
    stored = await seed.get(job.id)
    assert stored.registration_pending_tx_hash == PENDING_TX
    assert stored.registration_error == "Receipt lookup failed: rpc down"
