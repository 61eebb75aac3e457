"""Registration CLI tests.

Commands run against the test database with the fake registration client,
so output and exit codes can be checked without a chain or Replicate.
"""

import pytest
from sqlalchemy.exc import OperationalError

from ipforge.cli import registrations as cli
from ipforge.models.training_job import TrainingJobStatus
from ipforge.services.exceptions import ReplicateNotFoundError


def ip(n: int) -> str:
    return "0x" + str(n).zfill(40)


async def run(argv, settings, session_factory, client):
    return await cli.run(cli.parse_args(argv, settings), settings, session_factory, client)


def test_parse_args_defaults(settings):
    args = cli.parse_args(["retry"], settings)

    assert args.limit == settings.backfill_default_limit
    assert args.max_age_days == settings.backfill_max_age_days
    assert args.force is False
    assert args.dry_run is False
    assert args.job_id is None


def test_parse_args_requires_command():
    with pytest.raises(SystemExit):
        cli.parse_args([])


@pytest.mark.asyncio
async def test_status(settings, session_factory, fake_client, seed, capsys):
    await seed.job(ip_id=ip(500))
    await seed.job(parent_ip_ids=[ip(1)])

    code = await run(["status"], settings, session_factory, fake_client)

    out = capsys.readouterr().out
    assert code == 0
    assert "Succeeded training jobs: 2" in out
    assert "Registered: 1" in out
    assert "Registration rate: 50.0%" in out


@pytest.mark.asyncio
async def test_retry_batch(settings, session_factory, fake_client, seed, capsys):
    await seed.job(parent_ip_ids=[ip(1)])
    await seed.job(completed_days_ago=1)

    code = await run(["retry", "--limit", "10"], settings, session_factory, fake_client)

    out = capsys.readouterr().out
    assert code == 0
    assert "Processed: 2" in out
    assert "Registered: 1" in out
    assert "Failed: 1" in out
    assert "No parent IP IDs found" in out
    assert len(fake_client.calls) == 1


@pytest.mark.asyncio
async def test_retry_single_job_force(settings, session_factory, fake_client, seed, capsys):
    job = await seed.job(external_id="r8-cli", ip_id=ip(500), parent_ip_ids=[ip(1)])

    code = await run(
        ["retry", "--job-id", "r8-cli", "--force"], settings, session_factory, fake_client
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "Outcome: registered" in out
    assert (await seed.get(job.id)).ip_id == ip(9001)


@pytest.mark.asyncio
async def test_retry_unknown_job_still_exits_zero(
    settings, session_factory, fake_client, capsys
):
    code = await run(["retry", "--job-id", "r8-missing"], settings, session_factory, fake_client)

    assert code == 0
    assert "Training job not found" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_dry_run_makes_no_calls(settings, session_factory, fake_client, seed, capsys):
    job = await seed.job(parent_ip_ids=[ip(1)])
    await seed.job(completed_days_ago=1)

    code = await run(["retry", "--dry-run"], settings, session_factory, None)

    out = capsys.readouterr().out
    assert code == 0
    assert "Would attempt: 1" in out
    assert "Without parent IP ids: 1" in out
    assert "[DRY RUN]" in out
    assert fake_client.calls == []
    assert (await seed.get(job.id)).registration_failed is False


@pytest.mark.asyncio
async def test_retry_without_story_is_configuration_error(settings, session_factory, capsys):
    code = await run(["retry"], settings, session_factory, None)

    assert code == 1
    assert "Story Protocol is not configured" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_sync_applies_fetched_state(
    settings, session_factory, fake_client, seed, monkeypatch, capsys
):
    job = await seed.job(
        external_id="r8-missed", status=TrainingJobStatus.PROCESSING, parent_ip_ids=[ip(1)]
    )

    async def fake_fetch(external_id, api_token):
        assert external_id == "r8-missed"
        return {"id": external_id, "status": "succeeded", "output": "https://x/w.tar"}

    monkeypatch.setattr(cli, "fetch_training_state", fake_fetch)

    code = await run(
        ["sync", "--job-id", str(job.id)], settings, session_factory, fake_client
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "Status: succeeded" in out
    assert "Registration scheduled: True" in out
    stored = await seed.get(job.id)
    assert stored.status == TrainingJobStatus.SUCCEEDED
    assert stored.ip_id == ip(9001)


@pytest.mark.asyncio
async def test_sync_fetch_failure_reported(
    settings, session_factory, fake_client, monkeypatch, capsys
):
    async def failing_fetch(external_id, api_token):
        raise ReplicateNotFoundError("Not found: 404")

    monkeypatch.setattr(cli, "fetch_training_state", failing_fetch)

    code = await run(["sync", "--job-id", "r8-gone"], settings, session_factory, fake_client)

    assert code == 0
    assert "could not fetch training r8-gone" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_database_unreachable_exits_one(settings, session_factory, fake_client, monkeypatch):
    async def broken_status(self, max_age_days=None):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(cli.RegistrationBackfillService, "status", broken_status)

    code = await run(["status"], settings, session_factory, fake_client)

    assert code == 1
