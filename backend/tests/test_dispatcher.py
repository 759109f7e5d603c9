import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from agenda.exceptions import PermanentDataError, TransientIOError
from agenda.models.enums import JobStatus, JobType
from agenda.schemas.job import JobFilter
from agenda.services.dispatcher import Dispatcher, retry_delay


async def _due_job(ctx, job_type=JobType.REMINDER, payload=None, **kwargs):
    return await ctx.store.schedule(job_type, payload or {}, ctx.now(), **kwargs)


async def _tick(dispatcher: Dispatcher) -> int:
    ran = await dispatcher.tick()
    await dispatcher.drain()
    return ran


def test_retry_delay_doubles_per_attempt():
    assert retry_delay(1, 30) == timedelta(seconds=30)
    assert retry_delay(2, 30) == timedelta(seconds=60)
    assert retry_delay(4, 30) == timedelta(seconds=240)


@pytest.mark.asyncio
async def test_tick_completes_successful_jobs(memory_ctx):
    job_id = await _due_job(memory_ctx)
    handler = AsyncMock()

    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=handler):
        ran = await _tick(Dispatcher(memory_ctx))

    assert ran == 1
    handler.assert_awaited_once()
    job = await memory_ctx.store.get(job_id)
    assert job.status == JobStatus.DONE


@pytest.mark.asyncio
async def test_transient_error_is_retried_with_backoff(memory_ctx, clock):
    job_id = await _due_job(memory_ctx)
    handler = AsyncMock(side_effect=TransientIOError("connection reset"))

    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=handler):
        await _tick(Dispatcher(memory_ctx))

    job = await memory_ctx.store.get(job_id)
    assert job.status == JobStatus.SCHEDULED
    assert job.attempts == 1
    assert job.run_at == clock.now + timedelta(seconds=30)
    assert "connection reset" in job.last_error


@pytest.mark.asyncio
async def test_unclassified_error_is_treated_as_transient(memory_ctx):
    job_id = await _due_job(memory_ctx)
    handler = AsyncMock(side_effect=RuntimeError("boom"))

    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=handler):
        await _tick(Dispatcher(memory_ctx))

    assert (await memory_ctx.store.get(job_id)).status == JobStatus.SCHEDULED


@pytest.mark.asyncio
async def test_permanent_error_fails_immediately(memory_ctx):
    job_id = await _due_job(memory_ctx)
    handler = AsyncMock(side_effect=PermanentDataError("appointment missing"))

    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=handler):
        await _tick(Dispatcher(memory_ctx))

    job = await memory_ctx.store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert "appointment missing" in job.last_error


@pytest.mark.asyncio
async def test_invalid_payload_fails_immediately(memory_ctx):
    job_id = await _due_job(memory_ctx, payload={"appointment_id": "not-a-uuid"})

    await _tick(Dispatcher(memory_ctx))

    job = await memory_ctx.store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert "ValidationError" in job.last_error


@pytest.mark.asyncio
async def test_retries_exhausted_marks_job_failed(memory_ctx, clock):
    job_id = await _due_job(memory_ctx, max_attempts=2)
    handler = AsyncMock(side_effect=TransientIOError("timeout"))
    dispatcher = Dispatcher(memory_ctx)

    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=handler):
        await _tick(dispatcher)
        clock.advance(seconds=30)
        await _tick(dispatcher)

    job = await memory_ctx.store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 2
    assert handler.await_count == 2


@pytest.mark.asyncio
async def test_tick_respects_per_type_concurrency(memory_ctx):
    memory_ctx.settings.REMINDER_CONCURRENCY = 1
    for _ in range(3):
        await _due_job(memory_ctx)
    link_id = await _due_job(memory_ctx, job_type=JobType.REPETITION_LINK)
    handler = AsyncMock()

    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=handler):
        ran = await _tick(Dispatcher(memory_ctx))

    assert ran == 2
    assert (await memory_ctx.store.get(link_id)).status == JobStatus.DONE
    remaining = await memory_ctx.store.list_pending()
    assert len(remaining) == 2


@pytest.mark.asyncio
async def test_global_cap_limits_claims(memory_ctx):
    memory_ctx.settings.MAX_CONCURRENCY = 1
    await _due_job(memory_ctx)
    await _due_job(memory_ctx, job_type=JobType.REPETITION_LINK)

    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=AsyncMock()):
        dispatcher = Dispatcher(memory_ctx)
        assert dispatcher.free_slots(JobType.REMINDER) == 1
        ran = await _tick(dispatcher)

    assert ran == 1


@pytest.mark.asyncio
async def test_lost_lease_does_not_overwrite_new_holder(memory_ctx, clock):
    job_id = await _due_job(memory_ctx)
    dispatcher = Dispatcher(memory_ctx, worker_id="slow-worker")

    async def slow_handler(ctx, job):
        # Another worker takes the job over once the lease has expired.
        later = clock.now + timedelta(seconds=ctx.settings.JOB_LEASE_SECONDS + 1)
        await ctx.store.claim_due("fast-worker", now=later, lease=timedelta(minutes=10))

    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=slow_handler):
        await _tick(dispatcher)

    job = await memory_ctx.store.get(job_id)
    assert job.status == JobStatus.LOCKED
    assert job.locked_by == "fast-worker"


@pytest.mark.asyncio
async def test_unknown_job_type_fails(memory_ctx):
    job_id = await _due_job(memory_ctx)

    with patch(
        "agenda.services.dispatcher.resolve_job_handler",
        side_effect=ValueError(f"Unknown job type: {uuid.uuid4()}"),
    ):
        await _tick(Dispatcher(memory_ctx))

    assert (await memory_ctx.store.get(job_id)).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_slow_job_type_does_not_starve_others(memory_ctx, clock):
    memory_ctx.settings.REPETITION_CONCURRENCY = 1
    first_link = await _due_job(memory_ctx, job_type=JobType.REPETITION_LINK)
    second_link = await _due_job(memory_ctx, job_type=JobType.REPETITION_LINK)
    reminder_id = await memory_ctx.store.schedule(
        JobType.REMINDER, {}, clock.now + timedelta(seconds=5)
    )
    release_link = asyncio.Event()
    reminder_ran = asyncio.Event()

    async def slow_link(ctx, job):
        await release_link.wait()

    async def reminder(ctx, job):
        reminder_ran.set()

    handlers = {JobType.REPETITION_LINK: slow_link, JobType.REMINDER: reminder}
    dispatcher = Dispatcher(memory_ctx)

    with patch(
        "agenda.services.dispatcher.resolve_job_handler",
        side_effect=lambda job_type: handlers[JobType(job_type)],
    ):
        assert await dispatcher.tick() == 1
        clock.advance(seconds=5)
        # The busy link still holds the only repetition slot.
        assert await dispatcher.tick() == 1
        await asyncio.wait_for(reminder_ran.wait(), timeout=1)
        assert dispatcher.free_slots(JobType.REPETITION_LINK) == 0
        waiting = await memory_ctx.store.list_pending(
            JobFilter(job_type=JobType.REPETITION_LINK, statuses=(JobStatus.SCHEDULED,))
        )
        assert len(waiting) == 1

        release_link.set()
        await dispatcher.drain()
        assert await _tick(dispatcher) == 1

    assert (await memory_ctx.store.get(first_link)).status == JobStatus.DONE
    assert (await memory_ctx.store.get(second_link)).status == JobStatus.DONE
    assert (await memory_ctx.store.get(reminder_id)).status == JobStatus.DONE


@pytest.mark.asyncio
async def test_shutdown_waits_for_running_handlers(memory_ctx):
    job_id = await _due_job(memory_ctx)

    async def handler(ctx, job):
        await asyncio.sleep(0.01)

    dispatcher = Dispatcher(memory_ctx)
    with patch("agenda.services.dispatcher.resolve_job_handler", return_value=handler):
        assert await dispatcher.tick() == 1
        await dispatcher.shutdown()

    assert (await memory_ctx.store.get(job_id)).status == JobStatus.DONE
