import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from agenda.exceptions import PermanentDataError
from agenda.jobs.repetition import process_repetition_link
from agenda.models import Appointment, Job, RepetitionChain
from agenda.models.enums import ChainStatus, JobStatus, JobType, RecurrenceUnit
from agenda.services.appointments import cancel_appointment, on_appointment_created
from agenda.services.chains import cancel_chain, start_chain
from agenda.services.dispatcher import Dispatcher
from tests.conftest import create_appointment, fetch, fetch_all, jobs_for, participant

ORIGIN_START = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
LEASE = timedelta(minutes=10)


async def _chain_instances(session_factory, chain_id) -> list[Appointment]:
    return await fetch_all(
        session_factory,
        select(Appointment).where(Appointment.chain_id == chain_id).order_by(Appointment.chain_position),
    )


async def _link_jobs(session_factory, chain_id, *statuses) -> list[Job]:
    jobs = await jobs_for(session_factory, chain_id=chain_id, job_type=JobType.REPETITION_LINK.value)
    if statuses:
        jobs = [j for j in jobs if j.status in statuses]
    return jobs


async def _claim_link(ctx, now) -> Job:
    [job] = await ctx.store.claim_due("w1", now=now, lease=LEASE, job_type=JobType.REPETITION_LINK)
    return job


@pytest.mark.asyncio
async def test_start_chain_tags_origin_and_schedules_second_link(ctx, db, owner, session_factory):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)

    chain = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 3)

    stored = await fetch(session_factory, Appointment, origin.id)
    assert stored.chain_id == chain.id
    assert stored.chain_position == 1
    assert stored.chain_total == 3
    assert stored.completed_links == 1
    [job] = await _link_jobs(session_factory, chain.id)
    assert job.chain_position == 2
    assert job.run_at == datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc)
    assert job.dedup_key == f"chain:{chain.id}:2"
    assert job.payload["chain_total"] == 3
    assert (await fetch(session_factory, RepetitionChain, chain.id)).next_job_id == job.id


@pytest.mark.asyncio
async def test_start_chain_is_idempotent(ctx, db, owner, session_factory):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)

    first = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 3)
    second = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 3)

    assert first.id == second.id
    assert len(await _link_jobs(session_factory, first.id)) == 1


@pytest.mark.asyncio
async def test_chain_of_one_schedules_nothing(ctx, db, owner, session_factory):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)

    chain = await start_chain(ctx, origin.id, RecurrenceUnit.MONTHLY, 1)

    assert chain.status == ChainStatus.COMPLETED
    assert await _link_jobs(session_factory, chain.id) == []


@pytest.mark.asyncio
async def test_weekly_chain_of_three(ctx, db, owner, session_factory, clock, gateway):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)
    await on_appointment_created(ctx, origin.id, RecurrenceUnit.WEEKLY, 3)
    [chain] = await fetch_all(session_factory, select(RepetitionChain))
    dispatcher = Dispatcher(ctx)

    clock.now = datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc)
    await dispatcher.tick()
    await dispatcher.drain()
    assert (await fetch(session_factory, Appointment, origin.id)).completed_links == 2

    clock.now = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
    await dispatcher.tick()
    await dispatcher.drain()

    instances = await _chain_instances(session_factory, chain.id)
    assert [a.chain_position for a in instances] == [1, 2, 3]
    assert [a.start_at for a in instances[1:]] == [
        datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
    ]
    for instance in instances[1:]:
        assert instance.origin_appointment_id == origin.id
        assert instance.title == origin.title
        assert instance.duration_minutes == origin.duration_minutes
        assert instance.participants == origin.participants

    assert (await fetch(session_factory, Appointment, origin.id)).completed_links == 3
    stored_chain = await fetch(session_factory, RepetitionChain, chain.id)
    assert stored_chain.status == ChainStatus.COMPLETED
    assert stored_chain.last_position == 3
    assert await _link_jobs(session_factory, chain.id, JobStatus.SCHEDULED, JobStatus.LOCKED) == []
    assert len(await _link_jobs(session_factory, chain.id, JobStatus.DONE)) == 2
    summaries = [m for m in gateway.sent_to(owner.email) if m.subject.startswith("Recurring session")]
    assert [m.subject.split(" created")[0] for m in summaries] == [
        "Recurring session 2/3",
        "Recurring session 3/3",
    ]


@pytest.mark.asyncio
async def test_cancel_while_successor_is_being_scheduled(ctx, db, owner, session_factory):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)
    schedule = ctx.store.schedule
    cancelled = {}

    async def cancel_then_schedule(job_type, payload, *args, **kwargs):
        # The chain is cancelled after the status check but before the insert.
        cancelled["result"] = await cancel_chain(ctx, uuid.UUID(payload["chain_id"]))
        return await schedule(job_type, payload, *args, **kwargs)

    ctx.store.schedule = cancel_then_schedule
    chain = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 3)

    assert cancelled["result"] is True
    assert await _link_jobs(session_factory, chain.id, JobStatus.SCHEDULED, JobStatus.LOCKED) == []
    [withdrawn] = await _link_jobs(session_factory, chain.id, JobStatus.CANCELLED)
    assert withdrawn.chain_position == 2
    stored_chain = await fetch(session_factory, RepetitionChain, chain.id)
    assert stored_chain.status == ChainStatus.CANCELLED
    assert stored_chain.next_job_id is None


@pytest.mark.asyncio
async def test_cancel_chain_between_links(ctx, db, owner, session_factory, clock):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)
    chain = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 5)
    dispatcher = Dispatcher(ctx)

    clock.now = datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc)
    await dispatcher.tick()
    await dispatcher.drain()
    assert await cancel_chain(ctx, chain.id) is True

    clock.now = datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc)
    assert await dispatcher.tick() == 0

    # Cancelled before position 3 ran: positions 1 and 2 exist.
    instances = await _chain_instances(session_factory, chain.id)
    assert [a.chain_position for a in instances] == [1, 2]
    [cancelled] = await _link_jobs(session_factory, chain.id, JobStatus.CANCELLED)
    assert cancelled.chain_position == 3
    assert await _link_jobs(session_factory, chain.id, JobStatus.SCHEDULED) == []
    assert (await fetch(session_factory, RepetitionChain, chain.id)).status == ChainStatus.CANCELLED
    assert await cancel_chain(ctx, chain.id) is False


@pytest.mark.asyncio
async def test_link_claimed_before_cancel_is_noop(ctx, db, owner, session_factory):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)
    chain = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 3)
    job = await _claim_link(ctx, datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc))

    await cancel_chain(ctx, chain.id)
    outcome = await process_repetition_link(ctx, job)

    assert outcome.instance_id is None
    assert [a.chain_position for a in await _chain_instances(session_factory, chain.id)] == [1]


@pytest.mark.asyncio
async def test_cancelling_origin_cancels_chain(ctx, db, owner, session_factory):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)
    chain = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 3)

    assert await cancel_appointment(ctx, origin.id) is True

    assert (await fetch(session_factory, RepetitionChain, chain.id)).status == ChainStatus.CANCELLED
    assert await _link_jobs(session_factory, chain.id, JobStatus.SCHEDULED) == []
    assert await cancel_appointment(ctx, origin.id) is False


@pytest.mark.asyncio
async def test_rerunning_completed_link_does_not_duplicate(ctx, db, owner, session_factory):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)
    chain = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 3)
    job = await _claim_link(ctx, datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc))

    first = await process_repetition_link(ctx, job)
    # Simulates a crash after the handler ran but before the job was completed.
    second = await process_repetition_link(ctx, job)

    assert first.created is True
    assert second.created is False
    assert second.instance_id == first.instance_id
    assert second.successor_job_id == first.successor_job_id
    instances = await _chain_instances(session_factory, chain.id)
    assert [a.chain_position for a in instances] == [1, 2]
    successors = [j for j in await _link_jobs(session_factory, chain.id) if j.chain_position == 3]
    assert len(successors) == 1
    assert (await fetch(session_factory, Appointment, origin.id)).completed_links == 2


@pytest.mark.asyncio
async def test_monthly_chain_clamps_to_month_end(ctx, db, owner, session_factory):
    origin = await create_appointment(db, owner, start_at=datetime(2024, 1, 31, 7, 0, tzinfo=timezone.utc))
    chain = await start_chain(ctx, origin.id, RecurrenceUnit.MONTHLY, 3)

    job = await _claim_link(ctx, datetime(2024, 3, 1, tzinfo=timezone.utc))
    outcome = await process_repetition_link(ctx, job)

    instance = await fetch(session_factory, Appointment, outcome.instance_id)
    assert instance.start_at == datetime(2024, 2, 29, 7, 0, tzinfo=timezone.utc)
    [successor] = await _link_jobs(session_factory, chain.id, JobStatus.SCHEDULED)
    assert successor.run_at == datetime(2024, 3, 31, 7, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_link_for_missing_chain_is_permanent(ctx, db, owner):
    origin = await create_appointment(db, owner, start_at=ORIGIN_START)
    chain = await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 2)
    job = await _claim_link(ctx, datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc))
    async with ctx.session_factory() as session:
        await session.delete(await session.get(RepetitionChain, chain.id))
        await session.commit()

    with pytest.raises(PermanentDataError):
        await process_repetition_link(ctx, job)


@pytest.mark.asyncio
async def test_instances_get_their_own_reminder(ctx, db, owner, session_factory, clock):
    clock.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    origin = await create_appointment(db, owner, start_at=ORIGIN_START, participants=[participant("Can")])
    await start_chain(ctx, origin.id, RecurrenceUnit.WEEKLY, 2)
    job = await _claim_link(ctx, datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc))

    outcome = await process_repetition_link(ctx, job)

    instance = await fetch(session_factory, Appointment, outcome.instance_id)
    assert instance.reminder_job_id is not None
    reminder = await fetch(session_factory, Job, instance.reminder_job_id)
    assert reminder.run_at == datetime(2024, 1, 8, 8, 0, tzinfo=timezone.utc)
