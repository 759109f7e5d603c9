"""Recurring appointment chains.

A chain is persisted in ``repetition_chains``; the job queue only ever holds
the next link to produce. Scheduling that link is a pure function of the
chain row and the position being produced, so it is safe to repeat.
"""

import uuid

import structlog
from sqlalchemy import select, update

from agenda.exceptions import PermanentDataError
from agenda.models.appointment import Appointment
from agenda.models.chain import RepetitionChain
from agenda.models.enums import ChainStatus, JobStatus, JobType, RecurrenceUnit
from agenda.schemas.job import JobFilter, RepetitionLinkPayload
from agenda.services.context import SchedulerContext
from agenda.utils.recurrence import link_run_at

logger = structlog.get_logger()


def chain_dedup_key(chain_id: uuid.UUID, position: int) -> str:
    return f"chain:{chain_id}:{position}"


async def start_chain(
    ctx: SchedulerContext,
    origin_id: uuid.UUID,
    unit: RecurrenceUnit,
    total: int,
) -> RepetitionChain:
    """Turn ``origin_id`` into position 1 of a chain of ``total`` appointments."""
    if total < 1:
        raise ValueError("total must be at least 1")
    unit = RecurrenceUnit(unit)

    async with ctx.session_factory() as db:
        origin = await db.get(Appointment, origin_id)
        if origin is None:
            raise PermanentDataError(f"Appointment {origin_id} not found")

        if origin.chain_id is not None:
            chain = await db.get(RepetitionChain, origin.chain_id)
            if chain is None:
                raise PermanentDataError(f"Chain {origin.chain_id} not found")
            logger.info("chain_already_started", chain_id=str(chain.id), origin_id=str(origin_id))
            return chain

        chain = RepetitionChain(
            id=uuid.uuid4(),
            origin_appointment_id=origin.id,
            owner_id=origin.owner_id,
            recurrence_unit=unit.value,
            anchor_at=origin.start_at,
            total=total,
            last_position=1,
            status=(ChainStatus.COMPLETED if total == 1 else ChainStatus.ACTIVE).value,
        )
        db.add(chain)
        origin.chain_id = chain.id
        origin.chain_position = 1
        origin.chain_total = total
        origin.completed_links = 1
        origin.version = origin.version + 1
        await db.commit()

    logger.info(
        "chain_started",
        chain_id=str(chain.id),
        origin_id=str(origin_id),
        unit=unit.value,
        total=total,
    )
    if total > 1:
        await schedule_successor(ctx, chain, 2)
    return chain


async def schedule_successor(
    ctx: SchedulerContext, chain: RepetitionChain, position: int
) -> uuid.UUID | None:
    """Schedule the link producing ``position`` unless the chain stopped."""
    if position > chain.total:
        return None

    async with ctx.session_factory() as db:
        status = (
            await db.execute(select(RepetitionChain.status).where(RepetitionChain.id == chain.id))
        ).scalar_one_or_none()
    if status != ChainStatus.ACTIVE:
        logger.info("chain_successor_skipped", chain_id=str(chain.id), position=position, status=status)
        return None

    unit = RecurrenceUnit(chain.recurrence_unit)
    run_at = link_run_at(chain.anchor_at, unit, position, ctx.settings.SCHEDULE_TIMEZONE)
    payload = RepetitionLinkPayload(
        chain_id=chain.id,
        origin_appointment_id=chain.origin_appointment_id,
        owner_id=chain.owner_id,
        chain_position=position,
        chain_total=chain.total,
        recurrence_unit=unit,
        run_at=run_at,
    )
    job_id = await ctx.store.schedule(
        JobType.REPETITION_LINK,
        payload.model_dump(mode="json"),
        run_at,
        chain_dedup_key(chain.id, position),
        priority=ctx.settings.REPETITION_PRIORITY,
        appointment_id=chain.origin_appointment_id,
        chain_id=chain.id,
        chain_position=position,
        max_attempts=ctx.settings.JOB_MAX_ATTEMPTS,
    )

    async with ctx.session_factory() as db:
        result = await db.execute(
            update(RepetitionChain)
            .where(
                RepetitionChain.id == chain.id,
                RepetitionChain.status == ChainStatus.ACTIVE.value,
            )
            .values(next_job_id=job_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    if result.rowcount != 1:
        # Cancelled after the status check; cancel_chain may have listed the
        # pending jobs before this one existed.
        await ctx.store.cancel(job_id)
        logger.info(
            "chain_successor_withdrawn",
            chain_id=str(chain.id),
            position=position,
            job_id=str(job_id),
        )
        return None
    chain.next_job_id = job_id

    logger.info(
        "chain_link_scheduled",
        chain_id=str(chain.id),
        position=position,
        job_id=str(job_id),
        run_at=run_at.isoformat(),
    )
    return job_id


async def cancel_chain(ctx: SchedulerContext, chain_id: uuid.UUID) -> bool:
    """Stop a chain; appointments it already produced are kept."""
    async with ctx.session_factory() as db:
        result = await db.execute(
            update(RepetitionChain)
            .where(RepetitionChain.id == chain_id, RepetitionChain.status == ChainStatus.ACTIVE.value)
            .values(status=ChainStatus.CANCELLED.value, next_job_id=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    if result.rowcount != 1:
        logger.info("chain_cancel_noop", chain_id=str(chain_id))
        return False

    pending = await ctx.store.list_pending(
        JobFilter(
            job_type=JobType.REPETITION_LINK,
            statuses=(JobStatus.SCHEDULED,),
            chain_id=chain_id,
        )
    )
    cancelled = 0
    for job in pending:
        if await ctx.store.cancel(job.id):
            cancelled += 1

    logger.info("chain_cancelled", chain_id=str(chain_id), jobs_cancelled=cancelled)
    return True
