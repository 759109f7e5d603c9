"""Repetition link handler.

Each job produces the appointment at one chain position. The instance, its
funding records, the warning and the chain progress are written in a single
transaction; notifications and the successor job only follow once that
transaction has committed.
"""

import uuid
from dataclasses import dataclass, field

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agenda.exceptions import PermanentDataError, TransientIOError
from agenda.models.appointment import Appointment
from agenda.models.chain import RepetitionChain
from agenda.models.enums import (
    AppointmentStatus,
    ChainStatus,
    FundingMethod,
    RecurrenceUnit,
    WarningKind,
)
from agenda.models.job import Job
from agenda.models.owner import Owner
from agenda.models.package_order import PackageOrder, SessionConsumption
from agenda.models.pending_order import PendingOrder
from agenda.models.warning import RepetitionWarning
from agenda.schemas.job import RepetitionLinkPayload
from agenda.schemas.warning import WarningEntry
from agenda.services.chains import schedule_successor
from agenda.services.context import SchedulerContext
from agenda.services.ledger import ConsumeResult, try_consume_session
from agenda.services.notifications import Recipient, send_each
from agenda.services.reminders import schedule_reminder
from agenda.services.templates import (
    InstanceCreatedContext,
    OwnerSummaryContext,
    render_instance_created,
    render_owner_summary,
)
from agenda.services.warnings import record_warning
from agenda.utils.recurrence import link_run_at

logger = structlog.get_logger()


@dataclass
class LinkOutcome:
    instance_id: uuid.UUID | None = None
    created: bool = False
    warnings: list[WarningEntry] = field(default_factory=list)
    successor_job_id: uuid.UUID | None = None


async def _find_instance(db: AsyncSession, chain_id: uuid.UUID, position: int) -> Appointment | None:
    result = await db.execute(
        select(Appointment).where(
            Appointment.chain_id == chain_id,
            Appointment.chain_position == position,
        )
    )
    return result.scalar_one_or_none()


async def _apply_funding(
    db: AsyncSession, origin: Appointment, instance: Appointment
) -> tuple[list[dict], list[WarningEntry], dict[str, str]]:
    """Fund every participant of ``instance`` the way the origin was funded.

    Returns the instance's funding entries, the warning entries and the
    package names per participant id.
    """
    funding: list[dict] = []
    entries: list[WarningEntry] = []
    package_names: dict[str, str] = {}

    for source in origin.funding or []:
        participant_id = uuid.UUID(str(source["participant_id"]))
        method = FundingMethod(source["method"])
        entry = {
            "participant_id": str(participant_id),
            "method": method.value,
            "package_order_id": source.get("package_order_id"),
            "payment_method": source.get("payment_method"),
            "pending_order_id": None,
            "consumption_id": None,
        }

        if method == FundingMethod.PACKAGE:
            if not source.get("package_order_id"):
                raise PermanentDataError(
                    f"Package funding for participant {participant_id} has no package order"
                )
            order_id = uuid.UUID(str(source["package_order_id"]))
            outcome = await try_consume_session(db, order_id)
            if outcome == ConsumeResult.NOT_FOUND:
                raise PermanentDataError(f"Package order {order_id} not found")
            order = await db.get(PackageOrder, order_id, populate_existing=True)
            package_names[str(participant_id)] = order.package_name
            if outcome == ConsumeResult.CONSUMED:
                consumption = SessionConsumption(
                    id=uuid.uuid4(),
                    package_order_id=order_id,
                    appointment_id=instance.id,
                    participant_id=participant_id,
                )
                db.add(consumption)
                entry["consumption_id"] = str(consumption.id)
            else:
                entries.append(
                    WarningEntry(
                        participant_id=participant_id,
                        kind=WarningKind.INSUFFICIENT_SESSIONS,
                        message=f"Used all sessions ({order.used_sessions}/{order.total_sessions})",
                    )
                )
        else:
            if origin.price is not None:
                pending = PendingOrder(
                    id=uuid.uuid4(),
                    appointment_id=instance.id,
                    participant_id=participant_id,
                    owner_id=origin.owner_id,
                    amount=origin.price,
                    payment_method=source.get("payment_method"),
                )
                db.add(pending)
                entry["pending_order_id"] = str(pending.id)
            entries.append(
                WarningEntry(
                    participant_id=participant_id,
                    kind=WarningKind.NO_PACKAGE,
                    message="No package assigned, payment pending",
                )
            )
        funding.append(entry)

    return funding, entries, package_names


async def _create_instance(
    ctx: SchedulerContext,
    db: AsyncSession,
    chain: RepetitionChain,
    origin: Appointment,
    payload: RepetitionLinkPayload,
) -> tuple[Appointment, list[WarningEntry], dict[str, str]] | None:
    position = payload.chain_position
    # Claims the position on the chain row first: a concurrent cancel or an
    # out-of-order link leaves this UPDATE with no row.
    progressed = await db.execute(
        update(RepetitionChain)
        .where(
            RepetitionChain.id == chain.id,
            RepetitionChain.status == ChainStatus.ACTIVE.value,
            RepetitionChain.last_position == position - 1,
        )
        .values(
            last_position=position,
            status=(ChainStatus.COMPLETED if position == chain.total else ChainStatus.ACTIVE).value,
            next_job_id=None,
        )
        .execution_options(synchronize_session=False)
    )
    if progressed.rowcount != 1:
        await db.rollback()
        current = (
            await db.execute(
                select(RepetitionChain.status, RepetitionChain.last_position).where(
                    RepetitionChain.id == chain.id
                )
            )
        ).first()
        if current is not None and current.status == ChainStatus.CANCELLED:
            return None
        raise PermanentDataError(
            f"Chain {chain.id} cannot produce position {position} "
            f"(last_position={current.last_position if current else None})"
        )

    start_at = link_run_at(
        chain.anchor_at,
        RecurrenceUnit(chain.recurrence_unit),
        position,
        ctx.settings.SCHEDULE_TIMEZONE,
    )
    status = AppointmentStatus(origin.status)
    if status == AppointmentStatus.COMPLETED:
        status = AppointmentStatus.APPROVED

    instance = Appointment(
        id=uuid.uuid4(),
        owner_id=origin.owner_id,
        title=origin.title,
        service_name=origin.service_name,
        participants=list(origin.participants or []),
        funding=[],
        start_at=start_at,
        duration_minutes=origin.duration_minutes,
        location=origin.location,
        video_link=origin.video_link,
        price=origin.price,
        notes=origin.notes,
        status=status.value,
        chain_id=chain.id,
        chain_position=position,
        chain_total=chain.total,
        completed_links=0,
        origin_appointment_id=origin.id,
        version=1,
    )
    db.add(instance)
    await db.flush()

    funding, entries, package_names = await _apply_funding(db, origin, instance)
    instance.funding = funding
    await record_warning(db, origin.owner_id, instance.id, entries)

    await db.execute(
        update(Appointment)
        .where(Appointment.id == origin.id)
        .values(completed_links=Appointment.completed_links + 1)
        .execution_options(synchronize_session=False)
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        # Another holder of this link wrote the same position; the retry finds it.
        raise TransientIOError(f"Concurrent write for chain {chain.id} position {position}") from exc
    return instance, entries, package_names


async def _load_existing_warnings(db: AsyncSession, instance_id: uuid.UUID) -> list[WarningEntry]:
    result = await db.execute(
        select(RepetitionWarning.entries).where(RepetitionWarning.appointment_id == instance_id)
    )
    return [WarningEntry.model_validate(e) for entries in result.scalars().all() for e in entries]


async def _package_names(db: AsyncSession, instance: Appointment) -> dict[str, str]:
    names: dict[str, str] = {}
    for entry in instance.funding or []:
        if entry.get("method") == FundingMethod.PACKAGE and entry.get("package_order_id"):
            order = await db.get(PackageOrder, uuid.UUID(str(entry["package_order_id"])))
            if order:
                names[str(entry["participant_id"])] = order.package_name
    return names


async def _notify(
    ctx: SchedulerContext,
    owner: Owner | None,
    instance: Appointment,
    entries: list[WarningEntry],
    package_names: dict[str, str],
) -> None:
    tz = ctx.settings.SCHEDULE_TIMEZONE
    participants = instance.participants or []
    names_by_id = {str(p.get("id")): p.get("name") or "" for p in participants}

    deliveries = []
    for participant in participants:
        name = participant.get("name") or ""
        deliveries.append(
            (
                Recipient(name=name, email=participant.get("email"), phone=participant.get("phone")),
                render_instance_created(
                    InstanceCreatedContext(
                        recipient_name=name,
                        owner_name=owner.name if owner else "",
                        title=instance.title,
                        start_at=instance.start_at,
                        tz=tz,
                        duration_minutes=instance.duration_minutes,
                        location=instance.location,
                        video_link=instance.video_link,
                        package_name=package_names.get(str(participant.get("id"))),
                    )
                ),
            )
        )
    participant_results = await send_each(ctx.gateway, deliveries, template="instance_created")

    owner_results = []
    if owner is not None:
        summary = render_owner_summary(
            OwnerSummaryContext(
                recipient_name=owner.name,
                title=instance.title,
                start_at=instance.start_at,
                tz=tz,
                chain_position=instance.chain_position,
                chain_total=instance.chain_total,
                participant_names=", ".join(n for n in names_by_id.values() if n),
                location=instance.location,
                warnings=tuple(
                    {
                        "kind": e.kind.value,
                        "participant_name": names_by_id.get(str(e.participant_id), ""),
                        "message": e.message,
                    }
                    for e in entries
                ),
            )
        )
        owner_results = await send_each(
            ctx.gateway,
            [(Recipient(name=owner.name, email=owner.email, phone=owner.phone), summary)],
            template="instance_created_owner",
        )

    results = participant_results + owner_results
    logger.info(
        "repetition_notifications_sent",
        appointment_id=str(instance.id),
        sent=sum(1 for r in results if r.success),
        failed=sum(1 for r in results if not r.success),
    )


async def process_repetition_link(ctx: SchedulerContext, job: Job) -> LinkOutcome:
    payload = RepetitionLinkPayload.model_validate(job.payload)
    position = payload.chain_position
    log = logger.bind(job_id=str(job.id), chain_id=str(payload.chain_id), position=position)

    async with ctx.session_factory() as db:
        chain = await db.get(RepetitionChain, payload.chain_id)
        if chain is None:
            raise PermanentDataError(f"Chain {payload.chain_id} not found")
        origin = await db.get(Appointment, payload.origin_appointment_id)
        if origin is None:
            raise PermanentDataError(f"Appointment {payload.origin_appointment_id} not found")

        if chain.status == ChainStatus.CANCELLED or origin.is_cancelled:
            log.info("repetition_link_skipped", reason="cancelled")
            return LinkOutcome()
        if position > chain.total:
            raise PermanentDataError(f"Position {position} exceeds chain total {chain.total}")

        instance = await _find_instance(db, chain.id, position)
        if instance is not None:
            log.info("repetition_instance_exists", appointment_id=str(instance.id))
            entries = await _load_existing_warnings(db, instance.id)
            package_names = await _package_names(db, instance)
            outcome = LinkOutcome(instance_id=instance.id, created=False, warnings=entries)
        else:
            created = await _create_instance(ctx, db, chain, origin, payload)
            if created is None:
                log.info("repetition_link_skipped", reason="chain_cancelled")
                return LinkOutcome()
            instance, entries, package_names = created
            outcome = LinkOutcome(instance_id=instance.id, created=True, warnings=entries)
            log.info(
                "repetition_instance_created",
                appointment_id=str(instance.id),
                start_at=instance.start_at.isoformat(),
                warnings=len(entries),
            )

        owner = await db.get(Owner, origin.owner_id)

    await schedule_reminder(ctx, instance)
    await _notify(ctx, owner, instance, entries, package_names)

    if position < chain.total:
        outcome.successor_job_id = await schedule_successor(ctx, chain, position + 1)
    else:
        log.info("chain_completed")
    return outcome
