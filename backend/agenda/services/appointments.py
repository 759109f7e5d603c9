"""Entry points called when an appointment is created, moved or cancelled."""

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select, update

from agenda.exceptions import ConcurrentUpdateError, PermanentDataError
from agenda.models.appointment import Appointment
from agenda.models.enums import AppointmentStatus, RecurrenceUnit
from agenda.services.chains import cancel_chain, start_chain
from agenda.services.context import SchedulerContext
from agenda.services.reminders import cancel_reminder, schedule_reminder

logger = structlog.get_logger()


async def _load(ctx: SchedulerContext, appointment_id: uuid.UUID) -> Appointment:
    async with ctx.session_factory() as db:
        appointment = await db.get(Appointment, appointment_id)
    if appointment is None:
        raise PermanentDataError(f"Appointment {appointment_id} not found")
    return appointment


async def on_appointment_created(
    ctx: SchedulerContext,
    appointment_id: uuid.UUID,
    recurrence_unit: RecurrenceUnit | None = None,
    repeat_total: int | None = None,
) -> Appointment:
    """Schedule the reminder and, for recurring appointments, start the chain."""
    appointment = await _load(ctx, appointment_id)
    await schedule_reminder(ctx, appointment)
    if recurrence_unit is not None and repeat_total and repeat_total > 1:
        await start_chain(ctx, appointment.id, recurrence_unit, repeat_total)
    return await _load(ctx, appointment_id)


async def reschedule_appointment(
    ctx: SchedulerContext,
    appointment_id: uuid.UUID,
    new_start: datetime,
    expected_version: int,
) -> Appointment:
    """Move an appointment and replace its reminder.

    Raises ``ConcurrentUpdateError`` when the appointment changed since the
    caller read ``expected_version``.
    """
    if new_start.tzinfo is None:
        raise ValueError("new_start must be timezone-aware")

    async with ctx.session_factory() as db:
        result = await db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.version == expected_version,
                Appointment.status != AppointmentStatus.CANCELLED.value,
            )
            .values(start_at=new_start, version=Appointment.version + 1)
            .returning(Appointment.reminder_job_id)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await db.rollback()
            exists = await db.execute(select(Appointment.id).where(Appointment.id == appointment_id))
            if exists.scalar_one_or_none() is None:
                raise PermanentDataError(f"Appointment {appointment_id} not found")
            raise ConcurrentUpdateError(
                f"Appointment {appointment_id} changed since version {expected_version}"
            )
        await db.commit()

    old_job_id = row[0]
    await cancel_reminder(ctx, old_job_id)

    appointment = await _load(ctx, appointment_id)
    new_job_id = await schedule_reminder(ctx, appointment)
    if new_job_id is None and appointment.reminder_job_id is not None:
        # No reminder for the new start; drop the pointer to the cancelled one.
        async with ctx.session_factory() as db:
            await db.execute(
                update(Appointment)
                .where(
                    Appointment.id == appointment_id,
                    Appointment.reminder_job_id == appointment.reminder_job_id,
                )
                .values(reminder_job_id=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        appointment.reminder_job_id = None
    logger.info(
        "appointment_rescheduled",
        appointment_id=str(appointment_id),
        start_at=new_start.isoformat(),
        previous_reminder_job_id=str(old_job_id) if old_job_id else None,
        reminder_job_id=str(appointment.reminder_job_id) if appointment.reminder_job_id else None,
    )
    return appointment


async def cancel_appointment(ctx: SchedulerContext, appointment_id: uuid.UUID) -> bool:
    """Cancel an appointment, its reminder and, for a chain origin, the chain."""
    async with ctx.session_factory() as db:
        result = await db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.status != AppointmentStatus.CANCELLED.value,
            )
            .values(
                status=AppointmentStatus.CANCELLED.value,
                version=Appointment.version + 1,
            )
            .returning(
                Appointment.reminder_job_id,
                Appointment.chain_id,
                Appointment.chain_position,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await db.rollback()
            exists = await db.execute(select(Appointment.id).where(Appointment.id == appointment_id))
            if exists.scalar_one_or_none() is None:
                raise PermanentDataError(f"Appointment {appointment_id} not found")
            logger.info("appointment_cancel_noop", appointment_id=str(appointment_id))
            return False
        await db.commit()

    reminder_job_id, chain_id, chain_position = row
    await cancel_reminder(ctx, reminder_job_id)
    if chain_id is not None and chain_position == 1:
        await cancel_chain(ctx, chain_id)

    logger.info("appointment_cancelled", appointment_id=str(appointment_id))
    return True
