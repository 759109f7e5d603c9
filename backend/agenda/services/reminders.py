import uuid
from datetime import timedelta

import structlog
from sqlalchemy import update

from agenda.models.appointment import Appointment
from agenda.models.enums import JobType
from agenda.schemas.job import ReminderPayload
from agenda.services.context import SchedulerContext

logger = structlog.get_logger()

REMINDER_LEAD_TIME = timedelta(hours=2)


def reminder_dedup_key(appointment: Appointment) -> str:
    return f"reminder:{appointment.id}:{appointment.start_at.isoformat()}"


async def schedule_reminder(ctx: SchedulerContext, appointment: Appointment) -> uuid.UUID | None:
    """Schedule the reminder for ``appointment`` and store its job id.

    Fires ``REMINDER_LEAD_TIME`` before the start, or right away when that
    instant has already passed. Appointments that already started or were
    cancelled get no reminder.
    """
    now = ctx.now()
    if appointment.is_cancelled or appointment.start_at <= now:
        logger.info(
            "reminder_not_scheduled",
            appointment_id=str(appointment.id),
            status=appointment.status,
        )
        return None

    run_at = max(appointment.start_at - REMINDER_LEAD_TIME, now)
    payload = ReminderPayload(
        appointment_id=appointment.id,
        owner_id=appointment.owner_id,
        start_at=appointment.start_at,
    )
    job_id = await ctx.store.schedule(
        JobType.REMINDER,
        payload.model_dump(mode="json"),
        run_at,
        reminder_dedup_key(appointment),
        priority=ctx.settings.REMINDER_PRIORITY,
        appointment_id=appointment.id,
        max_attempts=ctx.settings.JOB_MAX_ATTEMPTS,
    )

    async with ctx.session_factory() as db:
        await db.execute(
            update(Appointment)
            .where(Appointment.id == appointment.id)
            .values(reminder_job_id=job_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    appointment.reminder_job_id = job_id

    logger.info(
        "reminder_scheduled",
        appointment_id=str(appointment.id),
        job_id=str(job_id),
        run_at=run_at.isoformat(),
    )
    return job_id


async def cancel_reminder(ctx: SchedulerContext, reminder_job_id: uuid.UUID | None) -> bool:
    """Cancel a reminder that has not fired yet.

    A reminder that is already running is left alone; its handler sees the
    appointment changed and skips the send.
    """
    if reminder_job_id is None:
        return False
    return await ctx.store.cancel(reminder_job_id)
