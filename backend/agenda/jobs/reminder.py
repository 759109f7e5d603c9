"""Reminder job handler."""

import structlog

from agenda.exceptions import PermanentDataError
from agenda.models.appointment import Appointment
from agenda.models.job import Job
from agenda.models.owner import Owner
from agenda.schemas.job import ReminderPayload
from agenda.services.context import SchedulerContext
from agenda.services.notifications import Recipient, SendResult, send_each
from agenda.services.templates import ReminderContext, render_reminder

logger = structlog.get_logger()


def _stale_reason(appointment: Appointment, payload: ReminderPayload) -> str | None:
    if appointment.is_cancelled:
        return "cancelled"
    # reminder_job_id is written after the job is already claimable, so only
    # the start time the job was built for decides staleness.
    if appointment.start_at != payload.start_at:
        return "start_changed"
    return None


async def process_reminder(ctx: SchedulerContext, job: Job) -> list[SendResult]:
    """Send one reminder per recipient for an upcoming appointment.

    The appointment is reloaded here; whatever was true when the job was
    scheduled is not trusted.
    """
    payload = ReminderPayload.model_validate(job.payload)

    async with ctx.session_factory() as db:
        appointment = await db.get(Appointment, payload.appointment_id)
        if appointment is None:
            raise PermanentDataError(f"Appointment {payload.appointment_id} not found")
        owner = await db.get(Owner, appointment.owner_id)

    reason = _stale_reason(appointment, payload)
    if reason:
        logger.info(
            "reminder_skipped_stale",
            job_id=str(job.id),
            appointment_id=str(appointment.id),
            reason=reason,
        )
        return []

    tz = ctx.settings.SCHEDULE_TIMEZONE
    participants = appointment.participants or []
    participant_names = ", ".join(p.get("name") or "" for p in participants if p.get("name"))
    owner_name = owner.name if owner else ""

    deliveries = []
    if owner is not None:
        deliveries.append(
            (
                Recipient(name=owner.name, email=owner.email, phone=owner.phone),
                render_reminder(
                    ReminderContext(
                        recipient_name=owner.name,
                        other_party=participant_names,
                        title=appointment.title,
                        start_at=appointment.start_at,
                        tz=tz,
                        location=appointment.location,
                        video_link=appointment.video_link,
                    )
                ),
            )
        )
    else:
        logger.warning("reminder_owner_missing", appointment_id=str(appointment.id))

    for participant in participants:
        name = participant.get("name") or ""
        deliveries.append(
            (
                Recipient(name=name, email=participant.get("email"), phone=participant.get("phone")),
                render_reminder(
                    ReminderContext(
                        recipient_name=name,
                        other_party=owner_name,
                        title=appointment.title,
                        start_at=appointment.start_at,
                        tz=tz,
                        location=appointment.location,
                        video_link=appointment.video_link,
                    )
                ),
            )
        )

    results = await send_each(ctx.gateway, deliveries, template="reminder")
    logger.info(
        "reminder_sent",
        job_id=str(job.id),
        appointment_id=str(appointment.id),
        recipients=len(results),
        sent=sum(1 for r in results if r.success),
        failed=sum(1 for r in results if not r.success),
    )
    return results
