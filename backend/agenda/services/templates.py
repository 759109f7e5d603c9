"""Pure rendering of notification messages.

Every ``render_*`` function maps a context to a ``RenderedMessage`` and has no
side effects, so handlers can render once per recipient and hand the result
to the notification gateway.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from jinja2 import Environment, FileSystemLoader, StrictUndefined

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

# autoescape=True: names and notes come from end users.
_jinja_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=True,
    undefined=StrictUndefined,
)


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


@dataclass(frozen=True)
class ReminderContext:
    recipient_name: str
    other_party: str
    title: str
    start_at: datetime
    tz: str
    location: str | None = None
    video_link: str | None = None


@dataclass(frozen=True)
class InstanceCreatedContext:
    recipient_name: str
    owner_name: str
    title: str
    start_at: datetime
    tz: str
    duration_minutes: int
    location: str | None = None
    video_link: str | None = None
    package_name: str | None = None


@dataclass(frozen=True)
class OwnerSummaryContext:
    recipient_name: str
    title: str
    start_at: datetime
    tz: str
    chain_position: int
    chain_total: int
    participant_names: str = ""
    location: str | None = None
    # [{"kind", "participant_name", "message"}]
    warnings: tuple[dict, ...] = field(default_factory=tuple)


def _local_parts(start_at: datetime, tz: str) -> tuple[str, str]:
    local = start_at.astimezone(ZoneInfo(tz))
    return local.strftime("%Y-%m-%d"), local.strftime("%H:%M")


def render_reminder(context: ReminderContext) -> RenderedMessage:
    start_date, start_time = _local_parts(context.start_at, context.tz)
    body = _jinja_env.get_template("reminder.html").render(
        recipient_name=context.recipient_name,
        other_party=context.other_party,
        title=context.title,
        start_date=start_date,
        start_time=start_time,
        location=context.location,
        video_link=context.video_link,
    )
    return RenderedMessage(
        subject=f"Reminder: {context.title} at {start_time}",
        body=body,
    )


def render_instance_created(context: InstanceCreatedContext) -> RenderedMessage:
    start_date, start_time = _local_parts(context.start_at, context.tz)
    body = _jinja_env.get_template("instance_created_participant.html").render(
        recipient_name=context.recipient_name,
        owner_name=context.owner_name,
        title=context.title,
        start_date=start_date,
        start_time=start_time,
        duration_minutes=context.duration_minutes,
        location=context.location,
        video_link=context.video_link,
        package_name=context.package_name,
    )
    return RenderedMessage(
        subject=f"New session scheduled: {context.title} on {start_date}",
        body=body,
    )


def render_owner_summary(context: OwnerSummaryContext) -> RenderedMessage:
    start_date, start_time = _local_parts(context.start_at, context.tz)
    body = _jinja_env.get_template("instance_created_owner.html").render(
        recipient_name=context.recipient_name,
        title=context.title,
        start_date=start_date,
        start_time=start_time,
        chain_position=context.chain_position,
        chain_total=context.chain_total,
        participant_names=context.participant_names,
        location=context.location,
        warnings=context.warnings,
    )
    subject = f"Recurring session {context.chain_position}/{context.chain_total} created: {context.title}"
    if context.warnings:
        subject += " (action needed)"
    return RenderedMessage(subject=subject, body=body)
