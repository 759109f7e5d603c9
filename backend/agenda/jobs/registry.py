"""Job handler registry."""

from typing import Any, Awaitable, Callable, Mapping

from agenda.jobs import reminder, repetition
from agenda.models.enums import JobType

JobHandler = Callable[[Any, Any], Awaitable[Any]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.REMINDER.value: reminder.process_reminder,
    JobType.REPETITION_LINK.value: repetition.process_repetition_link,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
