import uuid
from datetime import datetime
from typing import Any

from pydantic import AwareDatetime, BaseModel, Field, model_validator

from agenda.models.enums import JobStatus, JobType, RecurrenceUnit


class ReminderPayload(BaseModel):
    appointment_id: uuid.UUID
    owner_id: uuid.UUID
    # Start time the reminder was computed from; a mismatch means the job is stale.
    start_at: AwareDatetime


class RepetitionLinkPayload(BaseModel):
    chain_id: uuid.UUID
    origin_appointment_id: uuid.UUID
    owner_id: uuid.UUID
    chain_position: int = Field(ge=2)
    chain_total: int = Field(ge=2)
    recurrence_unit: RecurrenceUnit
    run_at: AwareDatetime

    @model_validator(mode="after")
    def position_within_total(self) -> "RepetitionLinkPayload":
        if self.chain_position > self.chain_total:
            raise ValueError("chain_position exceeds chain_total")
        return self


class JobFilter(BaseModel):
    job_type: JobType | None = None
    statuses: tuple[JobStatus, ...] = (JobStatus.SCHEDULED, JobStatus.LOCKED)
    appointment_id: uuid.UUID | None = None
    chain_id: uuid.UUID | None = None
    due_before: AwareDatetime | None = None
    limit: int = Field(50, ge=1, le=500)


class JobResponse(BaseModel):
    id: uuid.UUID
    job_type: JobType
    payload: dict[str, Any]
    run_at: datetime
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    lease_expires_at: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None
    appointment_id: uuid.UUID | None = None
    chain_id: uuid.UUID | None = None
    chain_position: int | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    count: int


class CancelJobResponse(BaseModel):
    id: uuid.UUID
    cancelled: bool
