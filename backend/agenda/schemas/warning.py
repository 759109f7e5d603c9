import uuid
from datetime import datetime

from pydantic import BaseModel

from agenda.models.enums import WarningKind, WarningStatus


class WarningEntry(BaseModel):
    participant_id: uuid.UUID
    kind: WarningKind
    message: str


class WarningResponse(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    appointment_id: uuid.UUID
    entries: list[WarningEntry]
    status: WarningStatus
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class WarningListResponse(BaseModel):
    warnings: list[WarningResponse]
