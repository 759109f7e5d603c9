import uuid
from collections.abc import Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agenda.metrics import WARNINGS_RECORDED
from agenda.models.enums import WarningStatus
from agenda.models.warning import RepetitionWarning
from agenda.schemas.warning import WarningEntry

logger = structlog.get_logger()


async def record_warning(
    db: AsyncSession,
    owner_id: uuid.UUID,
    appointment_id: uuid.UUID,
    entries: Sequence[WarningEntry],
) -> RepetitionWarning | None:
    """Append one warning grouping ``entries``; nothing is written when empty."""
    if not entries:
        return None

    warning = RepetitionWarning(
        id=uuid.uuid4(),
        owner_id=owner_id,
        appointment_id=appointment_id,
        entries=[entry.model_dump(mode="json") for entry in entries],
        status=WarningStatus.PENDING.value,
    )
    db.add(warning)
    await db.flush()

    for entry in entries:
        WARNINGS_RECORDED.labels(kind=entry.kind.value).inc()
    logger.info(
        "repetition_warning_recorded",
        warning_id=str(warning.id),
        appointment_id=str(appointment_id),
        kinds=[entry.kind.value for entry in entries],
    )
    return warning


async def list_warnings(
    db: AsyncSession,
    owner_id: uuid.UUID | None = None,
    status: WarningStatus | None = None,
    limit: int = 100,
) -> list[RepetitionWarning]:
    stmt = select(RepetitionWarning)
    if owner_id:
        stmt = stmt.where(RepetitionWarning.owner_id == owner_id)
    if status:
        stmt = stmt.where(RepetitionWarning.status == status.value)
    stmt = stmt.order_by(RepetitionWarning.created_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
