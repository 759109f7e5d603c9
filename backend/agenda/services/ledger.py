"""Prepaid package session accounting.

``used_sessions`` is only ever changed by the single conditional UPDATE in
``try_consume_session``; the check constraint on ``package_orders`` backs it.
"""

import enum
import uuid

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agenda.metrics import SESSIONS_CONSUMED
from agenda.models.package_order import PackageOrder

logger = structlog.get_logger()


class ConsumeResult(str, enum.Enum):
    CONSUMED = "consumed"
    INSUFFICIENT = "insufficient"
    NOT_FOUND = "not_found"


async def try_consume_session(db: AsyncSession, order_id: uuid.UUID) -> ConsumeResult:
    """Spend one session of ``order_id`` if any remain.

    Runs inside the caller's transaction; the caller commits.
    """
    result = await db.execute(
        update(PackageOrder)
        .where(
            PackageOrder.id == order_id,
            PackageOrder.used_sessions < PackageOrder.total_sessions,
        )
        .values(used_sessions=PackageOrder.used_sessions + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        outcome = ConsumeResult.CONSUMED
    else:
        exists = await db.execute(select(PackageOrder.id).where(PackageOrder.id == order_id))
        outcome = (
            ConsumeResult.INSUFFICIENT
            if exists.scalar_one_or_none() is not None
            else ConsumeResult.NOT_FOUND
        )

    SESSIONS_CONSUMED.labels(result=outcome.value).inc()
    logger.info("package_session_consume", package_order_id=str(order_id), result=outcome.value)
    return outcome


async def remaining_sessions(db: AsyncSession, order_id: uuid.UUID) -> int | None:
    result = await db.execute(
        select(PackageOrder.total_sessions - PackageOrder.used_sessions).where(
            PackageOrder.id == order_id
        )
    )
    return result.scalar_one_or_none()
