from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.config import Settings
from agenda.services.job_store import JobStore
from agenda.services.notifications import NotificationGateway


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SchedulerContext:
    """Collaborators shared by scheduling calls, handlers and the dispatcher."""

    session_factory: async_sessionmaker[AsyncSession]
    store: JobStore
    gateway: NotificationGateway
    settings: Settings
    clock: Callable[[], datetime] = field(default=utcnow)

    def now(self) -> datetime:
        return self.clock()
