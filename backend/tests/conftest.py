import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RESEND_API_KEY"] = ""  # Force dev mode for the email gateway
os.environ["ADMIN_API_KEY"] = "test-admin-key-for-unit-tests-0123456789"

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from agenda.config import Settings
from agenda.database import Base
from agenda.exceptions import NotificationError
from agenda.models import Appointment, Job, Owner, PackageOrder
from agenda.models.enums import AppointmentStatus, FundingMethod
from agenda.services.context import SchedulerContext
from agenda.services.job_store import InMemoryJobStore, SqlJobStore
from agenda.services.notifications import SendResult

ADMIN_KEY = os.environ["ADMIN_API_KEY"]


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingGateway:
    """Notification gateway that records messages instead of sending them."""

    def __init__(self):
        self.sent = []
        self.failing: set[str] = set()

    async def send(self, recipient, message):
        if recipient.email in self.failing:
            raise NotificationError(recipient.email, "mailbox unavailable")
        self.sent.append((recipient, message))
        return SendResult(recipient=recipient.email or "", success=True)

    def sent_to(self, email: str) -> list:
        return [message for recipient, message in self.sent if recipient.email == email]


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so that separate sessions see each other's commits.
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'agenda.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        APP_ENV="test",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        WORKER_ID="test-worker",
        SCHEDULE_TIMEZONE="Europe/Istanbul",
        RETRY_BACKOFF_SECONDS=30,
        JOB_LEASE_SECONDS=600,
        JOB_MAX_ATTEMPTS=5,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def ctx(session_factory, gateway, test_settings, clock) -> SchedulerContext:
    return SchedulerContext(
        session_factory=session_factory,
        store=SqlJobStore(session_factory),
        gateway=gateway,
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def memory_ctx(session_factory, gateway, test_settings, clock) -> SchedulerContext:
    return SchedulerContext(
        session_factory=session_factory,
        store=InMemoryJobStore(),
        gateway=gateway,
        settings=test_settings,
        clock=clock,
    )


@pytest_asyncio.fixture
async def owner(db: AsyncSession) -> Owner:
    o = Owner(id=uuid.uuid4(), name="Dr. Ayse Kaya", email="ayse@example.com", phone="+905551112233")
    db.add(o)
    await db.commit()
    return o


def participant(name: str = "Mehmet", email: str | None = None) -> dict:
    return {
        "id": str(uuid.uuid4()),
        "name": name,
        "email": email or f"{name.lower()}@example.com",
        "phone": None,
    }


async def create_appointment(
    db: AsyncSession,
    owner: Owner,
    *,
    start_at: datetime,
    participants: list[dict] | None = None,
    funding: list[dict] | None = None,
    price: Decimal | None = None,
    status: AppointmentStatus = AppointmentStatus.APPROVED,
) -> Appointment:
    appointment = Appointment(
        id=uuid.uuid4(),
        owner_id=owner.id,
        title="Therapy session",
        service_name="Individual therapy",
        participants=participants if participants is not None else [participant()],
        funding=funding or [],
        start_at=start_at,
        duration_minutes=50,
        location="Kadikoy office",
        price=price,
        status=status.value,
    )
    db.add(appointment)
    await db.commit()
    return appointment


async def create_package_order(
    db: AsyncSession, owner: Owner, participant_ref: dict, total_sessions: int, used_sessions: int = 0
) -> PackageOrder:
    order = PackageOrder(
        id=uuid.uuid4(),
        participant_id=uuid.UUID(participant_ref["id"]),
        owner_id=owner.id,
        package_name="10 session bundle",
        total_sessions=total_sessions,
        used_sessions=used_sessions,
    )
    db.add(order)
    await db.commit()
    return order


def package_funding(participant_ref: dict, order: PackageOrder) -> dict:
    return {
        "participant_id": participant_ref["id"],
        "method": FundingMethod.PACKAGE.value,
        "package_order_id": str(order.id),
        "payment_method": None,
    }


def pay_per_use_funding(participant_ref: dict, payment_method: str = "card") -> dict:
    return {
        "participant_id": participant_ref["id"],
        "method": FundingMethod.PAY_PER_USE.value,
        "package_order_id": None,
        "payment_method": payment_method,
    }


async def fetch(session_factory, model, object_id):
    async with session_factory() as session:
        return await session.get(model, object_id)


async def fetch_all(session_factory, stmt) -> list:
    async with session_factory() as session:
        return list((await session.execute(stmt)).scalars().all())


async def jobs_for(session_factory, **filters) -> list[Job]:
    stmt = select(Job).filter_by(**filters).order_by(Job.run_at)
    return await fetch_all(session_factory, stmt)
