import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from agenda.database import Base
from agenda.models.types import UTCDateTime


class PackageOrder(Base):
    """A prepaid bundle of sessions bought by one participant."""

    __tablename__ = "package_orders"
    __table_args__ = (
        CheckConstraint("total_sessions >= 0", name="ck_package_total_sessions_positive"),
        CheckConstraint(
            "used_sessions >= 0 AND used_sessions <= total_sessions",
            name="ck_package_used_sessions_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    participant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    package_name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    used_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )

    @property
    def remaining_sessions(self) -> int:
        return self.total_sessions - self.used_sessions


class SessionConsumption(Base):
    """One package session spent on one appointment."""

    __tablename__ = "session_consumptions"
    __table_args__ = (
        UniqueConstraint(
            "package_order_id", "appointment_id", name="uq_consumption_order_appointment"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    package_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("package_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    participant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
