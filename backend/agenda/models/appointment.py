import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from agenda.database import Base
from agenda.models.enums import AppointmentStatus
from agenda.models.types import UTCDateTime


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_appointment_duration_positive"),
        CheckConstraint("completed_links >= 0", name="ck_appointment_completed_links_positive"),
        CheckConstraint(
            "chain_total IS NULL OR chain_position <= chain_total",
            name="ck_appointment_chain_position_range",
        ),
        # One appointment per chain position, even when a link handler is retried.
        UniqueConstraint("chain_id", "chain_position", name="uq_appointment_chain_position"),
        Index("ix_appointment_owner_start", "owner_id", "start_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    service_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # [{"id", "name", "email", "phone"}]
    participants: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    # [{"participant_id", "method", "package_order_id", "payment_method",
    #   "pending_order_id", "consumption_id"}]
    funding: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    video_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[AppointmentStatus] = mapped_column(
        String(20), nullable=False, default=AppointmentStatus.PENDING, index=True
    )
    reminder_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    # chain_id is kept on every instance after the chain ends, for audit.
    chain_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True, index=True)
    chain_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    chain_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_links: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    origin_appointment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(), ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True
    )
    # Bumped on every status/time change; writers pass the version they read.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )

    @property
    def end_at(self) -> datetime:
        return self.start_at + timedelta(minutes=self.duration_minutes)

    @property
    def is_cancelled(self) -> bool:
        return self.status == AppointmentStatus.CANCELLED
