import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from agenda.database import Base
from agenda.models.enums import ChainStatus, RecurrenceUnit
from agenda.models.types import UTCDateTime


class RepetitionChain(Base):
    """Progress of a recurring appointment, kept apart from the job queue.

    The origin appointment is position 1. ``last_position`` is the highest
    position whose appointment has been created, so a lost job record can be
    rebuilt from this row alone.
    """

    __tablename__ = "repetition_chains"
    __table_args__ = (
        CheckConstraint("total >= 1", name="ck_chain_total_positive"),
        CheckConstraint(
            "last_position >= 1 AND last_position <= total",
            name="ck_chain_last_position_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    origin_appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    recurrence_unit: Mapped[RecurrenceUnit] = mapped_column(String(10), nullable=False)
    anchor_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    last_position: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[ChainStatus] = mapped_column(
        String(20), nullable=False, default=ChainStatus.ACTIVE, index=True
    )
    next_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )

    @property
    def is_active(self) -> bool:
        return self.status == ChainStatus.ACTIVE
