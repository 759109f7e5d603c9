import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Numeric, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from agenda.database import Base
from agenda.models.enums import PendingOrderStatus
from agenda.models.types import UTCDateTime


class PendingOrder(Base):
    """Pay-per-use funding awaiting payment for one appointment instance."""

    __tablename__ = "pending_orders"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_pending_order_amount_positive"),
        UniqueConstraint("appointment_id", "participant_id", name="uq_pending_order_appointment_participant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    participant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[PendingOrderStatus] = mapped_column(
        String(20), nullable=False, default=PendingOrderStatus.PENDING
    )
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="repetition")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
