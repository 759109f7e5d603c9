import uuid
from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from agenda.database import Base
from agenda.models.enums import WarningStatus
from agenda.models.types import UTCDateTime


class RepetitionWarning(Base):
    """Funding anomalies found while creating one repetition instance.

    Rows are append-only here; operators resolve or dismiss them elsewhere.
    """

    __tablename__ = "repetition_warnings"
    __table_args__ = (
        Index("ix_repetition_warning_owner_status", "owner_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # [{"participant_id", "kind", "message"}]
    entries: Mapped[list[dict]] = mapped_column(JSON, nullable=False)
    status: Mapped[WarningStatus] = mapped_column(
        String(20), nullable=False, default=WarningStatus.PENDING
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
