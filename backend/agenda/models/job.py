import uuid
from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from agenda.database import Base
from agenda.models.enums import JobStatus, JobType
from agenda.models.types import UTCDateTime

_LIVE_DEDUP_WHERE = text("status IN ('scheduled', 'locked', 'done')")


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_job_attempts_positive"),
        CheckConstraint("max_attempts >= 1", name="ck_job_max_attempts_positive"),
        Index("ix_job_status_run_at", "status", "run_at"),
        Index("ix_job_type_status_priority", "job_type", "status", "priority"),
        Index("ix_job_chain_position", "chain_id", "chain_position"),
        # A dedup key may be reused once the previous job was cancelled or failed.
        Index(
            "uq_job_dedup_key_live",
            "dedup_key",
            unique=True,
            postgresql_where=_LIVE_DEDUP_WHERE,
            sqlite_where=_LIVE_DEDUP_WHERE,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    job_type: Mapped[JobType] = mapped_column(String(30), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        String(20), nullable=False, default=JobStatus.SCHEDULED
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    lock_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedup_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True, index=True)
    chain_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    chain_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.job_type} {self.status} run_at={self.run_at}>"
