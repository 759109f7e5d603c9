"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_LIVE_DEDUP_WHERE = sa.text("status IN ('scheduled', 'locked', 'done')")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Owners
    op.create_table(
        "owners",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Appointments
    op.create_table(
        "appointments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", UUID(as_uuid=True), sa.ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("service_name", sa.String(255), nullable=True),
        sa.Column("participants", sa.JSON(), nullable=False),
        sa.Column("funding", sa.JSON(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("video_link", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("reminder_job_id", UUID(as_uuid=True), nullable=True),
        sa.Column("chain_id", UUID(as_uuid=True), nullable=True, index=True),
        sa.Column("chain_position", sa.Integer(), nullable=True),
        sa.Column("chain_total", sa.Integer(), nullable=True),
        sa.Column("completed_links", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("origin_appointment_id", UUID(as_uuid=True), sa.ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("duration_minutes > 0", name="ck_appointment_duration_positive"),
        sa.CheckConstraint("completed_links >= 0", name="ck_appointment_completed_links_positive"),
        sa.CheckConstraint(
            "chain_total IS NULL OR chain_position <= chain_total",
            name="ck_appointment_chain_position_range",
        ),
        sa.UniqueConstraint("chain_id", "chain_position", name="uq_appointment_chain_position"),
    )
    op.create_index("ix_appointment_owner_start", "appointments", ["owner_id", "start_at"])

    # Repetition chains
    op.create_table(
        "repetition_chains",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("origin_appointment_id", UUID(as_uuid=True), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("owner_id", UUID(as_uuid=True), sa.ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("recurrence_unit", sa.String(10), nullable=False),
        sa.Column("anchor_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("last_position", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active", index=True),
        sa.Column("next_job_id", UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("total >= 1", name="ck_chain_total_positive"),
        sa.CheckConstraint(
            "last_position >= 1 AND last_position <= total",
            name="ck_chain_last_position_range",
        ),
    )

    # Jobs
    op.create_table(
        "jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("job_type", sa.String(30), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("lock_token", sa.String(64), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dedup_key", sa.String(255), nullable=True),
        sa.Column("appointment_id", UUID(as_uuid=True), nullable=True, index=True),
        sa.Column("chain_id", UUID(as_uuid=True), nullable=True),
        sa.Column("chain_position", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("attempts >= 0", name="ck_job_attempts_positive"),
        sa.CheckConstraint("max_attempts >= 1", name="ck_job_max_attempts_positive"),
    )
    op.create_index("ix_job_status_run_at", "jobs", ["status", "run_at"])
    op.create_index("ix_job_type_status_priority", "jobs", ["job_type", "status", "priority"])
    op.create_index("ix_job_chain_position", "jobs", ["chain_id", "chain_position"])
    op.create_index(
        "uq_job_dedup_key_live",
        "jobs",
        ["dedup_key"],
        unique=True,
        postgresql_where=_LIVE_DEDUP_WHERE,
        sqlite_where=_LIVE_DEDUP_WHERE,
    )

    # Package orders and consumptions
    op.create_table(
        "package_orders",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("participant_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("owner_id", UUID(as_uuid=True), sa.ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("package_name", sa.String(255), nullable=False),
        sa.Column("total_sessions", sa.Integer(), nullable=False),
        sa.Column("used_sessions", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("total_sessions >= 0", name="ck_package_total_sessions_positive"),
        sa.CheckConstraint(
            "used_sessions >= 0 AND used_sessions <= total_sessions",
            name="ck_package_used_sessions_range",
        ),
    )
    op.create_table(
        "session_consumptions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("package_order_id", UUID(as_uuid=True), sa.ForeignKey("package_orders.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("appointment_id", UUID(as_uuid=True), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("participant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("package_order_id", "appointment_id", name="uq_consumption_order_appointment"),
    )

    # Pay-per-use orders
    op.create_table(
        "pending_orders",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("appointment_id", UUID(as_uuid=True), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("participant_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("owner_id", UUID(as_uuid=True), sa.ForeignKey("owners.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("source", sa.String(30), nullable=False, server_default="repetition"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount >= 0", name="ck_pending_order_amount_positive"),
        sa.UniqueConstraint("appointment_id", "participant_id", name="uq_pending_order_appointment_participant"),
    )

    # Repetition warnings
    op.create_table(
        "repetition_warnings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", UUID(as_uuid=True), sa.ForeignKey("owners.id", ondelete="CASCADE"), nullable=False),
        sa.Column("appointment_id", UUID(as_uuid=True), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("entries", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_repetition_warning_owner_status", "repetition_warnings", ["owner_id", "status"])


def downgrade() -> None:
    op.drop_table("repetition_warnings")
    op.drop_table("pending_orders")
    op.drop_table("session_consumptions")
    op.drop_table("package_orders")
    op.drop_index("uq_job_dedup_key_live", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("repetition_chains")
    op.drop_table("appointments")
    op.drop_table("owners")
