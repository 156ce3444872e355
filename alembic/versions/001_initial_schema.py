"""Initial schema — users, doctors, appointments, payments, notifications, audit.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # ── Standalone tables (no FKs) ─────────────────────────────────────

    op.create_table(
        "users",
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20)),
        sa.Column("role", sa.String(20), nullable=False, server_default="patient"),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "audit_log",
        sa.Column("event_type", sa.String(100), nullable=False, index=True),
        sa.Column("appointment_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("actor_id", sa.String(100), comment="User ID or 'system'"),
        sa.Column("actor_role", sa.String(50), comment="patient, doctor, admin, system"),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text())),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    # ── Doctors ────────────────────────────────────────────────────────

    op.create_table(
        "doctors",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("specialization", sa.String(100)),
        sa.Column("consultation_fee", sa.Numeric(10, 2), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "doctor_availability",
        sa.Column(
            "doctor_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("doctors.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("day_of_week", sa.SmallInteger(), nullable=False, comment="0 = Sunday ... 6 = Saturday"),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("doctor_id", "day_of_week", name="uq_availability_doctor_day"),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_availability_day_of_week"),
        sa.CheckConstraint("end_time > start_time", name="ck_availability_window"),
    )

    # ── Appointments ───────────────────────────────────────────────────

    op.create_table(
        "appointments",
        sa.Column(
            "patient_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "doctor_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("doctors.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("appointment_date", sa.Date(), nullable=False, index=True),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("consultation_type", sa.String(20), nullable=False, server_default="video"),
        sa.Column("notes", sa.Text()),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled", index=True),
        sa.Column("diagnosis", sa.Text()),
        sa.Column("prescription", sa.Text()),
        sa.Column("doctor_notes", sa.Text()),
        sa.Column("cancellation_reason", sa.String(500)),
        sa.Column("queue_position", sa.Integer()),
        sa.Column("estimated_wait_time", sa.Integer(), comment="Minutes"),
        sa.Column("check_in_time", sa.DateTime(timezone=True)),
        sa.Column("called_time", sa.DateTime(timezone=True)),
        sa.Column("completed_time", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notification_sent_at", sa.DateTime(timezone=True)),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("doctor_id", "appointment_date", "start_time", name="uq_appointments_doctor_slot"),
        sa.CheckConstraint("end_time > start_time", name="ck_appointments_slot"),
    )
    op.create_index(
        "ix_appointments_queue",
        "appointments",
        ["doctor_id", "appointment_date", "status", "queue_position"],
    )

    # ── Payments, notifications, feedback ──────────────────────────────

    op.create_table(
        "payments",
        sa.Column("appointment_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("appointments.id"), nullable=False),
        sa.Column("provider_intent_id", sa.String(255), index=True),
        sa.Column("amount", sa.Integer(), nullable=False, comment="Minor currency units"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="created"),
        sa.Column("refund_id", sa.String(255)),
        sa.Column("succeeded_at", sa.DateTime(timezone=True)),
        sa.Column("failed_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("appointment_id"),
    )

    op.create_table(
        "notifications",
        sa.Column("recipient_email", sa.String(255)),
        sa.Column("subject", sa.String(255)),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False, index=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "notification_errors",
        sa.Column("appointment_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("appointments.id"), index=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id")),
        sa.Column("error_type", sa.String(50), nullable=False),
        sa.Column("error_message", sa.Text()),
        sa.Column("context", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_attempt", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("appointment_id", "error_type", name="uq_notification_errors_appointment_type"),
    )

    op.create_table(
        "feedback",
        sa.Column("appointment_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("appointments.id"), nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("doctors.id"), nullable=False),
        sa.Column("rating", sa.SmallInteger()),
        sa.Column("comment", sa.Text()),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("appointment_id"),
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_table("feedback")
    op.drop_table("notification_errors")
    op.drop_table("notifications")
    op.drop_table("payments")
    op.drop_index("ix_appointments_queue", table_name="appointments")
    op.drop_table("appointments")
    op.drop_table("doctor_availability")
    op.drop_table("doctors")
    op.drop_table("audit_log")
    op.drop_table("users")
