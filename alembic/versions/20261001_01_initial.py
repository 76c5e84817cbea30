"""Initial scheduling engine schema

Revision ID: 20261001_01_initial
Revises:
Create Date: 2026-10-01

"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "20261001_01_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENROLLMENT_STATUS = sa.Enum("active", "paused", "ended", name="enrollment_status")
SESSION_STATUS = sa.Enum(
    "scheduled", "completed", "cancelled", "no_show", name="session_status"
)
PLAN_STATUS = sa.Enum(
    "draft",
    "approved",
    "in_progress",
    "completed",
    "partial",
    "failed",
    "rolled_back",
    "cancelled",
    name="substitution_plan_status",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    """Create therapists, rooms, enrollments, sessions, plans and audit tables."""

    op.create_table(
        "therapists",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
        sa.Column("full_name_ar", sa.String(length=255), nullable=True),
        sa.Column("full_name_en", sa.String(length=255), nullable=True),
        sa.Column("specialties", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("substitute_eligible", sa.Boolean(), server_default=sa.text("true")),
    )
    op.create_index(op.f("ix_therapists_is_active"), "therapists", ["is_active"])

    op.create_table(
        "therapist_capacities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
        sa.Column(
            "therapist_id", sa.Integer(), sa.ForeignKey("therapists.id"), nullable=False
        ),
        sa.Column("max_daily_hours", sa.Numeric(5, 2), nullable=False, server_default="8"),
        sa.Column("max_weekly_hours", sa.Numeric(5, 2), nullable=False, server_default="40"),
        sa.Column(
            "max_monthly_hours", sa.Numeric(6, 2), nullable=False, server_default="160"
        ),
        sa.Column(
            "max_concurrent_students", sa.Integer(), nullable=False, server_default="25"
        ),
        sa.Column("max_sessions_per_day", sa.Integer(), nullable=False, server_default="8"),
        sa.Column(
            "required_break_minutes", sa.Integer(), nullable=False, server_default="15"
        ),
        sa.Column(
            "max_consecutive_hours", sa.Numeric(4, 2), nullable=False, server_default="4"
        ),
        sa.Column("specialty_requirements", sa.JSON(), nullable=False),
        sa.Column("availability_windows", sa.JSON(), nullable=False),
    )
    op.create_index(
        op.f("ix_therapist_capacities_therapist_id"),
        "therapist_capacities",
        ["therapist_id"],
        unique=True,
    )

    op.create_table(
        "therapy_rooms",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("room_type", sa.String(length=64), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
    )
    op.create_index(op.f("ix_therapy_rooms_room_type"), "therapy_rooms", ["room_type"])

    op.create_table(
        "enrollments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("program_template_id", sa.Integer(), nullable=False),
        sa.Column(
            "assigned_therapist_id",
            sa.Integer(),
            sa.ForeignKey("therapists.id"),
            nullable=True,
        ),
        sa.Column("frequency_per_week", sa.Integer(), nullable=False),
        sa.Column("session_duration_minutes", sa.Integer(), nullable=False),
        sa.Column("session_rate", sa.Numeric(10, 2), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("status", ENROLLMENT_STATUS, nullable=False),
        sa.Column(
            "preferred_room_id",
            sa.Integer(),
            sa.ForeignKey("therapy_rooms.id"),
            nullable=True,
        ),
        sa.Column("service_types", sa.JSON(), nullable=False),
    )
    for column in ("student_id", "program_template_id", "assigned_therapist_id", "status"):
        op.create_index(op.f(f"ix_enrollments_{column}"), "enrollments", [column])

    op.create_table(
        "scheduled_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
        sa.Column(
            "enrollment_id", sa.Integer(), sa.ForeignKey("enrollments.id"), nullable=False
        ),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column(
            "therapist_id", sa.Integer(), sa.ForeignKey("therapists.id"), nullable=True
        ),
        sa.Column("room_id", sa.Integer(), sa.ForeignKey("therapy_rooms.id"), nullable=True),
        sa.Column("session_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", SESSION_STATUS, nullable=False),
    )
    for column in (
        "enrollment_id",
        "student_id",
        "therapist_id",
        "room_id",
        "session_date",
        "status",
    ):
        op.create_index(
            op.f(f"ix_scheduled_sessions_{column}"), "scheduled_sessions", [column]
        )

    op.create_table(
        "substitution_plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
        sa.Column("plan_id", sa.String(length=64), nullable=False),
        sa.Column(
            "original_therapist_id",
            sa.Integer(),
            sa.ForeignKey("therapists.id"),
            nullable=False,
        ),
        sa.Column("status", PLAN_STATUS, nullable=False),
        sa.Column("status_reason", sa.String(length=512), nullable=True),
        sa.Column("can_rollback", sa.Boolean(), nullable=False),
        sa.Column("rollback_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_data", sa.JSON(), nullable=False),
    )
    op.create_index(
        op.f("ix_substitution_plans_plan_id"), "substitution_plans", ["plan_id"], unique=True
    )
    op.create_index(
        op.f("ix_substitution_plans_original_therapist_id"),
        "substitution_plans",
        ["original_therapist_id"],
    )
    op.create_index(op.f("ix_substitution_plans_status"), "substitution_plans", ["status"])

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
        sa.Column("plan_id", sa.String(length=64), nullable=True),
        sa.Column("recipient_type", sa.String(length=32), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("message_ar", sa.Text(), nullable=False),
        sa.Column("message_en", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column("requires_confirmation", sa.Boolean(), nullable=False),
        sa.Column("send_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        op.f("ix_notification_outbox_plan_id"), "notification_outbox", ["plan_id"]
    )
    op.create_index(
        op.f("ix_notification_outbox_recipient_id"), "notification_outbox", ["recipient_id"]
    )

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("target_type", sa.String(length=64), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("batch_id", sa.String(length=64), nullable=True),
    )
    for column in ("actor_id", "action", "target_type", "target_id", "batch_id"):
        op.create_index(op.f(f"ix_activity_logs_{column}"), "activity_logs", [column])


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("notification_outbox")
    op.drop_table("substitution_plans")
    op.drop_table("scheduled_sessions")
    op.drop_table("enrollments")
    op.drop_table("therapy_rooms")
    op.drop_table("therapist_capacities")
    op.drop_table("therapists")

    bind = op.get_bind()
    PLAN_STATUS.drop(bind, checkfirst=True)
    SESSION_STATUS.drop(bind, checkfirst=True)
    ENROLLMENT_STATUS.drop(bind, checkfirst=True)
