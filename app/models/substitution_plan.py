from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base, TimestampMixin, value_enum
from app.models.therapist import Therapist


class PlanStatus(StrEnum):
    DRAFT = "draft"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class SubstitutionPlanRecord(TimestampMixin, Base):
    """Persisted substitution plan.

    ``status`` is the source of truth for the lifecycle; ``plan_data`` keeps
    the JSON snapshot of assignments, notifications and rollback steps as they
    were computed when the plan was created.
    """

    __tablename__ = "substitution_plans"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    original_therapist_id: Mapped[int] = mapped_column(
        ForeignKey(Therapist.id), nullable=False, index=True
    )

    status: Mapped[PlanStatus] = mapped_column(
        value_enum(PlanStatus, "substitution_plan_status"),
        nullable=False,
        default=PlanStatus.DRAFT,
        index=True,
    )
    status_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    can_rollback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rollback_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    plan_data: Mapped[dict] = mapped_column(JSON, nullable=False)
