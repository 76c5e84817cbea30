from __future__ import annotations

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base, TimestampMixin


class ActivityLog(TimestampMixin, Base):
    """Generic audit log entry for important engine actions.

    Args:
        actor_id: Optional id of the operator that triggered the action.
            ``NULL`` is allowed for system-initiated actions such as the
            scheduled capacity sweep.
        action: Machine-friendly action label (e.g. ``"assignment_created"``,
            ``"substitution_plan_executed"``).
        target_type: Logical target type of the action (e.g.
            ``"enrollment"``, ``"substitution_plan"``, ``"therapist"``).
        target_id: Optional primary key of the target entity when applicable.
        details: Optional JSON payload with structured context such as
            ``{"assignments_failed": [{"therapist_id": 4, "reason": "..."}]}``.
        batch_id: Optional correlation identifier used to group multiple log
            entries that belong to a single high-level operation.
    """

    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    actor_id: Mapped[int | None] = mapped_column(nullable=True, index=True)

    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_id: Mapped[int | None] = mapped_column(nullable=True, index=True)

    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
