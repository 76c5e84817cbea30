from __future__ import annotations

"""Audit trail for engine decisions that change state.

Assignments and every substitution plan status change leave an
``ActivityLog`` row. Callers normally pass ``commit=False`` so the audit row
commits in the same transaction as the change it describes.
"""

from enum import StrEnum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import logger
from app.models.activity_log import ActivityLog


class AuditAction(StrEnum):
    ASSIGNMENT_CREATED = "assignment_created"
    PLAN_CREATED = "substitution_plan_created"
    PLAN_APPROVED = "substitution_plan_approved"
    PLAN_CANCELLED = "substitution_plan_cancelled"
    PLAN_EXECUTED = "substitution_plan_executed"
    PLAN_ROLLED_BACK = "substitution_plan_rolled_back"


PLAN_TARGET = "substitution_plan"


async def log_activity(
    db: AsyncSession,
    *,
    actor_id: int | None,
    action: AuditAction,
    target_type: str,
    target_id: int | None = None,
    details: dict[str, Any] | None = None,
    batch_id: str | None = None,
    commit: bool = True,
) -> ActivityLog:
    """Add one ``ActivityLog`` row to ``db``.

    Args:
        actor_id: Operator that triggered the action; ``None`` for scheduled
            or system actions.
        target_type: ``"enrollment"`` or ``"substitution_plan"``.
        batch_id: Correlation id; plan rows use the plan's public id.
        commit: Commit immediately instead of leaving it to the caller.
    """

    entry = ActivityLog(
        actor_id=actor_id,
        action=str(action),
        target_type=target_type,
        target_id=target_id,
        details=details or None,
        batch_id=batch_id,
    )
    db.add(entry)

    if commit:
        try:
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.warning("Failed to commit audit entry %s", action, exc_info=True)
            raise

    return entry


async def log_plan_activity(
    db: AsyncSession,
    plan_id: str,
    action: AuditAction,
    details: dict[str, Any],
    *,
    actor_id: int | None = None,
) -> ActivityLog:
    """Stage an audit row for a substitution plan; the caller commits."""
    return await log_activity(
        db,
        actor_id=actor_id,
        action=action,
        target_type=PLAN_TARGET,
        details=details,
        batch_id=plan_id,
        commit=False,
    )
