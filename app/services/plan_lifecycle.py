from __future__ import annotations

"""Substitution plan state machine.

Legal transitions::

    draft -> approved -> in_progress -> completed | partial | failed
    draft -> cancelled
    approved | in_progress | completed | partial -> rolled_back

Every status write goes through :func:`transition_plan`, which checks the
transition table and then issues a conditional UPDATE that only matches
while the row still has the expected status. Execution and rollback of the
same plan are additionally serialized in-process with :func:`plan_lock`.
"""

import asyncio
import weakref
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.substitution_plan import PlanStatus, SubstitutionPlanRecord
from app.services.engine_errors import InvalidPlanTransitionError


ALLOWED_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.DRAFT: frozenset({PlanStatus.APPROVED, PlanStatus.CANCELLED}),
    PlanStatus.APPROVED: frozenset({PlanStatus.IN_PROGRESS, PlanStatus.ROLLED_BACK}),
    PlanStatus.IN_PROGRESS: frozenset(
        {
            PlanStatus.COMPLETED,
            PlanStatus.PARTIAL,
            PlanStatus.FAILED,
            PlanStatus.ROLLED_BACK,
        }
    ),
    PlanStatus.COMPLETED: frozenset({PlanStatus.ROLLED_BACK}),
    PlanStatus.PARTIAL: frozenset({PlanStatus.ROLLED_BACK}),
    PlanStatus.FAILED: frozenset(),
    PlanStatus.ROLLED_BACK: frozenset(),
    PlanStatus.CANCELLED: frozenset(),
}

ROLLBACK_SOURCES = frozenset(
    s for s, targets in ALLOWED_TRANSITIONS.items() if PlanStatus.ROLLED_BACK in targets
)

# Entries disappear once no task holds or waits on the lock.
_PLAN_LOCKS: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def can_transition(current: PlanStatus | str, target: PlanStatus | str) -> bool:
    return PlanStatus(target) in ALLOWED_TRANSITIONS[PlanStatus(current)]


def ensure_transition(current: PlanStatus | str, target: PlanStatus | str) -> None:
    """Raise :class:`InvalidPlanTransitionError` for an illegal transition."""

    current = PlanStatus(current)
    target = PlanStatus(target)
    if can_transition(current, target):
        return
    if target == PlanStatus.IN_PROGRESS:
        raise InvalidPlanTransitionError(
            current,
            target,
            f"Plan must be approved before execution (current status: {current})",
        )
    if target == PlanStatus.ROLLED_BACK:
        raise InvalidPlanTransitionError(
            current,
            target,
            f"Plan cannot be rolled back from status '{current}'",
        )
    raise InvalidPlanTransitionError(current, target)


def plan_lock(plan_id: str) -> asyncio.Lock:
    """Return the process-wide lock that serializes work on ``plan_id``."""
    lock = _PLAN_LOCKS.get(plan_id)
    if lock is None:
        lock = asyncio.Lock()
        _PLAN_LOCKS[plan_id] = lock
    return lock


async def transition_plan(
    db: AsyncSession,
    plan_id: str,
    current: PlanStatus | str,
    target: PlanStatus | str,
    *,
    reason: str | None = None,
    values: dict[str, Any] | None = None,
    commit: bool = True,
) -> None:
    """Move a persisted plan from ``current`` to ``target``.

    Raises:
        InvalidPlanTransitionError: If the transition is illegal or the row
            no longer has status ``current``.
    """

    ensure_transition(current, target)
    stmt = (
        update(SubstitutionPlanRecord)
        .where(
            SubstitutionPlanRecord.plan_id == plan_id,
            SubstitutionPlanRecord.status == PlanStatus(current),
        )
        .values(status=PlanStatus(target), status_reason=reason, **(values or {}))
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        await db.rollback()
        raise InvalidPlanTransitionError(
            str(current),
            str(target),
            f"Substitution plan {plan_id} is no longer in status '{current}'",
        )
    if commit:
        await db.commit()
