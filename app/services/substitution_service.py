from __future__ import annotations

"""Substitute discovery and the substitution plan lifecycle.

``find_substitutes`` scores eligible therapists for the sessions of an absent
therapist. ``create_substitution_plan`` turns the ranking into a persisted
draft plan that greedily covers sessions, lists what stays uncovered, plans
notifications and carries a rollback plan. Approval, execution and rollback
move the plan through :mod:`app.services.plan_lifecycle`.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Container, Iterable, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.logging import logger
from app.models.scheduled_session import ScheduledSession, SessionStatus
from app.models.substitution_plan import PlanStatus, SubstitutionPlanRecord
from app.models.therapist import Therapist
from app.schemas.substitution import (
    ActiveSubstitution,
    AlternativeOption,
    ExecutionResult,
    FailedItem,
    FailedNotification,
    FailedStep,
    NotificationPlan,
    ResolutionOption,
    RollbackPlan,
    RollbackResult,
    RollbackStep,
    SchedulingConflict,
    SubstitutionCandidate,
    SubstitutionPlan,
    SubstitutionPlanResponse,
    SubstitutionRequest,
    SubstitutionSearchResult,
    TherapistAssignment,
    UnassignedSession,
)
from app.schemas.workload import CapacityLimits
from app.services.activity_log_service import AuditAction, log_plan_activity
from app.services.engine_errors import (
    DataUnavailableError,
    InvalidPlanTransitionError,
    SessionReassignmentError,
)
from app.services.notification_dispatch_service import (
    NotificationDispatcher,
    OutboxNotificationDispatcher,
)
from app.services.plan_lifecycle import (
    ROLLBACK_SOURCES,
    plan_lock,
    transition_plan,
)
from app.services.substitution_scoring import (
    availability_score,
    candidate_sort_key,
    compatibility_score,
    disruption_score,
    workload_impact_score,
)
from app.services.workload_service import clinic_now, load_workload_snapshot
from core.settings import get_settings


UNDO_ASSIGNMENT = "undo_assignment"
NOTIFY_CANCELLATION = "notify_cancellation"
APPROVAL_REQUIRED_ASSIGNMENTS = 10

NO_SESSIONS_MESSAGE = "No sessions scheduled for the therapist in the requested period"
PLAN_NOT_FOUND = "Substitution plan not found"


# ---------------------------------------------------------------------------
# Loaders (module level so tests can monkeypatch them)
# ---------------------------------------------------------------------------


async def _load_therapist(db: AsyncSession, therapist_id: int) -> Therapist | None:
    stmt = (
        select(Therapist)
        .options(selectinload(Therapist.capacity))
        .where(Therapist.id == therapist_id)
    )
    return (await db.execute(stmt)).scalars().first()


async def _load_affected_sessions(
    db: AsyncSession, request: SubstitutionRequest
) -> list[ScheduledSession]:
    stmt = select(ScheduledSession).where(
        ScheduledSession.therapist_id == request.original_therapist_id,
        ScheduledSession.session_date >= request.start_date,
        ScheduledSession.session_date <= request.end_date,
        ScheduledSession.status == SessionStatus.SCHEDULED,
    )
    if request.affected_session_ids:
        stmt = stmt.where(ScheduledSession.id.in_(request.affected_session_ids))
    stmt = stmt.order_by(ScheduledSession.session_date, ScheduledSession.start_time)
    return list((await db.execute(stmt)).scalars().all())


async def _load_substitute_pool(
    db: AsyncSession, original_therapist_id: int
) -> list[Therapist]:
    stmt = (
        select(Therapist)
        .options(selectinload(Therapist.capacity))
        .where(
            Therapist.is_active.is_(True),
            Therapist.substitute_eligible.is_(True),
            Therapist.id != original_therapist_id,
        )
        .order_by(Therapist.id)
    )
    return list((await db.execute(stmt)).scalars().all())


async def _load_therapist_sessions(
    db: AsyncSession, therapist_id: int, start: date, end: date
) -> list[ScheduledSession]:
    stmt = select(ScheduledSession).where(
        ScheduledSession.therapist_id == therapist_id,
        ScheduledSession.session_date >= start,
        ScheduledSession.session_date <= end,
        ScheduledSession.status != SessionStatus.CANCELLED,
    )
    return list((await db.execute(stmt)).scalars().all())


async def _load_plan_record(
    db: AsyncSession, plan_id: str
) -> SubstitutionPlanRecord | None:
    stmt = select(SubstitutionPlanRecord).where(SubstitutionPlanRecord.plan_id == plan_id)
    return (await db.execute(stmt)).scalars().first()


# ---------------------------------------------------------------------------
# Candidate evaluation
# ---------------------------------------------------------------------------


def _session_hours(session: ScheduledSession) -> float:
    return session.duration_minutes / 60


def _week_key(d: date) -> tuple[int, int]:
    iso = d.isocalendar()
    return iso[0], iso[1]


def _overlaps(a: ScheduledSession, b: ScheduledSession) -> bool:
    return (
        a.session_date == b.session_date
        and a.start_time < b.end_time
        and b.start_time < a.end_time
    )


def _within_availability(session: ScheduledSession, limits: CapacityLimits) -> bool:
    """True when the therapist has no windows or one covers the session."""
    if not limits.availability_windows:
        return True
    # Windows use 0 = Sunday; date.weekday() uses 0 = Monday.
    day = (session.session_date.weekday() + 1) % 7
    start = session.start_time.strftime("%H:%M")
    end = session.end_time.strftime("%H:%M")
    return any(
        w.day_of_week == day and w.start_time <= start and end <= w.end_time
        for w in limits.availability_windows
    )


def _conflict(session_id: int, conflict_type: str, ar: str, en: str) -> SchedulingConflict:
    return SchedulingConflict(
        session_id=session_id,
        conflict_type=conflict_type,
        conflict_description_ar=ar,
        conflict_description_en=en,
        resolution_options=[
            ResolutionOption(
                option_type="reschedule",
                description_ar="إعادة جدولة الجلسة",
                description_en="Reschedule the session",
                impact_score=20,
            )
        ],
    )


def _peak_weekly_hours(sessions: Iterable[ScheduledSession]) -> float:
    per_week: dict[tuple[int, int], float] = defaultdict(float)
    for s in sessions:
        per_week[_week_key(s.session_date)] += _session_hours(s)
    return max(per_week.values(), default=0.0)


@dataclass
class _CandidateContext:
    """A scored candidate plus what the planner needs to assign sessions."""

    candidate: SubstitutionCandidate
    remaining_hours: float
    blocked_session_ids: set[int] = field(default_factory=set)


def _take_sessions(
    context: _CandidateContext,
    sessions: Sequence[ScheduledSession],
    exclude: Container[int] = (),
) -> list[ScheduledSession]:
    """Pick sessions in order while each ISO week stays within remaining hours."""

    used: dict[tuple[int, int], float] = defaultdict(float)
    taken: list[ScheduledSession] = []
    for s in sessions:
        if s.id in exclude or s.id in context.blocked_session_ids:
            continue
        key = _week_key(s.session_date)
        hours = _session_hours(s)
        if used[key] + hours > context.remaining_hours + 1e-9:
            continue
        used[key] += hours
        taken.append(s)
    return taken


async def _evaluate_candidate(
    db: AsyncSession,
    therapist: Therapist,
    original_specialties: set[str],
    sessions: Sequence[ScheduledSession],
) -> _CandidateContext:
    """Score one therapist for covering ``sessions``.

    Raises:
        DataUnavailableError: If the candidate's workload cannot be read.
    """

    workload = await load_workload_snapshot(db, therapist.id)
    metrics = workload.metrics
    overlap = set(workload.specialties) & original_specialties
    matches = bool(overlap)

    start = min(s.session_date for s in sessions)
    end = max(s.session_date for s in sessions)
    try:
        own_sessions = await _load_therapist_sessions(db, therapist.id, start, end)
    except SQLAlchemyError as exc:
        raise DataUnavailableError(
            f"Schedule unavailable for therapist {therapist.id}",
            technical_detail=str(exc),
        ) from exc

    conflicts: list[SchedulingConflict] = []
    blocked: set[int] = set()
    for s in sessions:
        if any(_overlaps(s, own) for own in own_sessions):
            blocked.add(s.id)
            conflicts.append(
                _conflict(
                    s.id,
                    "time_overlap",
                    "تعارض في الوقت مع جلسة أخرى",
                    "Time conflict with another session",
                )
            )
        elif not _within_availability(s, workload.limits):
            blocked.add(s.id)
            conflicts.append(
                _conflict(
                    s.id,
                    "outside_availability",
                    "الجلسة خارج أوقات توفر المعالج",
                    "Session is outside the therapist's availability",
                )
            )

    remaining = metrics.capacity_remaining_hours
    context = _CandidateContext(
        candidate=SubstitutionCandidate(
            therapist_id=therapist.id,
            therapist_name_ar=workload.full_name_ar,
            therapist_name_en=workload.full_name_en,
            availability_score=availability_score(metrics.utilization_percentage),
            compatibility_score=compatibility_score(len(overlap), matches),
            workload_impact=workload_impact_score(_peak_weekly_hours(sessions), remaining),
            specialties_match=matches,
            current_utilization=metrics.utilization_percentage,
            capacity_available=remaining,
            scheduling_conflicts=conflicts,
        ),
        remaining_hours=remaining,
        blocked_session_ids=blocked,
    )
    context.candidate.recommended_sessions = [s.id for s in _take_sessions(context, sessions)]
    return context


async def _rank_candidates(
    db: AsyncSession,
    request: SubstitutionRequest,
    original: Therapist,
    sessions: Sequence[ScheduledSession],
) -> list[_CandidateContext]:
    original_specialties = set(original.specialties or [])
    contexts: list[_CandidateContext] = []

    for therapist in await _load_substitute_pool(db, request.original_therapist_id):
        if request.require_same_specialty and not (
            original_specialties & set(therapist.specialties or [])
        ):
            continue
        try:
            contexts.append(
                await _evaluate_candidate(db, therapist, original_specialties, sessions)
            )
        except DataUnavailableError:
            logger.warning(
                "Skipping substitute candidate %s: workload unavailable",
                therapist.id,
                exc_info=True,
            )

    contexts.sort(key=lambda c: candidate_sort_key(c.candidate))
    return contexts[: get_settings().max_substitute_candidates]


async def find_substitutes(
    db: AsyncSession, request: SubstitutionRequest
) -> SubstitutionSearchResult:
    """Return ranked substitute candidates for an absent therapist.

    No affected sessions is not an error: the result is successful with an
    empty candidate list and an explanatory message.
    """

    try:
        original = await _load_therapist(db, request.original_therapist_id)
        if original is None:
            return SubstitutionSearchResult(
                success=False,
                message=f"Therapist {request.original_therapist_id} not found",
            )
        sessions = await _load_affected_sessions(db, request)
        if not sessions:
            return SubstitutionSearchResult(success=True, message=NO_SESSIONS_MESSAGE)
        contexts = await _rank_candidates(db, request, original, sessions)
    except SQLAlchemyError:
        logger.warning(
            "Substitute search failed for therapist %s",
            request.original_therapist_id,
            exc_info=True,
        )
        return SubstitutionSearchResult(
            success=False, message="Substitution data unavailable"
        )

    return SubstitutionSearchResult(
        success=True,
        candidates=[c.candidate for c in contexts],
        affected_session_ids=[s.id for s in sessions],
        message=None if contexts else "No eligible substitutes found",
    )


# ---------------------------------------------------------------------------
# Plan construction
# ---------------------------------------------------------------------------


def session_start(session: ScheduledSession) -> datetime:
    tz = ZoneInfo(get_settings().clinic_timezone)
    return datetime.combine(session.session_date, session.start_time, tzinfo=tz)


def _unassigned(session: ScheduledSession) -> UnassignedSession:
    return UnassignedSession(
        session_id=session.id,
        student_id=session.student_id,
        session_date=session.session_date,
        session_time=session.start_time.strftime("%H:%M"),
        reason_unassigned="No available substitute with matching availability",
        alternative_options=[
            AlternativeOption(
                option_type="online_session",
                description_ar="جلسة عبر الإنترنت",
                description_en="Online session",
                requirements=["internet_connection", "device_with_camera"],
            ),
            AlternativeOption(
                option_type="makeup_session",
                description_ar="جلسة تعويضية لاحقة",
                description_en="Makeup session later",
                requirements=["schedule_flexibility"],
            ),
        ],
    )


def build_notifications(
    assignments: Sequence[TherapistAssignment],
    sessions_by_id: dict[int, ScheduledSession],
    unassigned: Sequence[UnassignedSession],
    send_time: datetime,
) -> list[NotificationPlan]:
    """Plan notifications for substitutes, covered students and uncovered ones.

    Student notifications address the student's parent; the delivery worker
    resolves the parent contact from ``recipient_id``.
    """

    notifications: list[NotificationPlan] = []
    for a in assignments:
        count = len(a.assigned_sessions)
        notifications.append(
            NotificationPlan(
                recipient_type="therapist",
                recipient_id=a.substitute_therapist_id,
                notification_type="email",
                message_template_ar=f"تم تعيينك كبديل لـ {count} جلسات",
                message_template_en=f"You have been assigned as substitute for {count} sessions",
                send_time=send_time,
                priority="high",
                requires_confirmation=True,
            )
        )

    covered_students = sorted(
        {
            sessions_by_id[sid].student_id
            for a in assignments
            for sid in a.assigned_sessions
        }
    )
    for student_id in covered_students:
        notifications.append(
            NotificationPlan(
                recipient_type="parent",
                recipient_id=student_id,
                notification_type="whatsapp",
                message_template_ar="تم تغيير المعالج لبعض الجلسات القادمة",
                message_template_en="Therapist has been changed for some upcoming sessions",
                send_time=send_time,
                priority="medium",
            )
        )

    for u in unassigned:
        day = u.session_date.isoformat()
        notifications.append(
            NotificationPlan(
                recipient_type="parent",
                recipient_id=u.student_id,
                notification_type="whatsapp",
                message_template_ar=f"لم يتوفر معالج بديل لجلسة {day} الساعة {u.session_time}",
                message_template_en=(
                    f"No substitute therapist is available for the session on {day} at {u.session_time}"
                ),
                send_time=send_time,
                priority="high",
                requires_confirmation=True,
            )
        )
    return notifications


def build_rollback_plan(
    assignments: Sequence[TherapistAssignment],
    sessions_by_id: dict[int, ScheduledSession],
) -> RollbackPlan:
    """Undo steps (reversible) first, then the irreversible cancellation notice.

    The deadline is the start of the earliest covered session; a plan with no
    assignments has nothing to roll back.
    """

    if not assignments:
        return RollbackPlan(can_rollback=False, impact_assessment="No rollback needed")

    steps: list[RollbackStep] = []
    for a in assignments:
        steps.append(
            RollbackStep(
                step_number=len(steps) + 1,
                action=UNDO_ASSIGNMENT,
                action_ar="إلغاء تعيين البديل واستعادة المعالج الأصلي",
                action_en="Cancel substitute assignment and restore the original therapist",
                estimated_time_minutes=5,
                reversible=True,
                substitute_therapist_id=a.substitute_therapist_id,
            )
        )
    steps.append(
        RollbackStep(
            step_number=len(steps) + 1,
            action=NOTIFY_CANCELLATION,
            action_ar="إرسال إشعارات الإلغاء",
            action_en="Send cancellation notifications",
            estimated_time_minutes=5,
            reversible=False,
        )
    )

    covered = [sessions_by_id[sid] for a in assignments for sid in a.assigned_sessions]
    return RollbackPlan(
        can_rollback=True,
        rollback_deadline=min(session_start(s) for s in covered),
        rollback_steps=steps,
        impact_assessment="Minimal impact if executed before the first covered session",
        approval_required=len(assignments) > APPROVAL_REQUIRED_ASSIGNMENTS,
    )


def assemble_plan(
    request: SubstitutionRequest,
    sessions: Sequence[ScheduledSession],
    contexts: Sequence[_CandidateContext],
    *,
    plan_id: str,
    now: datetime,
) -> SubstitutionPlan:
    """Greedily cover ``sessions`` with ``contexts`` in the given order."""

    if not request.allow_split_assignments:
        contexts = contexts[:1]

    sessions_by_id = {s.id: s for s in sessions}
    covered: set[int] = set()
    assignments: list[TherapistAssignment] = []

    for context in contexts:
        if len(covered) == len(sessions):
            break
        taken = _take_sessions(context, sessions, exclude=covered)
        if not taken:
            continue
        covered.update(s.id for s in taken)
        candidate = context.candidate
        assignments.append(
            TherapistAssignment(
                substitute_therapist_id=candidate.therapist_id,
                substitute_name_ar=candidate.therapist_name_ar,
                substitute_name_en=candidate.therapist_name_en,
                assigned_sessions=[s.id for s in taken],
                capacity_impact=workload_impact_score(
                    _peak_weekly_hours(taken), context.remaining_hours
                ),
                requires_training=not candidate.specialties_match,
            )
        )

    unassigned = [_unassigned(s) for s in sessions if s.id not in covered]
    total = len(sessions)
    average_impact = (
        sum(a.capacity_impact for a in assignments) / len(assignments) if assignments else 0.0
    )

    return SubstitutionPlan(
        plan_id=plan_id,
        original_therapist_id=request.original_therapist_id,
        status=PlanStatus.DRAFT,
        start_date=request.start_date,
        end_date=request.end_date,
        reason=request.reason,
        total_sessions_affected=total,
        coverage_percentage=round(len(covered) / total * 100, 2) if total else 100.0,
        disruption_score=disruption_score(
            len(unassigned) / total if total else 0.0, average_impact
        ),
        assignments=assignments,
        unassigned_sessions=unassigned,
        notifications=build_notifications(assignments, sessions_by_id, unassigned, now),
        rollback_plan=build_rollback_plan(assignments, sessions_by_id),
        created_at=now,
    )


async def _selected_contexts(
    db: AsyncSession,
    original: Therapist,
    sessions: Sequence[ScheduledSession],
    selected_substitutes: Sequence[int],
) -> list[_CandidateContext]:
    """Evaluate pre-selected substitutes in the caller's order, without ranking."""

    original_specialties = set(original.specialties or [])
    contexts: list[_CandidateContext] = []
    for therapist_id in selected_substitutes:
        therapist = await _load_therapist(db, therapist_id)
        if therapist is None:
            raise DataUnavailableError(f"Substitute therapist {therapist_id} not found")
        contexts.append(
            await _evaluate_candidate(db, therapist, original_specialties, sessions)
        )
    return contexts


async def create_substitution_plan(
    db: AsyncSession,
    request: SubstitutionRequest,
    selected_substitutes: Sequence[int] | None = None,
    *,
    actor_id: int | None = None,
) -> SubstitutionPlanResponse:
    """Build and persist a draft substitution plan.

    Args:
        db: Async SQLAlchemy session.
        request: The absence to cover.
        selected_substitutes: Therapist ids to use, in order, instead of the
            automatic ranking.
        actor_id: Operator creating the plan, for the audit log.
    """

    try:
        original = await _load_therapist(db, request.original_therapist_id)
        if original is None:
            return SubstitutionPlanResponse(
                success=False,
                message=f"Therapist {request.original_therapist_id} not found",
            )
        sessions = await _load_affected_sessions(db, request)
        if not sessions:
            return SubstitutionPlanResponse(success=False, message=NO_SESSIONS_MESSAGE)
        if selected_substitutes:
            contexts = await _selected_contexts(db, original, sessions, selected_substitutes)
        else:
            contexts = await _rank_candidates(db, request, original, sessions)
    except (SQLAlchemyError, DataUnavailableError) as exc:
        logger.warning(
            "Substitution plan creation failed for therapist %s",
            request.original_therapist_id,
            exc_info=True,
        )
        message = str(exc) if isinstance(exc, DataUnavailableError) else "Substitution data unavailable"
        return SubstitutionPlanResponse(success=False, message=message)

    plan = assemble_plan(
        request, sessions, contexts, plan_id=str(uuid.uuid4()), now=clinic_now()
    )

    record = SubstitutionPlanRecord(
        plan_id=plan.plan_id,
        original_therapist_id=plan.original_therapist_id,
        status=PlanStatus.DRAFT,
        can_rollback=plan.rollback_plan.can_rollback,
        rollback_deadline=plan.rollback_plan.rollback_deadline,
        plan_data=plan.model_dump(mode="json"),
    )
    db.add(record)
    try:
        await log_plan_activity(
            db,
            plan.plan_id,
            AuditAction.PLAN_CREATED,
            {
                "original_therapist_id": plan.original_therapist_id,
                "sessions": plan.total_sessions_affected,
                "unassigned": len(plan.unassigned_sessions),
                "disruption_score": plan.disruption_score,
            },
            actor_id=actor_id,
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.warning("Failed to persist substitution plan %s", plan.plan_id, exc_info=True)
        return SubstitutionPlanResponse(
            success=False, message="Failed to persist substitution plan"
        )

    logger.info(
        "Substitution plan %s created: %s/%s sessions covered",
        plan.plan_id,
        plan.total_sessions_affected - len(plan.unassigned_sessions),
        plan.total_sessions_affected,
    )
    return SubstitutionPlanResponse(success=True, plan=plan)


# ---------------------------------------------------------------------------
# Lifecycle operations
# ---------------------------------------------------------------------------


def _plan_from_record(record: SubstitutionPlanRecord) -> SubstitutionPlan:
    plan = SubstitutionPlan.model_validate(record.plan_data)
    return plan.model_copy(update={"status": PlanStatus(record.status)})


async def get_substitution_plan(db: AsyncSession, plan_id: str) -> SubstitutionPlanResponse:
    record = await _load_plan_record(db, plan_id)
    if record is None:
        return SubstitutionPlanResponse(success=False, message=PLAN_NOT_FOUND)
    return SubstitutionPlanResponse(success=True, plan=_plan_from_record(record))


async def _simple_transition(
    db: AsyncSession,
    plan_id: str,
    target: PlanStatus,
    action: AuditAction,
    actor_id: int | None,
) -> SubstitutionPlanResponse:
    async with plan_lock(plan_id):
        record = await _load_plan_record(db, plan_id)
        if record is None:
            return SubstitutionPlanResponse(success=False, message=PLAN_NOT_FOUND)
        # A failed transition rolls back and expires ``record``.
        snapshot = _plan_from_record(record)
        current = snapshot.status
        try:
            await transition_plan(db, plan_id, current, target, commit=False)
            await log_plan_activity(
                db,
                plan_id,
                action,
                {"from": current.value, "to": target.value},
                actor_id=actor_id,
            )
            await db.commit()
        except InvalidPlanTransitionError as exc:
            return SubstitutionPlanResponse(success=False, plan=snapshot, message=str(exc))
        plan = snapshot.model_copy(update={"status": target})
        return SubstitutionPlanResponse(success=True, plan=plan)


async def approve_substitution_plan(
    db: AsyncSession, plan_id: str, *, actor_id: int | None = None
) -> SubstitutionPlanResponse:
    """Move a draft plan to ``approved``."""
    return await _simple_transition(
        db, plan_id, PlanStatus.APPROVED, AuditAction.PLAN_APPROVED, actor_id
    )


async def cancel_substitution_plan(
    db: AsyncSession, plan_id: str, *, actor_id: int | None = None
) -> SubstitutionPlanResponse:
    """Discard a draft plan."""
    return await _simple_transition(
        db, plan_id, PlanStatus.CANCELLED, AuditAction.PLAN_CANCELLED, actor_id
    )


async def _apply_assignment(
    db: AsyncSession, plan: SubstitutionPlan, assignment: TherapistAssignment
) -> None:
    """Reassign one substitute's sessions as a single unit of work."""

    stmt = (
        update(ScheduledSession)
        .where(
            ScheduledSession.id.in_(assignment.assigned_sessions),
            ScheduledSession.therapist_id == plan.original_therapist_id,
            ScheduledSession.status == SessionStatus.SCHEDULED,
        )
        .values(therapist_id=assignment.substitute_therapist_id)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        await db.rollback()
        raise SessionReassignmentError(
            "Sessions are no longer assigned to the original therapist"
        )
    await db.commit()


async def _undo_assignment(
    db: AsyncSession, plan: SubstitutionPlan, substitute_therapist_id: int
) -> None:
    assigned = [
        sid
        for a in plan.assignments
        if a.substitute_therapist_id == substitute_therapist_id
        for sid in a.assigned_sessions
    ]
    stmt = (
        update(ScheduledSession)
        .where(
            ScheduledSession.id.in_(assigned),
            ScheduledSession.therapist_id == substitute_therapist_id,
        )
        .values(therapist_id=plan.original_therapist_id)
    )
    await db.execute(stmt)
    await db.commit()


async def execute_substitution_plan(
    db: AsyncSession,
    plan_id: str,
    *,
    skip_notifications: bool = False,
    dispatcher: NotificationDispatcher | None = None,
    actor_id: int | None = None,
) -> ExecutionResult:
    """Apply an approved plan.

    Each substitute's assignment commits on its own; a failing assignment is
    recorded and the remaining ones still run. The plan ends ``completed``
    when every assignment applied, ``partial`` when some did and ``failed``
    when none did. Execution from any status but ``approved`` is rejected
    before anything is written.
    """

    async with plan_lock(plan_id):
        record = await _load_plan_record(db, plan_id)
        if record is None:
            return ExecutionResult(success=False, plan_id=plan_id, message=PLAN_NOT_FOUND)

        # Failed assignments roll back, which expires ``record``; read it once.
        plan = _plan_from_record(record)
        can_rollback = record.can_rollback
        current = plan.status
        try:
            await transition_plan(db, plan_id, current, PlanStatus.IN_PROGRESS)
        except InvalidPlanTransitionError as exc:
            return ExecutionResult(
                success=False, plan_id=plan_id, status=current, message=str(exc)
            )

        completed: list[int] = []
        failed: list[FailedItem] = []
        for assignment in plan.assignments:
            therapist_id = assignment.substitute_therapist_id
            try:
                await _apply_assignment(db, plan, assignment)
            except (SQLAlchemyError, SessionReassignmentError) as exc:
                await db.rollback()
                logger.warning(
                    "Plan %s: assignment to therapist %s failed",
                    plan_id,
                    therapist_id,
                    exc_info=True,
                )
                failed.append(FailedItem(therapist_id=therapist_id, reason=str(exc)))
                continue
            completed.append(therapist_id)

        sent: list[int] = []
        notifications_failed: list[FailedNotification] = []
        if not skip_notifications:
            dispatcher = dispatcher or OutboxNotificationDispatcher()
            failed_ids = {f.therapist_id for f in failed}
            for notification in plan.notifications:
                if (
                    notification.recipient_type == "therapist"
                    and notification.recipient_id in failed_ids
                ):
                    continue
                try:
                    await dispatcher.dispatch(db, plan_id, notification)
                except SQLAlchemyError as exc:
                    notifications_failed.append(
                        FailedNotification(
                            recipient_id=notification.recipient_id, reason=str(exc)
                        )
                    )
                    continue
                sent.append(notification.recipient_id)

        if not failed:
            final = PlanStatus.COMPLETED
        elif completed:
            final = PlanStatus.PARTIAL
        else:
            final = PlanStatus.FAILED

        rollback_available = can_rollback and bool(completed)
        await transition_plan(
            db,
            plan_id,
            PlanStatus.IN_PROGRESS,
            final,
            values={"can_rollback": rollback_available},
            commit=False,
        )
        await log_plan_activity(
            db,
            plan_id,
            AuditAction.PLAN_EXECUTED,
            {
                "status": final.value,
                "assignments_completed": completed,
                "assignments_failed": [f.model_dump() for f in failed],
                "notifications_sent": len(sent),
            },
            actor_id=actor_id,
        )
        await db.commit()

        return ExecutionResult(
            success=final != PlanStatus.FAILED,
            plan_id=plan_id,
            status=final,
            assignments_completed=completed,
            assignments_failed=failed,
            notifications_sent=sent,
            notifications_failed=notifications_failed,
            rollback_available=rollback_available,
        )


def _cancellation_notice(
    substitute_therapist_id: int, reason: str, send_time: datetime
) -> NotificationPlan:
    return NotificationPlan(
        recipient_type="therapist",
        recipient_id=substitute_therapist_id,
        notification_type="email",
        message_template_ar=f"تم إلغاء التعيين البديل: {reason}",
        message_template_en=f"Substitute assignment cancelled: {reason}",
        send_time=send_time,
        priority="high",
    )


async def rollback_substitution(
    db: AsyncSession,
    plan_id: str,
    reason: str,
    *,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
    actor_id: int | None = None,
) -> RollbackResult:
    """Reverse a plan while it is still allowed.

    Rejections (not rollback-able, deadline passed, wrong status) write
    nothing. Otherwise steps run in order: a failing reversible step is
    recorded and the next one still runs; a failing irreversible step stops
    the rollback. ``final_status`` is ``complete`` only if no step failed.
    """

    async with plan_lock(plan_id):
        record = await _load_plan_record(db, plan_id)
        if record is None:
            return RollbackResult(success=False, plan_id=plan_id, message=PLAN_NOT_FOUND)

        prior = PlanStatus(record.status)
        if prior not in ROLLBACK_SOURCES:
            return RollbackResult(
                success=False,
                plan_id=plan_id,
                message=f"Substitution plan cannot be rolled back from status '{prior}'",
            )
        if not record.can_rollback:
            return RollbackResult(
                success=False,
                plan_id=plan_id,
                message="Substitution plan cannot be rolled back",
            )
        now = now or clinic_now()
        if record.rollback_deadline is None or now >= record.rollback_deadline:
            return RollbackResult(
                success=False,
                plan_id=plan_id,
                message="Rollback deadline has passed",
            )

        plan = _plan_from_record(record)
        applied = prior != PlanStatus.APPROVED
        dispatcher = dispatcher or OutboxNotificationDispatcher()
        steps_completed: list[int] = []
        steps_failed: list[FailedStep] = []
        sent: list[int] = []

        for step in plan.rollback_plan.rollback_steps:
            if not applied:
                # Nothing was written or sent before execution.
                steps_completed.append(step.step_number)
                continue
            try:
                if step.action == UNDO_ASSIGNMENT:
                    await _undo_assignment(db, plan, step.substitute_therapist_id)
                elif step.action == NOTIFY_CANCELLATION:
                    for a in plan.assignments:
                        await dispatcher.dispatch(
                            db,
                            plan_id,
                            _cancellation_notice(a.substitute_therapist_id, reason, now),
                        )
                        sent.append(a.substitute_therapist_id)
                    await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.warning(
                    "Plan %s: rollback step %s failed", plan_id, step.step_number, exc_info=True
                )
                steps_failed.append(FailedStep(step_number=step.step_number, reason=str(exc)))
                if not step.reversible:
                    break
                continue
            steps_completed.append(step.step_number)

        final_status = "partial" if steps_failed else "complete"
        await transition_plan(
            db,
            plan_id,
            prior,
            PlanStatus.ROLLED_BACK,
            reason=reason,
            values={"can_rollback": False},
            commit=False,
        )
        await log_plan_activity(
            db,
            plan_id,
            AuditAction.PLAN_ROLLED_BACK,
            {
                "reason": reason,
                "final_status": final_status,
                "steps_failed": [s.model_dump() for s in steps_failed],
            },
            actor_id=actor_id,
        )
        await db.commit()

        if steps_failed:
            logger.warning(
                "Plan %s rolled back partially; manual reconciliation required", plan_id
            )
        return RollbackResult(
            success=True,
            plan_id=plan_id,
            steps_completed=steps_completed,
            steps_failed=steps_failed,
            notifications_sent=sent,
            final_status=final_status,
        )


async def list_active_substitution_plans(db: AsyncSession) -> list[ActiveSubstitution]:
    """Return approved and in-progress plans, newest first."""

    stmt = (
        select(SubstitutionPlanRecord)
        .where(
            SubstitutionPlanRecord.status.in_(
                [PlanStatus.APPROVED, PlanStatus.IN_PROGRESS]
            )
        )
        .order_by(SubstitutionPlanRecord.created_at.desc())
    )
    records = (await db.execute(stmt)).scalars().all()
    active: list[ActiveSubstitution] = []
    for record in records:
        plan = _plan_from_record(record)
        active.append(
            ActiveSubstitution(
                plan_id=record.plan_id,
                original_therapist_id=record.original_therapist_id,
                status=PlanStatus(record.status),
                start_date=plan.start_date,
                end_date=plan.end_date,
                rollback_deadline=record.rollback_deadline,
                can_rollback=record.can_rollback,
            )
        )
    return active
