from __future__ import annotations

"""Impact analysis for proposed changes to an active enrollment.

Given a :class:`ModificationRequest`, the analyzer loads the enrollment and
its upcoming sessions and reports affected sessions, per-horizon disruption,
cost implications, therapist workload shifts, schedule adjustments, room
reallocations, who must be notified and what to do about it. The analysis
never writes.
"""

import math
import uuid
from collections import defaultdict
from datetime import date, timedelta
from typing import Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import logger
from app.models.enrollment import Enrollment
from app.models.room import TherapyRoom
from app.models.scheduled_session import ScheduledSession, SessionStatus
from app.schemas.modification import (
    AffectedSession,
    CostImplications,
    HorizonImpact,
    ImpactAnalysisResponse,
    ImpactAnalysisResult,
    ImpactSeverity,
    ModificationRecommendations,
    ModificationRequest,
    ModificationType,
    ModificationValidation,
    ResourceReallocation,
    ScheduleAdjustment,
    TherapistImpact,
    TimeSlotRef,
    TimelineImpact,
)
from app.services.workload_service import clinic_today
from core.settings import get_settings


HORIZON_DAYS: dict[str, int] = {"immediate": 7, "short_term": 30, "long_term": 90}
SCOPE_DAYS: dict[str, int] = {**HORIZON_DAYS, "all": 90}

IMPACT_WEIGHTS: dict[ModificationType, float] = {
    ModificationType.SERVICE_TYPE_CHANGE: 1.0,
    ModificationType.THERAPIST_CHANGE: 0.9,
    ModificationType.FREQUENCY_CHANGE: 0.8,
    ModificationType.DURATION_CHANGE: 0.6,
    ModificationType.LOCATION_CHANGE: 0.4,
}
HIGH_WEIGHT_THRESHOLD = 1.5
MEDIUM_WEIGHT_THRESHOLD = 0.8

# Per-horizon thresholds: disruption fraction or affected session count.
HIGH_DISRUPTION, HIGH_SESSIONS = 0.5, 30
MEDIUM_DISRUPTION, MEDIUM_SESSIONS = 0.3, 15

WEEKS_PER_MONTH = 4


def _bilingual(ar: str, en: str) -> str:
    return f"{ar} / {en}"


def normalize_scope(scope: str | None) -> str:
    """Unknown scopes are analyzed as ``all``."""
    return scope if scope in SCOPE_DAYS else "all"


def validate_modification_request(
    request: ModificationRequest, now: date | None = None
) -> ModificationValidation:
    """Check a request and return every problem found, not just the first."""

    today = now or clinic_today()
    types = set(request.modification_types)
    changes = request.proposed_changes
    errors: list[str] = []

    if not request.enrollment_id:
        errors.append(_bilingual("رقم التسجيل مطلوب", "Enrollment ID is required"))
    if not types:
        errors.append(_bilingual("نوع التعديل مطلوب", "Modification type is required"))
    if request.effective_date is None:
        errors.append(_bilingual("تاريخ التنفيذ مطلوب", "Effective date is required"))
    elif request.effective_date <= today:
        errors.append(
            _bilingual(
                "تاريخ التنفيذ يجب أن يكون في المستقبل",
                "Effective date must be in the future",
            )
        )

    if ModificationType.FREQUENCY_CHANGE in types and not (
        changes.new_frequency and changes.new_frequency > 0
    ):
        errors.append(
            _bilingual(
                "التكرار الجديد مطلوب ويجب أن يكون أكبر من صفر",
                "New frequency is required and must be greater than zero",
            )
        )
    if ModificationType.DURATION_CHANGE in types and not (
        changes.new_duration and changes.new_duration > 0
    ):
        errors.append(
            _bilingual(
                "المدة الجديدة مطلوبة ويجب أن تكون أكبر من صفر",
                "New duration is required and must be greater than zero",
            )
        )
    if ModificationType.THERAPIST_CHANGE in types and changes.new_therapist_id is None:
        errors.append(_bilingual("معرف المعالج الجديد مطلوب", "New therapist ID is required"))

    return ModificationValidation(valid=not errors, errors=errors)


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


async def _load_enrollment(db: AsyncSession, enrollment_id: int) -> Enrollment | None:
    return await db.get(Enrollment, enrollment_id)


async def _load_enrollment_sessions(
    db: AsyncSession, enrollment_id: int, start: date, end: date
) -> list[ScheduledSession]:
    stmt = (
        select(ScheduledSession)
        .where(
            ScheduledSession.enrollment_id == enrollment_id,
            ScheduledSession.session_date >= start,
            ScheduledSession.session_date <= end,
            ScheduledSession.status != SessionStatus.CANCELLED,
        )
        .order_by(ScheduledSession.session_date, ScheduledSession.start_time)
    )
    return list((await db.execute(stmt)).scalars().all())


async def _count_upcoming_sessions(db: AsyncSession, therapist_id: int, start: date) -> int:
    stmt = select(func.count(ScheduledSession.id)).where(
        ScheduledSession.therapist_id == therapist_id,
        ScheduledSession.session_date >= start,
        ScheduledSession.status == SessionStatus.SCHEDULED,
    )
    return int((await db.execute(stmt)).scalar_one() or 0)


async def _load_room(db: AsyncSession, room_id: int) -> TherapyRoom | None:
    return await db.get(TherapyRoom, room_id)


async def _load_alternative_rooms(db: AsyncSession, room: TherapyRoom) -> list[int]:
    stmt = (
        select(TherapyRoom.id)
        .where(
            TherapyRoom.room_type == room.room_type,
            TherapyRoom.capacity >= room.capacity,
            TherapyRoom.is_active.is_(True),
            TherapyRoom.id != room.id,
        )
        .order_by(TherapyRoom.id)
    )
    return list((await db.execute(stmt)).scalars().all())


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def overall_severity(types: Iterable[ModificationType]) -> tuple[ImpactSeverity, float]:
    """Return severity and the weighted sum it was derived from."""
    weighted = round(sum(IMPACT_WEIGHTS[t] for t in set(types)), 2)
    if weighted >= HIGH_WEIGHT_THRESHOLD:
        return ImpactSeverity.HIGH, weighted
    if weighted >= MEDIUM_WEIGHT_THRESHOLD:
        return ImpactSeverity.MEDIUM, weighted
    return ImpactSeverity.LOW, weighted


def _is_affected(session: ScheduledSession, types: set[ModificationType]) -> bool:
    if types & {
        ModificationType.FREQUENCY_CHANGE,
        ModificationType.DURATION_CHANGE,
        ModificationType.SERVICE_TYPE_CHANGE,
    }:
        return True
    if ModificationType.THERAPIST_CHANGE in types and session.therapist_id is not None:
        return True
    return ModificationType.LOCATION_CHANGE in types and session.room_id is not None


def horizon_severity(disruption: float, affected: int) -> ImpactSeverity:
    if disruption >= HIGH_DISRUPTION or affected >= HIGH_SESSIONS:
        return ImpactSeverity.HIGH
    if disruption >= MEDIUM_DISRUPTION or affected >= MEDIUM_SESSIONS:
        return ImpactSeverity.MEDIUM
    return ImpactSeverity.LOW


def _horizon(
    name: str,
    sessions: Sequence[ScheduledSession],
    types: set[ModificationType],
    effective: date,
) -> HorizonImpact:
    days = HORIZON_DAYS[name]
    end = effective + timedelta(days=days)
    in_window = [s for s in sessions if effective <= s.session_date <= end]
    affected = sum(1 for s in in_window if _is_affected(s, types))
    disruption = affected / len(in_window) if in_window else 0.0
    hours = sum(IMPACT_WEIGHTS[t] for t in types) * len(in_window) * 0.5
    return HorizonImpact(
        horizon=name,
        days=days,
        session_count=len(in_window),
        affected_session_count=affected,
        schedule_disruption_percentage=round(disruption, 4),
        overall_severity=horizon_severity(disruption, affected),
        estimated_adjustment_hours=math.ceil(hours),
    )


def calculate_costs(
    enrollment: Enrollment,
    request: ModificationRequest,
    affected_count: int,
    scope_days: int,
) -> CostImplications:
    """Estimate the monthly cost effect of the change.

    Frequency changes are priced per session over four weeks. Duration
    changes are prorated from the hourly rate over the affected sessions, or
    over the sessions expected in the scope when none are scheduled yet.
    """

    settings = get_settings()
    types = set(request.modification_types)
    changes = request.proposed_changes
    rate = float(enrollment.session_rate or settings.default_session_rate)
    additional = 0.0
    savings = 0.0

    if ModificationType.FREQUENCY_CHANGE in types and changes.new_frequency:
        diff = changes.new_frequency - enrollment.frequency_per_week
        amount = abs(diff) * rate * WEEKS_PER_MONTH
        if diff > 0:
            additional += amount
        elif diff < 0:
            savings += amount

    current_duration = enrollment.session_duration_minutes
    if (
        ModificationType.DURATION_CHANGE in types
        and changes.new_duration
        and current_duration > 0
    ):
        diff_minutes = changes.new_duration - current_duration
        hourly = rate / (current_duration / 60)
        sessions = affected_count or enrollment.frequency_per_week * math.ceil(scope_days / 7)
        amount = abs(diff_minutes) / 60 * hourly * sessions
        if diff_minutes > 0:
            additional += amount
        elif diff_minutes < 0:
            savings += amount

    if ModificationType.THERAPIST_CHANGE in types:
        additional += settings.therapist_change_fee

    return CostImplications(
        additional_costs=round(additional, 2),
        cost_savings=round(savings, 2),
        net_impact=round(additional - savings, 2),
    )


def _frequency_plan(
    sessions: Sequence[ScheduledSession],
    new_frequency: int,
    effective: date,
    end: date,
) -> tuple[list[int], int]:
    """Return excess session ids and the number of missing sessions per week.

    Within each ISO week the earliest ``new_frequency`` sessions are kept.
    """

    per_week: dict[tuple[int, int], list[ScheduledSession]] = defaultdict(list)
    for s in sessions:
        iso = s.session_date.isocalendar()
        per_week[(iso[0], iso[1])].append(s)

    excess: list[int] = []
    deficit = 0
    monday = effective - timedelta(days=effective.weekday())
    while monday <= end:
        iso = monday.isocalendar()
        week = per_week.get((iso[0], iso[1]), [])
        excess.extend(s.id for s in week[new_frequency:])
        deficit += max(new_frequency - len(week), 0)
        monday += timedelta(days=7)
    return excess, deficit


def _severity_by_delta(delta: float, medium: float, high: float) -> ImpactSeverity:
    if delta > high:
        return ImpactSeverity.HIGH
    if delta > medium:
        return ImpactSeverity.MEDIUM
    return ImpactSeverity.LOW


def build_schedule_adjustments(
    enrollment: Enrollment,
    request: ModificationRequest,
    sessions: Sequence[ScheduledSession],
    effective: date,
    end: date,
) -> list[ScheduleAdjustment]:
    changes = request.proposed_changes
    ids = [s.id for s in sessions]
    count = len(sessions)
    adjustments: list[ScheduleAdjustment] = []

    for kind in dict.fromkeys(request.modification_types):
        if kind == ModificationType.FREQUENCY_CHANGE and changes.new_frequency:
            current = enrollment.frequency_per_week
            delta = abs(changes.new_frequency - current)
            if delta == 0:
                continue
            excess, deficit = _frequency_plan(sessions, changes.new_frequency, effective, end)
            adjustments.append(
                ScheduleAdjustment(
                    adjustment_type=kind,
                    original_value=str(current),
                    new_value=str(changes.new_frequency),
                    affected_session_ids=ids,
                    implementation_date=effective,
                    estimated_completion_hours=delta * 2,
                    requires_approval=delta > 1,
                    impact_severity=_severity_by_delta(delta, 1, 2),
                    excess_session_ids=excess,
                    deficit_session_count=deficit,
                )
            )
        elif kind == ModificationType.DURATION_CHANGE and changes.new_duration:
            current = enrollment.session_duration_minutes
            delta = abs(changes.new_duration - current)
            if delta == 0:
                continue
            adjustments.append(
                ScheduleAdjustment(
                    adjustment_type=kind,
                    original_value=str(current),
                    new_value=str(changes.new_duration),
                    affected_session_ids=ids,
                    implementation_date=effective,
                    estimated_completion_hours=count * 0.5,
                    requires_approval=delta > 30,
                    impact_severity=_severity_by_delta(delta, 30, 60),
                )
            )
        elif kind == ModificationType.THERAPIST_CHANGE and changes.new_therapist_id:
            adjustments.append(
                ScheduleAdjustment(
                    adjustment_type=kind,
                    original_value=str(enrollment.assigned_therapist_id or ""),
                    new_value=str(changes.new_therapist_id),
                    affected_session_ids=ids,
                    implementation_date=effective,
                    estimated_completion_hours=count * 1.0,
                    requires_approval=True,
                    impact_severity=ImpactSeverity.HIGH,
                )
            )
        elif kind == ModificationType.LOCATION_CHANGE and changes.new_location_id:
            adjustments.append(
                ScheduleAdjustment(
                    adjustment_type=kind,
                    original_value=str(enrollment.preferred_room_id or ""),
                    new_value=str(changes.new_location_id),
                    affected_session_ids=ids,
                    implementation_date=effective,
                    estimated_completion_hours=count * 0.25,
                    requires_approval=count > 20,
                    impact_severity=_severity_by_delta(count, 10, 25),
                )
            )
        elif kind == ModificationType.SERVICE_TYPE_CHANGE and changes.new_service_types:
            adjustments.append(
                ScheduleAdjustment(
                    adjustment_type=kind,
                    original_value=",".join(enrollment.service_types or []),
                    new_value=",".join(changes.new_service_types),
                    affected_session_ids=ids,
                    implementation_date=effective,
                    estimated_completion_hours=count * 1.5,
                    requires_approval=True,
                    impact_severity=ImpactSeverity.HIGH,
                )
            )
    return adjustments


def _workload_severity(change: int, current: int) -> ImpactSeverity:
    if current > 0:
        share = abs(change) / current
    else:
        share = 1.0 if change else 0.0
    if share > 0.3:
        return ImpactSeverity.HIGH
    if share > 0.15:
        return ImpactSeverity.MEDIUM
    return ImpactSeverity.LOW


async def _therapist_impacts(
    db: AsyncSession,
    enrollment: Enrollment,
    request: ModificationRequest,
    sessions: Sequence[ScheduledSession],
    today: date,
) -> list[TherapistImpact]:
    """Workload shift for the outgoing and incoming therapist(s)."""

    new_id = request.proposed_changes.new_therapist_id
    if ModificationType.THERAPIST_CHANGE not in request.modification_types or new_id is None:
        return []

    outgoing = {s.therapist_id for s in sessions if s.therapist_id is not None}
    if enrollment.assigned_therapist_id is not None:
        outgoing.add(enrollment.assigned_therapist_id)
    outgoing.discard(new_id)

    impacts: list[TherapistImpact] = []
    for therapist_id, role in [*((t, "outgoing") for t in sorted(outgoing)), (new_id, "incoming")]:
        owned = [s for s in sessions if s.therapist_id == therapist_id]
        change = -len(owned) if role == "outgoing" else len(sessions) - len(owned)
        current = await _count_upcoming_sessions(db, therapist_id, today)
        impacts.append(
            TherapistImpact(
                therapist_id=therapist_id,
                role=role,
                current_workload=current,
                workload_change=change,
                new_projected_workload=current + change,
                impact_severity=_workload_severity(change, current),
                adjustment_required=change != 0,
                affected_time_slots=[
                    TimeSlotRef(
                        session_date=s.session_date,
                        start_time=s.start_time,
                        end_time=s.end_time,
                    )
                    for s in (owned if role == "outgoing" else sessions)
                ],
            )
        )
    return impacts


async def _room_reallocations(
    db: AsyncSession,
    request: ModificationRequest,
    sessions: Sequence[ScheduledSession],
) -> list[ResourceReallocation]:
    if ModificationType.LOCATION_CHANGE not in request.modification_types:
        return []

    per_room: dict[int, int] = defaultdict(int)
    for s in sessions:
        if s.room_id is not None:
            per_room[s.room_id] += 1

    reallocations: list[ResourceReallocation] = []
    for room_id in sorted(per_room):
        room = await _load_room(db, room_id)
        if room is None:
            continue
        count = per_room[room_id]
        if count >= 10:
            severity = ImpactSeverity.HIGH
        elif count >= 5:
            severity = ImpactSeverity.MEDIUM
        else:
            severity = ImpactSeverity.LOW
        reallocations.append(
            ResourceReallocation(
                resource_type="room",
                resource_id=room_id,
                current_allocation=count,
                required_reallocation=count,
                impact_severity=severity,
                alternative_resources=await _load_alternative_rooms(db, room),
                reallocation_timeline_hours=2,
            )
        )
    return reallocations


def stakeholder_notifications(
    request: ModificationRequest,
    severity: ImpactSeverity,
    therapist_impacts: Sequence[TherapistImpact],
    affected_count: int,
) -> list[str]:
    types = set(request.modification_types)
    recipients = ["student_parent"]
    if therapist_impacts or ModificationType.THERAPIST_CHANGE in types:
        recipients.append("affected_therapists")
    if ModificationType.SERVICE_TYPE_CHANGE in types or severity == ImpactSeverity.HIGH:
        recipients.append("therapy_managers")
    if severity == ImpactSeverity.HIGH:
        recipients.append("administration")
    if affected_count > 5 or ModificationType.FREQUENCY_CHANGE in types:
        recipients.append("billing_department")
    return list(dict.fromkeys(recipients))


def build_recommendations(
    request: ModificationRequest,
    severity: ImpactSeverity,
    timeline: TimelineImpact,
    therapist_impacts: Sequence[TherapistImpact],
    reallocations: Sequence[ResourceReallocation],
    costs: CostImplications,
) -> ModificationRecommendations:
    immediate = timeline.immediate
    if (
        severity == ImpactSeverity.HIGH
        or immediate.overall_severity == ImpactSeverity.HIGH
        or any(t.impact_severity == ImpactSeverity.HIGH for t in therapist_impacts)
        or any(r.impact_severity == ImpactSeverity.HIGH for r in reallocations)
    ):
        priority = ImpactSeverity.HIGH
    elif (
        severity == ImpactSeverity.MEDIUM
        or immediate.overall_severity == ImpactSeverity.MEDIUM
        or any(t.impact_severity == ImpactSeverity.MEDIUM for t in therapist_impacts)
    ):
        priority = ImpactSeverity.MEDIUM
    else:
        priority = ImpactSeverity.LOW

    actions = [
        _bilingual(
            "إشعار ولي الأمر بالتغيير قبل تاريخ التنفيذ",
            "Inform the student's parent before the effective date",
        )
    ]
    if immediate.affected_session_count > 10:
        actions.append(
            _bilingual(
                "إشعار جميع الأطراف المعنية قبل 48 ساعة على الأقل من التغيير",
                "Notify all stakeholders at least 48 hours before the change",
            )
        )
    if therapist_impacts:
        actions.append(
            _bilingual(
                "مراجعة أعباء العمل للمعالجين المتأثرين",
                "Review workload for affected therapists",
            )
        )
    if reallocations:
        actions.append(
            _bilingual("التأكد من توفر الموارد البديلة", "Ensure alternative resources are available")
        )

    alternatives: list[str] = []
    if request.include_alternatives or priority == ImpactSeverity.HIGH:
        alternatives.append(
            _bilingual(
                "تنفيذ التغيير على مراحل لتقليل التأثير",
                "Implement change in phases to reduce impact",
            )
        )
        alternatives.append(
            _bilingual("تأجيل التنفيذ لفترة أقل ازدحاماً", "Delay implementation to a less busy period")
        )

    risks: list[str] = []
    if immediate.schedule_disruption_percentage > 0.3:
        risks.append(
            _bilingual(
                "اضطراب كبير في الجدولة قد يؤثر على جودة الخدمة",
                "Major schedule disruption may affect service quality",
            )
        )
    if costs.net_impact > 1000:
        risks.append(_bilingual("تأثير مالي كبير على التكاليف", "Significant financial impact on costs"))
    if ModificationType.THERAPIST_CHANGE in request.modification_types:
        risks.append(
            _bilingual(
                "قد تتأثر استمرارية الرعاية أثناء انتقال المعالج",
                "Continuity of care may be affected during the therapist transition",
            )
        )

    return ModificationRecommendations(
        priority=priority, actions=actions, alternatives=alternatives, risks=risks
    )


async def analyze_modification_impact(
    db: AsyncSession, request: ModificationRequest, *, now: date | None = None
) -> ImpactAnalysisResponse:
    """Analyze the consequences of ``request`` without changing anything.

    Callers are expected to run :func:`validate_modification_request` first;
    a missing effective date is analyzed from today. Unknown enrollments and
    read failures come back as ``success=False`` with an ``error`` so batch
    callers can keep going. The timeline always covers all three horizons
    whatever the scope.
    """

    today = now or clinic_today()
    types = set(request.modification_types)
    scope = normalize_scope(request.analysis_scope)
    effective = request.effective_date or today
    scope_end = effective + timedelta(days=SCOPE_DAYS[scope])
    horizon_end = effective + timedelta(days=max(HORIZON_DAYS.values()))

    try:
        enrollment = (
            await _load_enrollment(db, request.enrollment_id)
            if request.enrollment_id
            else None
        )
        if enrollment is None:
            return ImpactAnalysisResponse(success=False, error="Enrollment not found")
        all_sessions = await _load_enrollment_sessions(db, enrollment.id, effective, horizon_end)
        in_scope = [s for s in all_sessions if s.session_date <= scope_end]
        affected = [s for s in in_scope if _is_affected(s, types)]
        therapist_impacts = await _therapist_impacts(db, enrollment, request, affected, today)
        reallocations = await _room_reallocations(db, request, affected)
    except SQLAlchemyError:
        logger.warning(
            "Modification impact analysis failed for enrollment %s",
            request.enrollment_id,
            exc_info=True,
        )
        return ImpactAnalysisResponse(success=False, error="Enrollment data unavailable")

    severity, weighted = overall_severity(types)
    timeline = TimelineImpact(
        **{name: _horizon(name, all_sessions, types, effective) for name in HORIZON_DAYS}
    )
    costs = calculate_costs(enrollment, request, len(affected), SCOPE_DAYS[scope])

    result = ImpactAnalysisResult(
        modification_id=str(uuid.uuid4()),
        enrollment_id=enrollment.id,
        modification_types=list(dict.fromkeys(request.modification_types)),
        analysis_scope=scope,
        overall_severity=severity,
        weighted_impact=weighted,
        affected_sessions=[
            AffectedSession(
                session_id=s.id,
                session_date=s.session_date,
                start_time=s.start_time,
                end_time=s.end_time,
                therapist_id=s.therapist_id,
                room_id=s.room_id,
                status=str(s.status),
            )
            for s in affected
        ],
        affected_therapist_count=len({t.therapist_id for t in therapist_impacts}),
        cost_implications=costs,
        timeline_impact=timeline,
        therapist_impacts=therapist_impacts,
        schedule_adjustments=build_schedule_adjustments(
            enrollment, request, affected, effective, scope_end
        ),
        resource_reallocations=reallocations,
        stakeholder_notifications_required=stakeholder_notifications(
            request, severity, therapist_impacts, len(affected)
        ),
        recommendations=build_recommendations(
            request, severity, timeline, therapist_impacts, reallocations, costs
        ),
    )
    return ImpactAnalysisResponse(success=True, data=result)
