from __future__ import annotations

"""Capacity validation for single therapist assignments.

A request is projected onto the therapist's current workload and checked
against five limits: weekly hours, daily hours, concurrent students, sessions
per day and specialty coverage. Exceeding a limit is critical; landing within
90-100% of it is a warning. Invalid requests get a ranked list of alternative
therapists that pass the same checks.
"""

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.logging import logger
from app.models.therapist import Therapist
from app.schemas.capacity import (
    AlternativeAssignment,
    AssignmentRequest,
    CapacityImpact,
    CapacityRecommendation,
    CapacityValidationResponse,
    CapacityValidationResult,
    ImplementationStep,
    OverAssignmentCheck,
    RiskLevel,
    Severity,
    ValidationIssue,
)
from app.schemas.workload import TherapistWorkload
from app.services.engine_errors import DataUnavailableError
from app.services.workload_service import load_workload_snapshot
from core.settings import get_settings


WARNING_RATIO = 0.9
REDISTRIBUTION_THRESHOLD = 85.0

# Weights of the alternative-therapist compatibility score (sum to 100).
SPECIALTY_OVERLAP_WEIGHT = 60.0
HEADROOM_WEIGHT = 40.0

DAILY_CONSTRAINTS = frozenset({"max_daily_hours", "max_sessions_per_day"})


def risk_level_for(utilization: float) -> RiskLevel:
    if utilization >= 95:
        return RiskLevel.CRITICAL
    if utilization >= 85:
        return RiskLevel.HIGH
    if utilization >= 70:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass(frozen=True)
class _Limit:
    constraint: str
    error_code: str
    message_ar: str
    message_en: str
    warning_ar: str
    warning_en: str


_WEEKLY = _Limit(
    "max_weekly_hours",
    "WEEKLY_HOURS_EXCEEDED",
    "تجاوز الحد الأقصى للساعات الأسبوعية",
    "Weekly hours limit exceeded",
    "الاقتراب من الحد الأقصى للساعات الأسبوعية",
    "Approaching weekly hours limit",
)
_DAILY = _Limit(
    "max_daily_hours",
    "DAILY_HOURS_EXCEEDED",
    "تجاوز الحد الأقصى للساعات اليومية",
    "Daily hours limit exceeded",
    "الاقتراب من الحد الأقصى للساعات اليومية",
    "Approaching daily hours limit",
)
_STUDENTS = _Limit(
    "max_concurrent_students",
    "CONCURRENT_STUDENTS_EXCEEDED",
    "تجاوز الحد الأقصى للطلاب المتزامنين",
    "Maximum concurrent students exceeded",
    "الاقتراب من الحد الأقصى للطلاب المتزامنين",
    "Approaching maximum concurrent students",
)
_SESSIONS = _Limit(
    "max_sessions_per_day",
    "DAILY_SESSIONS_EXCEEDED",
    "تجاوز الحد الأقصى للجلسات اليومية",
    "Maximum sessions per day exceeded",
    "الاقتراب من الحد الأقصى للجلسات اليومية",
    "Approaching maximum sessions per day",
)


def _check_limit(limit: _Limit, value: float, maximum: float) -> ValidationIssue | None:
    """Return a finding for ``value`` against ``maximum`` or ``None`` when clear."""

    if value > maximum:
        severity = Severity.CRITICAL
        message_ar, message_en = limit.message_ar, limit.message_en
        code = limit.error_code
    elif maximum > 0 and value >= maximum * WARNING_RATIO:
        severity = Severity.WARNING
        message_ar, message_en = limit.warning_ar, limit.warning_en
        code = limit.error_code.replace("EXCEEDED", "NEAR_LIMIT")
    else:
        return None

    return ValidationIssue(
        error_code=code,
        severity=severity,
        message_ar=message_ar,
        message_en=message_en,
        affected_constraint=limit.constraint,
        current_value=round(value, 2),
        maximum_allowed=maximum,
    )


@dataclass
class AssignmentEvaluation:
    issues: list[ValidationIssue]
    impact: CapacityImpact
    projected_weekly_hours: float

    @property
    def is_valid(self) -> bool:
        return not any(i.severity == Severity.CRITICAL for i in self.issues)

    @property
    def has_warnings(self) -> bool:
        return any(i.severity == Severity.WARNING for i in self.issues)


def evaluate_assignment(
    workload: TherapistWorkload, request: AssignmentRequest
) -> AssignmentEvaluation:
    """Project ``request`` onto ``workload`` and check every capacity limit.

    Pure; performs no reads. Non-positive session parameters produce a
    critical ``INVALID_SESSION_PARAMETERS`` finding and contribute no hours.
    """

    settings = get_settings()
    limits = workload.limits
    metrics = workload.metrics
    issues: list[ValidationIssue] = []

    params_valid = request.sessions_per_week > 0 and request.session_duration_minutes > 0
    if not params_valid:
        issues.append(
            ValidationIssue(
                error_code="INVALID_SESSION_PARAMETERS",
                severity=Severity.CRITICAL,
                message_ar="عدد الجلسات ومدتها يجب أن تكون أكبر من صفر",
                message_en="Sessions per week and session duration must be greater than zero",
                affected_constraint="sessions_per_week"
                if request.sessions_per_week <= 0
                else "session_duration_minutes",
                current_value=min(
                    request.sessions_per_week, request.session_duration_minutes
                ),
                maximum_allowed=0,
            )
        )

    sessions = request.sessions_per_week if params_valid else 0
    session_hours = request.session_duration_minutes / 60 if params_valid else 0.0
    working_days = max(settings.working_days_per_week, 1)

    added_weekly = sessions * session_hours
    added_per_day = sessions / working_days
    is_new_student = request.student_id not in metrics.student_ids

    projected_weekly = metrics.weekly_hours + added_weekly
    projected_daily = metrics.daily_hours_avg + added_per_day * session_hours
    projected_students = metrics.active_students + (1 if is_new_student else 0)
    projected_sessions_per_day = metrics.sessions_per_day_avg + added_per_day

    for limit, value, maximum in (
        (_WEEKLY, projected_weekly, limits.max_weekly_hours),
        (_DAILY, projected_daily, limits.max_daily_hours),
        (_STUDENTS, projected_students, limits.max_concurrent_students),
        (_SESSIONS, projected_sessions_per_day, limits.max_sessions_per_day),
    ):
        issue = _check_limit(limit, value, maximum)
        if issue is not None:
            issues.append(issue)

    required = set(limits.specialty_requirements) | set(request.required_specialties)
    missing = required - set(workload.specialties)
    if missing:
        issues.append(
            ValidationIssue(
                error_code="SPECIALTY_MISMATCH",
                severity=Severity.CRITICAL,
                message_ar="المعالج لا يملك التخصصات المطلوبة: " + ", ".join(sorted(missing)),
                message_en="Therapist lacks required specialties: " + ", ".join(sorted(missing)),
                affected_constraint="specialty_requirements",
                current_value=len(missing),
                maximum_allowed=0,
            )
        )

    if limits.max_weekly_hours > 0:
        projected_utilization = projected_weekly / limits.max_weekly_hours * 100
    else:
        projected_utilization = 100.0 if projected_weekly > 0 else 0.0

    impact = CapacityImpact(
        current_utilization=metrics.utilization_percentage,
        projected_utilization=round(projected_utilization, 2),
        capacity_remaining=round(max(limits.max_weekly_hours - projected_weekly, 0.0), 2),
        risk_level=risk_level_for(projected_utilization),
    )
    return AssignmentEvaluation(
        issues=issues, impact=impact, projected_weekly_hours=round(projected_weekly, 2)
    )


def compatibility_for(
    candidate_specialties: Iterable[str],
    reference_specialties: Iterable[str],
    projected_utilization: float,
) -> float:
    """Score an alternative therapist on specialty overlap and headroom (0..100)."""

    reference = set(reference_specialties)
    if reference:
        overlap = len(reference & set(candidate_specialties)) / len(reference)
    else:
        overlap = 1.0
    headroom = min(max(100.0 - projected_utilization, 0.0), 100.0) / 100
    return round(SPECIALTY_OVERLAP_WEIGHT * overlap + HEADROOM_WEIGHT * headroom, 2)


async def _load_active_therapists(db: AsyncSession) -> list[Therapist]:
    """Load active therapists. Extracted for easier monkeypatching in tests."""
    stmt = (
        select(Therapist)
        .options(selectinload(Therapist.capacity))
        .where(Therapist.is_active.is_(True))
        .order_by(Therapist.id)
    )
    return list((await db.execute(stmt)).scalars().all())


async def find_alternative_assignments(
    db: AsyncSession,
    request: AssignmentRequest,
    *,
    reference_specialties: Iterable[str] = (),
) -> list[AlternativeAssignment]:
    """Return other active therapists that pass validation for ``request``.

    Candidates must share at least one of ``reference_specialties`` (the
    request's required specialties, or the original therapist's) unless that
    set is empty. Each candidate is evaluated directly, so the search never
    recurses. Warning-level candidates rank below clean ones.
    """

    reference = set(request.required_specialties) or set(reference_specialties)
    alternatives: list[AlternativeAssignment] = []

    for therapist in await _load_active_therapists(db):
        if therapist.id == request.therapist_id:
            continue
        if reference and not reference & set(therapist.specialties or []):
            continue

        try:
            workload = await load_workload_snapshot(db, therapist.id)
        except DataUnavailableError:
            logger.warning(
                "Skipping alternative therapist %s: workload unavailable",
                therapist.id,
                exc_info=True,
            )
            continue

        candidate_request = request.model_copy(update={"therapist_id": therapist.id})
        evaluation = evaluate_assignment(workload, candidate_request)
        if not evaluation.is_valid:
            continue

        projected = evaluation.impact.projected_utilization
        alternatives.append(
            AlternativeAssignment(
                therapist_id=therapist.id,
                therapist_name_ar=workload.full_name_ar,
                therapist_name_en=workload.full_name_en,
                compatibility_score=compatibility_for(
                    workload.specialties, reference, projected
                ),
                capacity_utilization=workload.metrics.utilization_percentage,
                projected_utilization=projected,
                schedule_flexibility=round(
                    max(100.0 - workload.metrics.utilization_percentage, 0.0), 2
                ),
                has_warnings=evaluation.has_warnings,
                recommended_time_slots=list(request.preferred_time_slots),
                adjustment_requirements=[
                    i.error_code for i in evaluation.issues if i.severity == Severity.WARNING
                ],
            )
        )

    alternatives.sort(key=lambda a: (a.has_warnings, -a.compatibility_score, a.therapist_id))
    return alternatives[: get_settings().max_alternatives]


def build_recommendations(
    evaluation: AssignmentEvaluation,
    alternatives: list[AlternativeAssignment],
    *,
    alternatives_searched: bool,
) -> list[CapacityRecommendation]:
    recommendations: list[CapacityRecommendation] = []

    if evaluation.impact.projected_utilization >= REDISTRIBUTION_THRESHOLD:
        recommendations.append(
            CapacityRecommendation(
                type="workload_redistribution",
                priority=1,
                description_ar="إعادة توزيع عبء العمل على معالجين آخرين",
                description_en="Redistribute workload to other therapists",
                implementation_steps=[
                    ImplementationStep(
                        step_number=1,
                        action_ar="تحديد المعالجين ذوي الطاقة الاستيعابية المتاحة",
                        action_en="Identify therapists with available capacity",
                        estimated_time_minutes=15,
                    ),
                    ImplementationStep(
                        step_number=2,
                        action_ar="نقل بعض الطلاب إلى معالجين أقل انشغالاً",
                        action_en="Move some students to less-loaded therapists",
                        estimated_time_minutes=30,
                        requires_approval=True,
                    ),
                ],
                expected_impact=20,
            )
        )

    daily_failure = any(
        i.severity == Severity.CRITICAL and i.affected_constraint in DAILY_CONSTRAINTS
        for i in evaluation.issues
    )
    if daily_failure:
        recommendations.append(
            CapacityRecommendation(
                type="schedule_adjustment",
                priority=2,
                description_ar="توزيع الجلسات على أيام أقل ازدحاماً",
                description_en="Spread sessions across less busy days",
                implementation_steps=[
                    ImplementationStep(
                        step_number=1,
                        action_ar="مراجعة الجدول اليومي للمعالج",
                        action_en="Review the therapist's daily schedule",
                        estimated_time_minutes=20,
                    )
                ],
                expected_impact=10,
            )
        )

    if alternatives_searched and not evaluation.is_valid and not alternatives:
        recommendations.append(
            CapacityRecommendation(
                type="capacity_expansion",
                priority=3,
                description_ar="توسيع الطاقة الاستيعابية لاستيعاب التعيين",
                description_en="Expand capacity to accommodate the assignment",
                implementation_steps=[
                    ImplementationStep(
                        step_number=1,
                        action_ar="تقييم الحاجة إلى معالجين إضافيين",
                        action_en="Assess the need for additional therapists",
                        estimated_time_minutes=60,
                        requires_approval=True,
                    )
                ],
                expected_impact=30,
            )
        )

    return recommendations


async def validate_assignment(
    db: AsyncSession,
    request: AssignmentRequest,
    *,
    include_alternatives: bool = True,
) -> CapacityValidationResponse:
    """Validate a single assignment request against therapist capacity.

    Business-rule violations are reported through ``result.is_valid`` and
    ``result.validation_errors``. A workload read failure yields
    ``success=False`` without a result.
    """

    try:
        workload = await load_workload_snapshot(db, request.therapist_id)
    except DataUnavailableError as exc:
        logger.warning(
            "Capacity validation aborted for therapist %s: %s",
            request.therapist_id,
            exc,
        )
        return CapacityValidationResponse(success=False, message=str(exc))

    evaluation = evaluate_assignment(workload, request)

    alternatives: list[AlternativeAssignment] = []
    searched = False
    if not evaluation.is_valid and include_alternatives:
        alternatives = await find_alternative_assignments(
            db, request, reference_specialties=workload.specialties
        )
        searched = True

    result = CapacityValidationResult(
        is_valid=evaluation.is_valid,
        validation_errors=evaluation.issues,
        capacity_impact=evaluation.impact,
        recommendations=build_recommendations(
            evaluation, alternatives, alternatives_searched=searched
        ),
        alternative_assignments=alternatives,
    )
    return CapacityValidationResponse(success=True, result=result)


async def prevent_over_assignment(
    db: AsyncSession, request: AssignmentRequest
) -> OverAssignmentCheck:
    """Decide whether an assignment may be made at all.

    Blocks on any critical finding and also on a critical projected risk
    level, even when every individual limit still passes.
    """

    response = await validate_assignment(db, request)
    if not response.success or response.result is None:
        return OverAssignmentCheck(allowed=False, prevention_reason=response.message)

    result = response.result
    critical = [e for e in result.validation_errors if e.severity == Severity.CRITICAL]
    if critical:
        return OverAssignmentCheck(
            allowed=False,
            prevention_reason="; ".join(e.message_en for e in critical),
            alternatives=result.alternative_assignments,
        )

    if result.capacity_impact.risk_level == RiskLevel.CRITICAL:
        return OverAssignmentCheck(
            allowed=False,
            prevention_reason="Assignment would push therapist utilization to a critical level",
            alternatives=await find_alternative_assignments(db, request),
        )

    return OverAssignmentCheck(allowed=True)
