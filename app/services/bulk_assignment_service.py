from __future__ import annotations

import time
from typing import Callable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import logger
from app.models.enrollment import Enrollment, EnrollmentStatus
from app.schemas.capacity import (
    AlternativeAssignment,
    AssignmentRequest,
    BulkAssignmentResult,
    CapacityImpactSummary,
    CapacityRecommendation,
    CapacityValidationResult,
    FailedAssignment,
    ImplementationStep,
    NotProcessedAssignment,
    OptimizationStrategy,
    OptimizationSummary,
    PriorityLevel,
    RiskLevel,
    Severity,
    SuccessfulAssignment,
)
from app.services.activity_log_service import AuditAction, log_activity
from app.services.capacity_service import validate_assignment


PRIORITY_WEIGHT: dict[PriorityLevel, int] = {
    PriorityLevel.HIGH: 3,
    PriorityLevel.MEDIUM: 2,
    PriorityLevel.LOW: 1,
}


def order_requests(requests: Sequence[AssignmentRequest]) -> list[AssignmentRequest]:
    """Sort by priority, highest first. Ties keep their input order."""
    return sorted(requests, key=lambda r: -PRIORITY_WEIGHT[r.priority_level])


def _strategy_key(strategy: OptimizationStrategy) -> Callable[[AlternativeAssignment], tuple]:
    if strategy == OptimizationStrategy.MAXIMIZE_COMPATIBILITY:
        return lambda a: (a.has_warnings, -a.compatibility_score, a.therapist_id)
    if strategy == OptimizationStrategy.MINIMIZE_WORKLOAD_VARIANCE:
        return lambda a: (a.has_warnings, a.projected_utilization, a.therapist_id)
    if strategy == OptimizationStrategy.OPTIMIZE_UTILIZATION:
        return lambda a: (a.has_warnings, -a.projected_utilization, a.therapist_id)
    return lambda a: (
        a.has_warnings,
        -(0.5 * a.compatibility_score + 0.5 * (100 - a.projected_utilization)),
        a.therapist_id,
    )


def rank_alternatives(
    alternatives: Sequence[AlternativeAssignment], strategy: OptimizationStrategy
) -> list[AlternativeAssignment]:
    """Order alternatives for the single fallback attempt of a bulk run."""
    return sorted(alternatives, key=_strategy_key(strategy))


async def _persist_assignment(
    db: AsyncSession, request: AssignmentRequest, therapist_id: int
) -> int:
    """Assign the student's enrollment to ``therapist_id`` and audit it.

    Updates the active enrollment for the same student and program when one
    exists, otherwise creates it. Enrollment and audit row commit together.

    Returns:
        The enrollment id.
    """

    stmt = select(Enrollment).where(
        Enrollment.student_id == request.student_id,
        Enrollment.program_template_id == request.program_template_id,
        Enrollment.status == EnrollmentStatus.ACTIVE,
    )
    enrollment = (await db.execute(stmt)).scalars().first()
    if enrollment is None:
        enrollment = Enrollment(
            student_id=request.student_id,
            program_template_id=request.program_template_id,
            status=EnrollmentStatus.ACTIVE,
        )
        db.add(enrollment)

    enrollment.assigned_therapist_id = therapist_id
    enrollment.frequency_per_week = request.sessions_per_week
    enrollment.session_duration_minutes = request.session_duration_minutes
    enrollment.start_date = request.start_date
    enrollment.end_date = request.end_date

    try:
        await db.flush()
        await log_activity(
            db,
            actor_id=None,
            action=AuditAction.ASSIGNMENT_CREATED,
            target_type="enrollment",
            target_id=enrollment.id,
            details={
                "student_id": request.student_id,
                "therapist_id": therapist_id,
                "requested_therapist_id": request.therapist_id,
                "sessions_per_week": request.sessions_per_week,
                "session_duration_minutes": request.session_duration_minutes,
            },
            commit=False,
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise
    return enrollment.id


class _ImpactTracker:
    """Collects capacity impact of the validations a bulk run performed."""

    def __init__(self) -> None:
        self.changes: list[float] = []
        self.at_capacity: set[int] = set()
        self.warnings = 0

    def record(self, therapist_id: int, result: CapacityValidationResult) -> None:
        impact = result.capacity_impact
        self.changes.append(impact.projected_utilization - impact.current_utilization)
        self.warnings += sum(
            1 for e in result.validation_errors if e.severity == Severity.WARNING
        )
        if result.is_valid and impact.risk_level == RiskLevel.CRITICAL:
            self.at_capacity.add(therapist_id)

    def summary(self) -> CapacityImpactSummary:
        average = sum(self.changes) / len(self.changes) if self.changes else 0.0
        return CapacityImpactSummary(
            average_utilization_change=round(average, 2),
            peak_utilization_change=round(max(self.changes, default=0.0), 2),
            therapists_at_capacity=sorted(self.at_capacity),
            warnings_generated=self.warnings,
        )


async def process_bulk_assignments(
    db: AsyncSession,
    requests: Sequence[AssignmentRequest],
    *,
    strategy: OptimizationStrategy = OptimizationStrategy.BALANCE_ALL,
    allow_partial: bool = True,
    max_seconds: float = 30.0,
    clock: Callable[[], float] = time.monotonic,
) -> BulkAssignmentResult:
    """Validate and persist many assignment requests in priority order.

    The elapsed time is checked before each request; once ``max_seconds`` is
    reached the remaining requests are returned as ``not_processed``. Already
    committed assignments stay committed. A rejected request gets one attempt
    with the top alternative (ranked by ``strategy``) when ``allow_partial``.

    Args:
        db: Async SQLAlchemy session, used sequentially.
        requests: Assignment requests in submission order.
        strategy: How alternatives are ranked before the fallback attempt.
        allow_partial: Whether the fallback attempt is made.
        max_seconds: Wall-clock budget for the whole run.
        clock: Monotonic clock, injectable for tests.
    """

    ordered = order_requests(requests)
    successful: list[SuccessfulAssignment] = []
    failed: list[FailedAssignment] = []
    not_processed: list[NotProcessedAssignment] = []
    tracker = _ImpactTracker()
    attempted = 0
    timed_out = False
    started = clock()

    for index, request in enumerate(ordered):
        if clock() - started >= max_seconds:
            timed_out = True
            not_processed = [
                NotProcessedAssignment(student_id=r.student_id, therapist_id=r.therapist_id)
                for r in ordered[index:]
            ]
            logger.warning(
                "Bulk assignment stopped after %s of %s requests: time budget of %ss exceeded",
                attempted,
                len(ordered),
                max_seconds,
            )
            break

        attempted += 1
        response = await validate_assignment(db, request)
        if not response.success or response.result is None:
            failed.append(
                FailedAssignment(
                    student_id=request.student_id,
                    therapist_id=request.therapist_id,
                    reason=response.message or "Validation unavailable",
                )
            )
            continue

        result = response.result
        tracker.record(request.therapist_id, result)

        if result.is_valid:
            outcome = await _try_persist(db, request, request.therapist_id)
            if isinstance(outcome, int):
                successful.append(
                    SuccessfulAssignment(
                        student_id=request.student_id,
                        therapist_id=request.therapist_id,
                        enrollment_id=outcome,
                    )
                )
            else:
                failed.append(
                    FailedAssignment(
                        student_id=request.student_id,
                        therapist_id=request.therapist_id,
                        reason=outcome,
                    )
                )
            continue

        reason = "; ".join(
            e.message_en for e in result.validation_errors if e.severity == Severity.CRITICAL
        )

        if allow_partial and result.alternative_assignments:
            top = rank_alternatives(result.alternative_assignments, strategy)[0]
            alt_request = request.model_copy(update={"therapist_id": top.therapist_id})
            alt_response = await validate_assignment(
                db, alt_request, include_alternatives=False
            )
            if alt_response.success and alt_response.result is not None:
                tracker.record(top.therapist_id, alt_response.result)
            if alt_response.success and alt_response.result and alt_response.result.is_valid:
                outcome = await _try_persist(db, request, top.therapist_id)
                if isinstance(outcome, int):
                    successful.append(
                        SuccessfulAssignment(
                            student_id=request.student_id,
                            therapist_id=top.therapist_id,
                            enrollment_id=outcome,
                            used_alternative=True,
                        )
                    )
                    continue
                reason = f"{reason}; {outcome}"
            else:
                reason = f"{reason}; alternative therapist {top.therapist_id} also failed validation"

        failed.append(
            FailedAssignment(
                student_id=request.student_id,
                therapist_id=request.therapist_id,
                reason=reason,
                alternative_options=result.alternative_assignments,
            )
        )

    elapsed = clock() - started
    summary = OptimizationSummary(
        total_requested=len(ordered),
        total_processed=attempted,
        successful_count=len(successful),
        failed_count=len(failed),
        not_processed_count=len(not_processed),
        optimization_score=round(len(successful) / attempted * 100, 2) if attempted else 0.0,
        processing_time_seconds=round(elapsed, 3),
        timed_out=timed_out,
    )

    return BulkAssignmentResult(
        successful_assignments=successful,
        failed_assignments=failed,
        not_processed=not_processed,
        optimization_summary=summary,
        capacity_impact_summary=tracker.summary(),
        recommendations=_bulk_recommendations(failed, not_processed),
    )


async def _try_persist(
    db: AsyncSession, request: AssignmentRequest, therapist_id: int
) -> int | str:
    """Persist one assignment; return the enrollment id or a failure reason."""
    try:
        return await _persist_assignment(db, request, therapist_id)
    except SQLAlchemyError:
        logger.warning(
            "Failed to persist assignment of student %s to therapist %s",
            request.student_id,
            therapist_id,
            exc_info=True,
        )
        return "Failed to persist assignment"


def _bulk_recommendations(
    failed: Sequence[FailedAssignment], not_processed: Sequence[NotProcessedAssignment]
) -> list[CapacityRecommendation]:
    recommendations: list[CapacityRecommendation] = []
    if failed:
        recommendations.append(
            CapacityRecommendation(
                type="capacity_expansion",
                priority=1,
                description_ar="توسيع الطاقة الاستيعابية لاستيعاب المهام الفاشلة",
                description_en="Expand capacity to accommodate failed assignments",
                implementation_steps=[
                    ImplementationStep(
                        step_number=1,
                        action_ar="تحليل أسباب فشل التعيينات",
                        action_en="Analyze reasons for assignment failures",
                        estimated_time_minutes=30,
                    )
                ],
                expected_impact=len(failed),
            )
        )
    if not_processed:
        recommendations.append(
            CapacityRecommendation(
                type="priority_rebalancing",
                priority=2,
                description_ar="إعادة إرسال الطلبات غير المعالجة في دفعة منفصلة",
                description_en="Resubmit unprocessed requests in a separate batch",
                implementation_steps=[
                    ImplementationStep(
                        step_number=1,
                        action_ar="زيادة المهلة الزمنية أو تقسيم الدفعة",
                        action_en="Increase the time budget or split the batch",
                        estimated_time_minutes=5,
                    )
                ],
                expected_impact=len(not_processed),
            )
        )
    return recommendations
