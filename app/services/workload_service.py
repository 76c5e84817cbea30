from __future__ import annotations

"""Therapist workload calculation.

Workload is always derived from the persisted sessions and enrollments of a
therapist; nothing here is cached between calls. :func:`compute_workload` is a
pure function over a read-only snapshot so it can be tested without a
database, and :func:`load_workload_snapshot` is the only place that reads.
"""

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.logging import logger
from app.models.enrollment import Enrollment, EnrollmentStatus
from app.models.scheduled_session import ScheduledSession, SessionStatus
from app.models.therapist import Therapist
from app.schemas.workload import (
    BulkWorkloadItem,
    BulkWorkloadResult,
    BulkWorkloadSummary,
    CapacityLimits,
    TherapistWorkload,
    WorkloadMetrics,
)
from app.services.engine_errors import DataUnavailableError
from core.settings import get_settings


def clinic_now() -> datetime:
    """Return the current time in the clinic timezone."""
    return datetime.now(ZoneInfo(get_settings().clinic_timezone))


def clinic_today() -> date:
    return clinic_now().date()


def week_bounds(as_of: date) -> tuple[date, date]:
    """Return Monday and Sunday of the ISO week containing ``as_of``."""
    monday = as_of - timedelta(days=as_of.weekday())
    return monday, monday + timedelta(days=6)


def month_bounds(as_of: date) -> tuple[date, date]:
    first = as_of.replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return first, next_first - timedelta(days=1)


def capacity_limits(therapist: object) -> CapacityLimits:
    """Return the capacity configuration of ``therapist`` or the defaults."""
    capacity = getattr(therapist, "capacity", None)
    if capacity is None:
        return CapacityLimits()
    return CapacityLimits.model_validate(capacity)


def _is_counted(session: ScheduledSession) -> bool:
    return session.status != SessionStatus.CANCELLED


def _active_student_ids(enrollments: Iterable[Enrollment]) -> list[int]:
    ids = {e.student_id for e in enrollments if e.status == EnrollmentStatus.ACTIVE}
    return sorted(ids)


def compute_workload(
    therapist_id: int,
    limits: CapacityLimits,
    sessions: Sequence[ScheduledSession],
    enrollments: Sequence[Enrollment],
    as_of: date,
) -> WorkloadMetrics:
    """Aggregate a therapist's workload for the week and month of ``as_of``.

    Args:
        therapist_id: Therapist the snapshot belongs to.
        limits: Capacity configuration used for utilization.
        sessions: Sessions of the therapist; anything outside the month or
            week window of ``as_of`` and cancelled sessions are ignored.
        enrollments: Enrollments assigned to the therapist; only active ones
            count towards the caseload.
        as_of: Reference date.

    Returns:
        WorkloadMetrics with weekly hours including documentation and travel.
    """

    settings = get_settings()
    week_start, week_end = week_bounds(as_of)
    month_start, month_end = month_bounds(as_of)

    counted = [s for s in sessions if _is_counted(s)]
    week_sessions = [s for s in counted if week_start <= s.session_date <= week_end]
    month_sessions = [s for s in counted if month_start <= s.session_date <= month_end]

    student_ids = _active_student_ids(enrollments)
    sessions_per_week = len(week_sessions)

    direct_hours = sum(s.duration_minutes for s in week_sessions) / 60
    documentation_hours = (
        sessions_per_week * settings.documentation_minutes_per_session / 60
    )
    travel_time_hours = len(student_ids) * settings.travel_minutes_per_student / 60
    weekly_hours = direct_hours + documentation_hours + travel_time_hours

    monthly_hours = (
        sum(s.duration_minutes for s in month_sessions) / 60
        + len(month_sessions) * settings.documentation_minutes_per_session / 60
    )

    working_days = max(settings.working_days_per_week, 1)
    per_day = Counter(s.session_date for s in week_sessions)

    if limits.max_weekly_hours > 0:
        utilization = weekly_hours / limits.max_weekly_hours * 100
    else:
        utilization = 100.0 if weekly_hours > 0 else 0.0

    return WorkloadMetrics(
        therapist_id=therapist_id,
        as_of=as_of,
        weekly_hours=round(weekly_hours, 2),
        daily_hours_avg=round(weekly_hours / working_days, 2),
        active_students=len(student_ids),
        utilization_percentage=round(utilization, 2),
        sessions_per_week=sessions_per_week,
        sessions_per_day_avg=round(sessions_per_week / working_days, 2),
        peak_sessions_per_day=max(per_day.values(), default=0),
        documentation_hours=round(documentation_hours, 2),
        travel_time_hours=round(travel_time_hours, 2),
        direct_hours=round(direct_hours, 2),
        monthly_hours=round(monthly_hours, 2),
        capacity_remaining_hours=round(max(limits.max_weekly_hours - weekly_hours, 0.0), 2),
        student_ids=student_ids,
    )


async def _load_therapist(db: AsyncSession, therapist_id: int) -> Therapist | None:
    stmt = (
        select(Therapist)
        .options(selectinload(Therapist.capacity))
        .where(Therapist.id == therapist_id)
    )
    return (await db.execute(stmt)).scalars().first()


async def _load_sessions(
    db: AsyncSession, therapist_id: int, start: date, end: date
) -> list[ScheduledSession]:
    stmt = select(ScheduledSession).where(
        ScheduledSession.therapist_id == therapist_id,
        ScheduledSession.session_date >= start,
        ScheduledSession.session_date <= end,
        ScheduledSession.status != SessionStatus.CANCELLED,
    )
    return list((await db.execute(stmt)).scalars().all())


async def _load_active_enrollments(
    db: AsyncSession, therapist_id: int
) -> list[Enrollment]:
    stmt = select(Enrollment).where(
        Enrollment.assigned_therapist_id == therapist_id,
        Enrollment.status == EnrollmentStatus.ACTIVE,
    )
    return list((await db.execute(stmt)).scalars().all())


async def load_workload_snapshot(
    db: AsyncSession, therapist_id: int, as_of: date | None = None
) -> TherapistWorkload:
    """Read a therapist with its sessions and enrollments and compute workload.

    Raises:
        DataUnavailableError: When the therapist does not exist or any read
            fails. Callers must not fall back to a zero workload.
    """

    as_of = as_of or clinic_today()
    week_start, week_end = week_bounds(as_of)
    month_start, month_end = month_bounds(as_of)

    try:
        therapist = await _load_therapist(db, therapist_id)
        if therapist is None:
            raise DataUnavailableError(f"Therapist {therapist_id} not found")
        sessions = await _load_sessions(
            db,
            therapist_id,
            min(week_start, month_start),
            max(week_end, month_end),
        )
        enrollments = await _load_active_enrollments(db, therapist_id)
    except SQLAlchemyError as exc:
        logger.warning(
            "Workload read failed for therapist %s", therapist_id, exc_info=True
        )
        raise DataUnavailableError(
            f"Workload data unavailable for therapist {therapist_id}",
            technical_detail=str(exc),
        ) from exc

    limits = capacity_limits(therapist)
    metrics = compute_workload(therapist_id, limits, sessions, enrollments, as_of)
    return TherapistWorkload(
        therapist_id=therapist_id,
        full_name_ar=therapist.full_name_ar,
        full_name_en=therapist.full_name_en,
        specialties=list(therapist.specialties or []),
        limits=limits,
        metrics=metrics,
    )


async def calculate_workload(
    db: AsyncSession, therapist_id: int, as_of: date | None = None
) -> WorkloadMetrics:
    """Return the current workload metrics of a therapist.

    Raises:
        DataUnavailableError: See :func:`load_workload_snapshot`.
    """
    snapshot = await load_workload_snapshot(db, therapist_id, as_of)
    return snapshot.metrics


async def calculate_bulk_workloads(
    db: AsyncSession, therapist_ids: Sequence[int], as_of: date | None = None
) -> BulkWorkloadResult:
    """Compute workloads for many therapists, reporting failures per id."""

    results: list[BulkWorkloadItem] = []
    for therapist_id in therapist_ids:
        try:
            snapshot = await load_workload_snapshot(db, therapist_id, as_of)
        except DataUnavailableError as exc:
            results.append(
                BulkWorkloadItem(
                    therapist_id=therapist_id, success=False, error_message=str(exc)
                )
            )
            continue
        results.append(
            BulkWorkloadItem(
                therapist_id=therapist_id, success=True, workload=snapshot.metrics
            )
        )

    workloads = [r.workload for r in results if r.workload is not None]
    average = (
        sum(w.utilization_percentage for w in workloads) / len(workloads)
        if workloads
        else 0.0
    )
    summary = BulkWorkloadSummary(
        total_processed=len(results),
        successful=len(workloads),
        failed=len(results) - len(workloads),
        average_utilization=round(average, 2),
        over_capacity_count=sum(1 for w in workloads if w.utilization_percentage > 100),
    )
    return BulkWorkloadResult(results=results, summary=summary)
