from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from app.models.enrollment import EnrollmentStatus
from app.models.scheduled_session import SessionStatus
from app.schemas.workload import CapacityLimits
from app.services import workload_service
from app.services.engine_errors import DataUnavailableError
from app.services.workload_service import (
    calculate_bulk_workloads,
    capacity_limits,
    compute_workload,
    load_workload_snapshot,
    month_bounds,
    week_bounds,
)
from tests.utils.factories import make_enrollment, make_session, make_therapist, make_workload


AS_OF = date(2026, 10, 14)  # Wednesday


def test_week_and_month_bounds():
    assert week_bounds(AS_OF) == (date(2026, 10, 12), date(2026, 10, 18))
    assert month_bounds(AS_OF) == (date(2026, 10, 1), date(2026, 10, 31))
    assert month_bounds(date(2026, 12, 5)) == (date(2026, 12, 1), date(2026, 12, 31))


def test_compute_workload_aggregates_week_and_month():
    sessions = [
        make_session(1, date(2026, 10, 12), "09:00", "10:00"),
        make_session(2, date(2026, 10, 13), "09:00", "10:00"),
        make_session(3, date(2026, 10, 14), "09:00", "10:00", status=SessionStatus.CANCELLED),
        make_session(4, date(2026, 10, 20), "09:00", "09:45"),
    ]
    enrollments = [
        make_enrollment(1, student_id=10),
        make_enrollment(2, student_id=11),
        make_enrollment(3, student_id=12, status=EnrollmentStatus.PAUSED),
    ]

    metrics = compute_workload(1, CapacityLimits(), sessions, enrollments, AS_OF)

    # 2h direct + 2 x 15 min documentation + 2 students x 15 min travel
    assert metrics.direct_hours == 2.0
    assert metrics.documentation_hours == 0.5
    assert metrics.travel_time_hours == 0.5
    assert metrics.weekly_hours == 3.0
    assert metrics.utilization_percentage == 7.5
    assert metrics.sessions_per_week == 2
    assert metrics.peak_sessions_per_day == 1
    assert metrics.active_students == 2
    assert metrics.student_ids == [10, 11]
    assert metrics.monthly_hours == 3.5
    assert metrics.capacity_remaining_hours == 37.0
    assert metrics.daily_hours_avg == 0.6


def test_compute_workload_with_zero_weekly_maximum_is_fully_utilized():
    sessions = [make_session(1, AS_OF)]
    metrics = compute_workload(
        1, CapacityLimits(max_weekly_hours=0), sessions, [], AS_OF
    )
    assert metrics.utilization_percentage == 100.0
    assert metrics.capacity_remaining_hours == 0.0


def test_capacity_limits_defaults_without_capacity_row():
    limits = capacity_limits(make_therapist(capacity=None))
    assert limits.max_weekly_hours == 40
    assert limits.max_concurrent_students == 25


def test_capacity_limits_reads_capacity_row():
    row = SimpleNamespace(
        max_daily_hours=6,
        max_weekly_hours=30,
        max_monthly_hours=120,
        max_concurrent_students=12,
        max_sessions_per_day=6,
        required_break_minutes=10,
        max_consecutive_hours=3,
        specialty_requirements=["speech"],
        availability_windows=[{"day_of_week": 0, "start_time": "08:00", "end_time": "14:00"}],
    )
    limits = capacity_limits(make_therapist(capacity=row))
    assert limits.max_weekly_hours == 30
    assert limits.availability_windows[0].day_of_week == 0


@pytest.mark.asyncio
async def test_load_workload_snapshot_missing_therapist(monkeypatch):
    monkeypatch.setattr(
        "app.services.workload_service._load_therapist", AsyncMock(return_value=None)
    )

    with pytest.raises(DataUnavailableError):
        await load_workload_snapshot(AsyncMock(), 99, AS_OF)


@pytest.mark.asyncio
async def test_load_workload_snapshot_read_failure_is_data_unavailable(monkeypatch):
    monkeypatch.setattr(
        "app.services.workload_service._load_therapist",
        AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down"))),
    )

    with pytest.raises(DataUnavailableError) as excinfo:
        await load_workload_snapshot(AsyncMock(), 1, AS_OF)
    assert excinfo.value.technical_detail


@pytest.mark.asyncio
async def test_load_workload_snapshot_combines_loaders(monkeypatch):
    monkeypatch.setattr(
        "app.services.workload_service._load_therapist",
        AsyncMock(return_value=make_therapist(1, specialties=("speech", "ot"))),
    )
    monkeypatch.setattr(
        "app.services.workload_service._load_sessions",
        AsyncMock(return_value=[make_session(1, AS_OF)]),
    )
    monkeypatch.setattr(
        "app.services.workload_service._load_active_enrollments",
        AsyncMock(return_value=[make_enrollment(student_id=10)]),
    )

    snapshot = await load_workload_snapshot(AsyncMock(), 1, AS_OF)

    assert snapshot.specialties == ["speech", "ot"]
    assert snapshot.metrics.sessions_per_week == 1
    assert snapshot.metrics.active_students == 1


@pytest.mark.asyncio
async def test_calculate_bulk_workloads_reports_failures_per_therapist(monkeypatch):
    snapshots = {
        1: make_workload(1, weekly_hours=20),
        2: make_workload(2, weekly_hours=44),
    }

    async def _fake_snapshot(_db, therapist_id, _as_of=None):
        if therapist_id not in snapshots:
            raise DataUnavailableError(f"Therapist {therapist_id} not found")
        return snapshots[therapist_id]

    monkeypatch.setattr(workload_service, "load_workload_snapshot", _fake_snapshot)

    result = await calculate_bulk_workloads(AsyncMock(), [1, 2, 3])

    assert [r.success for r in result.results] == [True, True, False]
    assert result.results[2].error_message == "Therapist 3 not found"
    assert result.summary.total_processed == 3
    assert result.summary.failed == 1
    assert result.summary.over_capacity_count == 1
    assert result.summary.average_utilization == 80.0
