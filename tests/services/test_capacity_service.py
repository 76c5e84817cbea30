from unittest.mock import AsyncMock

import pytest

from app.schemas.capacity import RiskLevel, Severity
from app.schemas.workload import CapacityLimits
from app.services import capacity_service
from app.services.capacity_service import (
    compatibility_for,
    evaluate_assignment,
    find_alternative_assignments,
    prevent_over_assignment,
    risk_level_for,
    validate_assignment,
)
from app.services.engine_errors import DataUnavailableError
from tests.utils.factories import make_request, make_therapist, make_workload


def _critical(evaluation_or_result, constraint: str) -> list:
    issues = getattr(evaluation_or_result, "issues", None)
    if issues is None:
        issues = evaluation_or_result.validation_errors
    return [
        i for i in issues if i.severity == Severity.CRITICAL and i.affected_constraint == constraint
    ]


def _patch_workloads(monkeypatch, workloads: dict):
    async def _fake_snapshot(_db, therapist_id, _as_of=None):
        if therapist_id not in workloads:
            raise DataUnavailableError(f"Therapist {therapist_id} not found")
        return workloads[therapist_id]

    monkeypatch.setattr(capacity_service, "load_workload_snapshot", _fake_snapshot)


@pytest.mark.parametrize(
    "utilization, expected",
    [
        (99.0, RiskLevel.CRITICAL),
        (95.0, RiskLevel.CRITICAL),
        (85.0, RiskLevel.HIGH),
        (70.0, RiskLevel.MEDIUM),
        (69.99, RiskLevel.LOW),
    ],
)
def test_risk_level_thresholds(utilization, expected):
    assert risk_level_for(utilization) == expected


def test_request_well_below_limits_is_valid_without_findings():
    workload = make_workload(weekly_hours=10, active_students=5, sessions_per_week=10)

    evaluation = evaluate_assignment(workload, make_request())

    assert evaluation.is_valid
    assert evaluation.issues == []
    assert evaluation.projected_weekly_hours == 12.0
    assert evaluation.impact.projected_utilization == 30.0
    assert evaluation.impact.risk_level == RiskLevel.LOW


def test_exceeding_weekly_hours_is_critical():
    workload = make_workload(weekly_hours=39)

    evaluation = evaluate_assignment(workload, make_request(sessions_per_week=2))

    assert not evaluation.is_valid
    [issue] = _critical(evaluation, "max_weekly_hours")
    assert issue.error_code == "WEEKLY_HOURS_EXCEEDED"
    assert issue.current_value == 41.0
    assert issue.maximum_allowed == 40


def test_landing_in_warning_band_stays_valid():
    workload = make_workload(weekly_hours=35, limits=CapacityLimits(max_daily_hours=10))

    evaluation = evaluate_assignment(workload, make_request(sessions_per_week=1))

    assert evaluation.is_valid
    assert evaluation.has_warnings
    assert [i.error_code for i in evaluation.issues] == ["WEEKLY_HOURS_NEAR_LIMIT"]


def test_non_positive_session_parameters_are_flagged_not_raised():
    workload = make_workload(weekly_hours=10)

    evaluation = evaluate_assignment(workload, make_request(sessions_per_week=0))

    assert not evaluation.is_valid
    assert evaluation.issues[0].error_code == "INVALID_SESSION_PARAMETERS"
    assert evaluation.projected_weekly_hours == 10.0


def test_missing_required_specialty_is_critical():
    workload = make_workload(specialties=("speech",))

    evaluation = evaluate_assignment(
        workload, make_request(required_specialties=["occupational"])
    )

    [issue] = _critical(evaluation, "specialty_requirements")
    assert issue.error_code == "SPECIALTY_MISMATCH"


def test_existing_student_does_not_count_twice():
    limits = CapacityLimits(max_concurrent_students=3)
    workload = make_workload(active_students=3, student_ids=[1, 2, 500], limits=limits)

    evaluation = evaluate_assignment(workload, make_request(student_id=500))

    assert _critical(evaluation, "max_concurrent_students") == []


def test_compatibility_prefers_overlap_and_headroom():
    full_overlap = compatibility_for(["speech"], ["speech"], 50)
    partial_overlap = compatibility_for(["speech"], ["speech", "ot"], 50)
    busier = compatibility_for(["speech"], ["speech"], 90)
    assert full_overlap == 80.0
    assert partial_overlap == 50.0
    assert busier < full_overlap


@pytest.mark.asyncio
async def test_full_caseload_is_rejected_with_alternatives(monkeypatch):
    # 27h of 40h = 67.5% utilization, 12 of 12 students on the caseload.
    limits = CapacityLimits(max_concurrent_students=12)
    _patch_workloads(
        monkeypatch,
        {
            1: make_workload(1, weekly_hours=27, active_students=12, limits=limits),
            2: make_workload(2, weekly_hours=10, active_students=4),
            3: make_workload(3, weekly_hours=12, active_students=4, specialties=("ot",)),
        },
    )
    monkeypatch.setattr(
        "app.services.capacity_service._load_active_therapists",
        AsyncMock(
            return_value=[
                make_therapist(1),
                make_therapist(2),
                make_therapist(3, specialties=("ot",)),
            ]
        ),
    )

    response = await validate_assignment(
        AsyncMock(), make_request(sessions_per_week=1, session_duration_minutes=45)
    )

    assert response.success
    result = response.result
    assert result.is_valid is False
    assert _critical(result, "max_concurrent_students")
    assert result.capacity_impact.current_utilization == 67.5
    assert [a.therapist_id for a in result.alternative_assignments] == [2]


@pytest.mark.asyncio
async def test_validate_assignment_surfaces_data_unavailable(monkeypatch):
    _patch_workloads(monkeypatch, {})

    response = await validate_assignment(AsyncMock(), make_request(therapist_id=42))

    assert response.success is False
    assert response.result is None
    assert "42" in response.message


@pytest.mark.asyncio
async def test_high_projected_utilization_recommends_redistribution(monkeypatch):
    _patch_workloads(monkeypatch, {1: make_workload(1, weekly_hours=33)})

    response = await validate_assignment(AsyncMock(), make_request(sessions_per_week=2))

    result = response.result
    assert result.is_valid
    assert result.capacity_impact.projected_utilization == 87.5
    assert "workload_redistribution" in [r.type for r in result.recommendations]


@pytest.mark.asyncio
async def test_alternatives_rank_clean_candidates_before_warnings(monkeypatch):
    _patch_workloads(
        monkeypatch,
        {
            2: make_workload(2, weekly_hours=34),  # lands in the warning band
            3: make_workload(3, weekly_hours=20),
            4: make_workload(4, weekly_hours=39),  # would exceed the limit
        },
    )
    monkeypatch.setattr(
        "app.services.capacity_service._load_active_therapists",
        AsyncMock(return_value=[make_therapist(i) for i in (1, 2, 3, 4)]),
    )

    alternatives = await find_alternative_assignments(
        AsyncMock(), make_request(sessions_per_week=2), reference_specialties=["speech"]
    )

    assert [a.therapist_id for a in alternatives] == [3, 2]
    assert alternatives[1].has_warnings
    assert "WEEKLY_HOURS_NEAR_LIMIT" in alternatives[1].adjustment_requirements


@pytest.mark.asyncio
async def test_unreadable_alternative_is_skipped(monkeypatch):
    _patch_workloads(monkeypatch, {3: make_workload(3, weekly_hours=5)})
    monkeypatch.setattr(
        "app.services.capacity_service._load_active_therapists",
        AsyncMock(return_value=[make_therapist(2), make_therapist(3)]),
    )

    alternatives = await find_alternative_assignments(AsyncMock(), make_request())

    assert [a.therapist_id for a in alternatives] == [3]


@pytest.mark.asyncio
async def test_prevent_over_assignment_blocks_critical(monkeypatch):
    _patch_workloads(monkeypatch, {1: make_workload(1, weekly_hours=39)})
    monkeypatch.setattr(
        "app.services.capacity_service._load_active_therapists",
        AsyncMock(return_value=[]),
    )

    check = await prevent_over_assignment(AsyncMock(), make_request(sessions_per_week=2))

    assert check.allowed is False
    assert "Weekly hours limit exceeded" in check.prevention_reason


@pytest.mark.asyncio
async def test_prevent_over_assignment_allows_clean_request(monkeypatch):
    _patch_workloads(monkeypatch, {1: make_workload(1, weekly_hours=10)})

    check = await prevent_over_assignment(AsyncMock(), make_request())

    assert check.allowed is True
    assert check.prevention_reason is None
