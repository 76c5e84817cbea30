from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi import status

from app.schemas.capacity import (
    BulkAssignmentResult,
    CapacityAlertSweep,
    CapacityImpact,
    CapacityImpactSummary,
    CapacityValidationResponse,
    CapacityValidationResult,
    OptimizationStrategy,
    OptimizationSummary,
    OverAssignmentCheck,
    RiskLevel,
)
from app.services.capacity_alert_service import build_alert
from app.services.engine_errors import DataUnavailableError
from tests.utils.factories import make_workload


ASSIGNMENT = {
    "therapist_id": 1,
    "student_id": 500,
    "program_template_id": 1,
    "sessions_per_week": 2,
    "session_duration_minutes": 60,
    "start_date": "2026-10-18",
    "priority_level": "medium",
}


@pytest.mark.asyncio
async def test_health(async_client):
    resp = await async_client.get("/health")
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_validate_returns_verdict(async_client, monkeypatch):
    response = CapacityValidationResponse(
        success=True,
        result=CapacityValidationResult(
            is_valid=True,
            validation_errors=[],
            capacity_impact=CapacityImpact(
                current_utilization=25.0,
                projected_utilization=30.0,
                capacity_remaining=28.0,
                risk_level=RiskLevel.LOW,
            ),
        ),
    )
    validate = AsyncMock(return_value=response)
    monkeypatch.setattr("app.routers.capacity.validate_assignment", validate)

    resp = await async_client.post("/capacity/validate", json=ASSIGNMENT)

    assert resp.status_code == status.HTTP_200_OK
    body = resp.json()
    assert body["result"]["is_valid"] is True
    assert body["result"]["capacity_impact"]["risk_level"] == "low"
    assert validate.await_args.args[1].student_id == 500


@pytest.mark.asyncio
async def test_validate_unavailable_maps_to_503(async_client, monkeypatch):
    monkeypatch.setattr(
        "app.routers.capacity.validate_assignment",
        AsyncMock(
            return_value=CapacityValidationResponse(
                success=False, message="Therapist 1 not found"
            )
        ),
    )

    resp = await async_client.post("/capacity/validate", json=ASSIGNMENT)

    assert resp.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert resp.json()["detail"] == "Therapist 1 not found"


@pytest.mark.asyncio
async def test_validate_rejects_malformed_payload(async_client):
    resp = await async_client.post("/capacity/validate", json={"therapist_id": 1})
    assert resp.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_check_over_assignment(async_client, monkeypatch):
    monkeypatch.setattr(
        "app.routers.capacity.prevent_over_assignment",
        AsyncMock(
            return_value=OverAssignmentCheck(
                allowed=False, prevention_reason="Weekly hours limit exceeded"
            )
        ),
    )

    resp = await async_client.post("/capacity/check", json=ASSIGNMENT)

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["allowed"] is False


@pytest.mark.asyncio
async def test_bulk_passes_options_through(async_client, monkeypatch):
    result = BulkAssignmentResult(
        successful_assignments=[],
        failed_assignments=[],
        not_processed=[],
        optimization_summary=OptimizationSummary(
            total_requested=1,
            total_processed=1,
            successful_count=1,
            failed_count=0,
            not_processed_count=0,
            optimization_score=100.0,
            processing_time_seconds=0.01,
        ),
        capacity_impact_summary=CapacityImpactSummary(
            average_utilization_change=5.0, peak_utilization_change=5.0
        ),
    )
    process = AsyncMock(return_value=result)
    monkeypatch.setattr("app.routers.capacity.process_bulk_assignments", process)

    resp = await async_client.post(
        "/capacity/bulk",
        json={
            "assignments": [ASSIGNMENT],
            "optimization_strategy": "minimize_workload_variance",
            "allow_partial_assignments": False,
            "max_processing_time_seconds": 5,
        },
    )

    assert resp.status_code == status.HTTP_200_OK
    kwargs = process.await_args.kwargs
    assert kwargs["strategy"] == OptimizationStrategy.MINIMIZE_WORKLOAD_VARIANCE
    assert kwargs["allow_partial"] is False
    assert kwargs["max_seconds"] == 5


@pytest.mark.asyncio
async def test_alerts(async_client, monkeypatch):
    now = datetime(2026, 10, 17, 7, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(
        "app.routers.capacity.monitor_capacity_alerts",
        AsyncMock(
            return_value=CapacityAlertSweep(
                success=True, alerts=[build_alert(3, 97.5, now)], therapists_checked=4
            )
        ),
    )

    resp = await async_client.get("/capacity/alerts")

    assert resp.status_code == status.HTTP_200_OK
    [alert] = resp.json()["alerts"]
    assert alert["alert_type"] == "capacity_critical"


@pytest.mark.asyncio
async def test_alerts_sweep_failure_maps_to_503(async_client, monkeypatch):
    monkeypatch.setattr(
        "app.routers.capacity.monitor_capacity_alerts",
        AsyncMock(
            return_value=CapacityAlertSweep(success=False, message="Therapist data unavailable")
        ),
    )

    resp = await async_client.get("/capacity/alerts")

    assert resp.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


@pytest.mark.asyncio
async def test_workload_snapshot(async_client, monkeypatch):
    load = AsyncMock(return_value=make_workload(2, weekly_hours=30))
    monkeypatch.setattr("app.routers.capacity.load_workload_snapshot", load)

    resp = await async_client.get("/capacity/workload/2", params={"as_of": "2026-10-14"})

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["metrics"]["utilization_percentage"] == 75.0
    assert str(load.await_args.args[2]) == "2026-10-14"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, expected",
    [
        (DataUnavailableError("Therapist 2 not found"), status.HTTP_404_NOT_FOUND),
        (
            DataUnavailableError("Workload data unavailable", technical_detail="timeout"),
            status.HTTP_503_SERVICE_UNAVAILABLE,
        ),
    ],
)
async def test_workload_errors(async_client, monkeypatch, error, expected):
    monkeypatch.setattr(
        "app.routers.capacity.load_workload_snapshot", AsyncMock(side_effect=error)
    )

    resp = await async_client.get("/capacity/workload/2")

    assert resp.status_code == expected
