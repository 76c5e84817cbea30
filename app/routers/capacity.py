from __future__ import annotations

from datetime import date

from fastapi import APIRouter, HTTPException, Query, status

from app.deps import DbDep
from app.schemas.capacity import (
    AssignmentRequest,
    BulkAssignmentRequest,
    BulkAssignmentResult,
    CapacityAlertSweep,
    CapacityValidationResponse,
    OverAssignmentCheck,
)
from app.schemas.workload import BulkWorkloadRequest, BulkWorkloadResult, TherapistWorkload
from app.services.bulk_assignment_service import process_bulk_assignments
from app.services.capacity_alert_service import monitor_capacity_alerts
from app.services.capacity_service import prevent_over_assignment, validate_assignment
from app.services.engine_errors import DataUnavailableError
from app.services.workload_service import calculate_bulk_workloads, load_workload_snapshot


router = APIRouter()


@router.post("/validate", response_model=CapacityValidationResponse)
async def validate(payload: AssignmentRequest, db: DbDep) -> CapacityValidationResponse:
    """Validate one assignment against the therapist's capacity.

    Capacity violations come back with ``200`` and ``is_valid=false``; only a
    workload read failure is an error.
    """

    response = await validate_assignment(db, payload)
    if not response.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=response.message
        )
    return response


@router.post("/check", response_model=OverAssignmentCheck)
async def check_over_assignment(
    payload: AssignmentRequest, db: DbDep
) -> OverAssignmentCheck:
    return await prevent_over_assignment(db, payload)


@router.post("/bulk", response_model=BulkAssignmentResult)
async def bulk_assign(payload: BulkAssignmentRequest, db: DbDep) -> BulkAssignmentResult:
    """Process many assignment requests within a time budget."""
    return await process_bulk_assignments(
        db,
        payload.assignments,
        strategy=payload.optimization_strategy,
        allow_partial=payload.allow_partial_assignments,
        max_seconds=payload.max_processing_time_seconds,
    )


@router.get("/alerts", response_model=CapacityAlertSweep)
async def capacity_alerts(db: DbDep) -> CapacityAlertSweep:
    sweep = await monitor_capacity_alerts(db)
    if not sweep.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=sweep.message
        )
    return sweep


@router.get("/workload/{therapist_id}", response_model=TherapistWorkload)
async def therapist_workload(
    therapist_id: int,
    db: DbDep,
    as_of: date | None = Query(None),
) -> TherapistWorkload:
    try:
        return await load_workload_snapshot(db, therapist_id, as_of)
    except DataUnavailableError as exc:
        if exc.technical_detail is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)
            ) from exc
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc


@router.post("/workload/bulk", response_model=BulkWorkloadResult)
async def bulk_workload(payload: BulkWorkloadRequest, db: DbDep) -> BulkWorkloadResult:
    return await calculate_bulk_workloads(db, payload.therapist_ids, payload.as_of)
