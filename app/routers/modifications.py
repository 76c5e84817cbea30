from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from app.deps import DbDep
from app.schemas.modification import (
    ImpactAnalysisResult,
    ModificationRequest,
    ModificationValidation,
)
from app.services.modification_impact_service import (
    analyze_modification_impact,
    validate_modification_request,
)


router = APIRouter()


@router.post("/validate", response_model=ModificationValidation)
async def validate(payload: ModificationRequest) -> ModificationValidation:
    """Return every problem with a modification request."""
    return validate_modification_request(payload)


@router.post("/impact", response_model=ImpactAnalysisResult)
async def impact(payload: ModificationRequest, db: DbDep) -> ImpactAnalysisResult:
    """Validate a modification request and analyze its impact."""

    validation = validate_modification_request(payload)
    if not validation.valid:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=validation.errors
        )

    response = await analyze_modification_impact(db, payload)
    if not response.success or response.data is None:
        code = (
            status.HTTP_404_NOT_FOUND
            if response.error == "Enrollment not found"
            else status.HTTP_503_SERVICE_UNAVAILABLE
        )
        raise HTTPException(status_code=code, detail=response.error)
    return response.data
