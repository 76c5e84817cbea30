from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from app.deps import ActorDep, DbDep
from app.schemas.substitution import (
    ActiveSubstitution,
    CreatePlanRequest,
    ExecutePlanRequest,
    ExecutionResult,
    RollbackRequest,
    RollbackResult,
    SubstitutionPlan,
    SubstitutionPlanResponse,
    SubstitutionRequest,
    SubstitutionSearchResult,
)
from app.services.substitution_service import (
    NO_SESSIONS_MESSAGE,
    PLAN_NOT_FOUND,
    approve_substitution_plan,
    cancel_substitution_plan,
    create_substitution_plan,
    execute_substitution_plan,
    find_substitutes,
    get_substitution_plan,
    list_active_substitution_plans,
    rollback_substitution,
)


router = APIRouter()


def _plan_failure(message: str | None) -> HTTPException:
    if message == PLAN_NOT_FOUND:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=message)
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=message)


def _lookup_failure(message: str | None) -> HTTPException:
    if message and message.endswith("not found"):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=message)
    if message == NO_SESSIONS_MESSAGE:
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=message
        )
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=message)


@router.post("/candidates", response_model=SubstitutionSearchResult)
async def candidates(payload: SubstitutionRequest, db: DbDep) -> SubstitutionSearchResult:
    """Rank substitute therapists for an absence."""
    result = await find_substitutes(db, payload)
    if not result.success:
        raise _lookup_failure(result.message)
    return result


@router.get("/active", response_model=list[ActiveSubstitution])
async def active_plans(db: DbDep) -> list[ActiveSubstitution]:
    return await list_active_substitution_plans(db)


@router.post(
    "/plans", response_model=SubstitutionPlan, status_code=status.HTTP_201_CREATED
)
async def create_plan(
    payload: CreatePlanRequest, db: DbDep, actor_id: ActorDep
) -> SubstitutionPlan:
    """Create a draft substitution plan.

    ``selected_substitutes`` overrides the automatic ranking when given.
    """

    response = await create_substitution_plan(
        db, payload.request, payload.selected_substitutes or None, actor_id=actor_id
    )
    if not response.success or response.plan is None:
        raise _lookup_failure(response.message)
    return response.plan


@router.get("/plans/{plan_id}", response_model=SubstitutionPlan)
async def get_plan(plan_id: str, db: DbDep) -> SubstitutionPlan:
    response = await get_substitution_plan(db, plan_id)
    if not response.success or response.plan is None:
        raise _plan_failure(response.message)
    return response.plan


@router.post("/plans/{plan_id}/approve", response_model=SubstitutionPlanResponse)
async def approve_plan(
    plan_id: str, db: DbDep, actor_id: ActorDep
) -> SubstitutionPlanResponse:
    response = await approve_substitution_plan(db, plan_id, actor_id=actor_id)
    if not response.success:
        raise _plan_failure(response.message)
    return response


@router.post("/plans/{plan_id}/cancel", response_model=SubstitutionPlanResponse)
async def cancel_plan(
    plan_id: str, db: DbDep, actor_id: ActorDep
) -> SubstitutionPlanResponse:
    response = await cancel_substitution_plan(db, plan_id, actor_id=actor_id)
    if not response.success:
        raise _plan_failure(response.message)
    return response


@router.post("/plans/{plan_id}/execute", response_model=ExecutionResult)
async def execute_plan(
    plan_id: str,
    db: DbDep,
    actor_id: ActorDep,
    payload: ExecutePlanRequest | None = None,
) -> ExecutionResult:
    """Execute an approved plan.

    A run where assignments failed is still a ``200`` with the per-assignment
    outcome; rejected executions (unknown plan, wrong status) are errors.
    """

    skip = payload.skip_notifications if payload is not None else False
    result = await execute_substitution_plan(
        db, plan_id, skip_notifications=skip, actor_id=actor_id
    )
    if not result.success and result.message:
        raise _plan_failure(result.message)
    return result


@router.post("/plans/{plan_id}/rollback", response_model=RollbackResult)
async def rollback_plan(
    plan_id: str, payload: RollbackRequest, db: DbDep, actor_id: ActorDep
) -> RollbackResult:
    result = await rollback_substitution(db, plan_id, payload.reason, actor_id=actor_id)
    if not result.success:
        raise _plan_failure(result.message)
    return result
