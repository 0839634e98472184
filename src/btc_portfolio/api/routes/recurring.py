import asyncio
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException

from btc_portfolio.api.dependencies import get_owner_id, get_plan_service, get_scheduler
from btc_portfolio.api.schemas import PlanListResponse
from btc_portfolio.logger import get_logger
from btc_portfolio.models import PlanDraft, PlanUpdate, RecurringPlan
from btc_portfolio.services.recurring import (
    InactivePlanError,
    PlanNotFoundError,
    PlanValidationError,
    RecurringPlanService,
)
from btc_portfolio.services.scheduler import (
    DCAScheduler,
    ExecutionResult,
    PlanClaimedError,
    PriceUnavailableError,
)

router = APIRouter()
logger = get_logger(__name__)


@router.get("/api/recurring-plans", response_model=PlanListResponse)
async def list_plans(
    owner_id: Annotated[str, Depends(get_owner_id)],
    plans: Annotated[RecurringPlanService, Depends(get_plan_service)],
    is_active: bool | None = None,
    is_paused: bool | None = None,
    frequency: str | None = None,
) -> PlanListResponse:
    try:
        items = plans.list_plans(
            owner_id,
            is_active=is_active,
            is_paused=is_paused,
            frequency=frequency,
        )
    except PlanValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return PlanListResponse(plans=items, statistics=plans.statistics(owner_id))


@router.post("/api/recurring-plans", response_model=RecurringPlan, status_code=201)
async def create_plan(
    draft: PlanDraft,
    owner_id: Annotated[str, Depends(get_owner_id)],
    plans: Annotated[RecurringPlanService, Depends(get_plan_service)],
) -> RecurringPlan:
    try:
        return await asyncio.to_thread(plans.create_plan, owner_id, draft)
    except PlanValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/api/recurring-plans/{plan_id}", response_model=RecurringPlan)
async def get_plan(
    plan_id: str,
    owner_id: Annotated[str, Depends(get_owner_id)],
    plans: Annotated[RecurringPlanService, Depends(get_plan_service)],
) -> RecurringPlan:
    try:
        return plans.get_plan(owner_id, plan_id)
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.put("/api/recurring-plans/{plan_id}", response_model=RecurringPlan)
async def update_plan(
    plan_id: str,
    update: PlanUpdate,
    owner_id: Annotated[str, Depends(get_owner_id)],
    plans: Annotated[RecurringPlanService, Depends(get_plan_service)],
) -> RecurringPlan:
    try:
        return await asyncio.to_thread(plans.update_plan, owner_id, plan_id, update)
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PlanValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/api/recurring-plans/{plan_id}/toggle-pause", response_model=RecurringPlan)
async def toggle_pause(
    plan_id: str,
    owner_id: Annotated[str, Depends(get_owner_id)],
    plans: Annotated[RecurringPlanService, Depends(get_plan_service)],
) -> RecurringPlan:
    try:
        return await asyncio.to_thread(plans.toggle_pause, owner_id, plan_id)
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.delete("/api/recurring-plans/{plan_id}", response_model=RecurringPlan)
async def delete_plan(
    plan_id: str,
    owner_id: Annotated[str, Depends(get_owner_id)],
    plans: Annotated[RecurringPlanService, Depends(get_plan_service)],
) -> RecurringPlan:
    try:
        return await asyncio.to_thread(plans.deactivate_plan, owner_id, plan_id)
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/api/recurring-plans/{plan_id}/execute", response_model=ExecutionResult)
async def execute_plan(
    plan_id: str,
    owner_id: Annotated[str, Depends(get_owner_id)],
    scheduler: Annotated[DCAScheduler, Depends(get_scheduler)],
) -> ExecutionResult:
    try:
        return await scheduler.execute_now(owner_id, plan_id)
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InactivePlanError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PlanClaimedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PriceUnavailableError as exc:
        logger.error("[DCA] Manual execution of %s failed: %s", plan_id, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.get("/api/scheduler/status")
async def scheduler_status(
    owner_id: Annotated[str, Depends(get_owner_id)],
    scheduler: Annotated[DCAScheduler, Depends(get_scheduler)],
) -> dict[str, Any]:
    return scheduler.status(owner_id)
