"""Orchestration endpoints: catalog scan, scheduling pass and task execution."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.auth import get_current_operator
from brokerage.core.exceptions import ConflictError
from brokerage.database import get_db
from brokerage.services import market_monitor_service, scheduler_service
from brokerage.services.execution_service import TargetDispatcher, get_dispatcher
from brokerage.services.stripe_service import StripePaymentService, get_stripe_service

router = APIRouter(prefix="/brain", tags=["brain"])


@router.post("/monitor")
async def monitor(
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    opportunities = await market_monitor_service.monitor_market(db)
    return {
        "opportunities_found": len(opportunities),
        "opportunities": [
            {
                "id": o.id,
                "api_product_id": o.api_product_id,
                "demand_score": float(o.demand_score),
                "competition_score": float(o.competition_score),
                "complexity_score": float(o.complexity_score),
                "potential_revenue": float(o.potential_revenue),
                "estimated_cost": float(o.estimated_cost),
            }
            for o in opportunities
        ],
    }


@router.post("/schedule")
async def schedule(
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    return await scheduler_service.schedule_opportunities(db, limit)


@router.post("/tasks/{task_id}/execute")
async def execute_task(
    task_id: str,
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
    dispatcher: TargetDispatcher = Depends(get_dispatcher),
    stripe: StripePaymentService = Depends(get_stripe_service),
):
    try:
        return await scheduler_service.execute_task(db, task_id, dispatcher=dispatcher, stripe=stripe)
    except ValueError as exc:
        raise ConflictError(str(exc))


@router.get("/status")
async def brain_status(
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    return await scheduler_service.get_brain_status(db)
