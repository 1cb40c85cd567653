"""API-key authenticated execution endpoints, mounted at ``/v1``."""

import logging
import time

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.auth import get_raw_api_key
from brokerage.core.exceptions import NotFoundError
from brokerage.core.rate_limiter import rate_limiter
from brokerage.database import get_db
from brokerage.models.execution import Execution
from brokerage.schemas.execution import AssignedAgent, ExecuteRequest, ExecuteResponse, ExecutionCost
from brokerage.services import api_key_service, execution_service
from brokerage.services.billing_service import compute_revenue_split
from brokerage.services.execution_service import ExecutionQueue, get_execution_queue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["execution"])


@router.post("/execute", response_model=ExecuteResponse)
async def execute(
    req: ExecuteRequest,
    response: Response,
    raw_key: str = Depends(get_raw_api_key),
    db: AsyncSession = Depends(get_db),
    queue: ExecutionQueue = Depends(get_execution_queue),
):
    """Queue an execution and return at once; poll /v1/status for the outcome."""
    started = time.perf_counter()
    key = await api_key_service.authenticate_key(db, raw_key)
    api_key_service.require_permission(key, "execute")
    rate_headers = await rate_limiter.check(db, key)

    execution, agent = await execution_service.submit_direct_execution(
        db, key, req.task_type, req.payload, queue, priority=req.priority,
    )
    response.headers.update(rate_headers)

    split = compute_revenue_split(execution.cost)
    return ExecuteResponse(
        execution_id=execution.id,
        status=execution.status,
        agent=AssignedAgent(id=agent.id, name=agent.agent_name, type=agent.agent_type),
        cost=ExecutionCost(amount=float(split.amount), platform_fee=float(split.platform_fee)),
        message="Execution queued",
        request_time_ms=int((time.perf_counter() - started) * 1000),
    )


@router.get("/status/{execution_id}")
async def execution_status(
    execution_id: str,
    raw_key: str = Depends(get_raw_api_key),
    db: AsyncSession = Depends(get_db),
):
    key = await api_key_service.authenticate_key(db, raw_key)
    api_key_service.require_permission(key, "status")
    execution = await db.get(Execution, execution_id)
    # Keys only see their own executions
    if execution is None or execution.api_key_id != key.id:
        raise NotFoundError("Execution", execution_id)
    return await execution_service.get_execution_status(db, execution_id)


@router.get("/balance")
async def balance(
    raw_key: str = Depends(get_raw_api_key),
    db: AsyncSession = Depends(get_db),
):
    key = await api_key_service.authenticate_key(db, raw_key)
    api_key_service.require_permission(key, "balance")
    return await api_key_service.get_balance_view(db, key)
