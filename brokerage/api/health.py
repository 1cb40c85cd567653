import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.config import settings
from brokerage.database import get_db
from brokerage.models.agent import AutonomousAgent
from brokerage.models.execution import Execution
from brokerage.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    agents = (await db.execute(select(func.count(AutonomousAgent.id)))).scalar() or 0
    executions = (await db.execute(select(func.count(Execution.id)))).scalar() or 0
    queue = getattr(request.app.state, "execution_queue", None)

    return HealthResponse(
        status="healthy",
        version=_VERSION,
        environment=settings.environment,
        agents_count=agents,
        executions_count=executions,
        queue_depth=queue.qsize() if queue is not None else None,
    )


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness probe: verifies DB connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception:
        logger.exception("Readiness check failed, database unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "database": "unavailable"},
        )
