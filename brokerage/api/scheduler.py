from typing import Annotated

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.auth import get_current_operator
from brokerage.core.exceptions import ValidationFailedError
from brokerage.database import get_db
from brokerage.schemas.actions import (
    ActivateAgentAction,
    DeactivateAgentAction,
    GetAgentStatusAction,
    RestartFailedAgentsAction,
    RunScheduledCycleAction,
    SchedulerAction,
)
from brokerage.services import scheduler_service
from brokerage.services.execution_service import TargetDispatcher, get_dispatcher
from brokerage.services.stripe_service import StripePaymentService, get_stripe_service

router = APIRouter(prefix="/agent-scheduler", tags=["agent-scheduler"])


@router.post("")
async def agent_scheduler(
    req: Annotated[SchedulerAction, Body(discriminator="action")],
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
    dispatcher: TargetDispatcher = Depends(get_dispatcher),
    stripe: StripePaymentService = Depends(get_stripe_service),
):
    try:
        if isinstance(req, ActivateAgentAction):
            agent = await scheduler_service.activate_agent(db, req.agent_id)
            return {"success": True, "agent": scheduler_service.agent_to_dict(agent)}

        if isinstance(req, DeactivateAgentAction):
            agent = await scheduler_service.deactivate_agent(db, req.agent_id)
            return {"success": True, "agent": scheduler_service.agent_to_dict(agent)}

        if isinstance(req, RunScheduledCycleAction):
            return await scheduler_service.run_scheduled_cycle(db, dispatcher=dispatcher, stripe=stripe)

        if isinstance(req, GetAgentStatusAction):
            return await scheduler_service.get_agent_status(db, req.agent_id)

        if isinstance(req, RestartFailedAgentsAction):
            restarted = await scheduler_service.restart_failed_agents(db)
            return {"success": True, "restarted": restarted}
    except ValueError as exc:
        raise ValidationFailedError(str(exc))

    raise ValidationFailedError("Unknown action")
