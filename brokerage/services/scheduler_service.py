"""Task scheduler and agent assignor.

A ``WorkerRegistry`` is loaded from the database at the start of every
orchestration run and discarded at the end; it is never shared between runs.
Claims on a worker go through a conditional UPDATE, so two concurrent runs
holding stale registries can never bind the same idle worker twice.
"""

import json
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.config import settings
from brokerage.core.exceptions import ConflictError, NotFoundError
from brokerage.models.agent import AutonomousAgent, BrainTask
from brokerage.models.execution import Execution
from brokerage.models.opportunity import DemandOpportunity, MarketOpportunity
from brokerage.models.product import ApiProduct
from brokerage.services.billing_service import to_decimal

logger = logging.getLogger(__name__)

AGENT_TYPES = ("api_consumer", "payment_bot", "volume_generator")
AVAILABLE_STATUSES = ("idle", "active")


def _utcnow():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Per-run worker registry
# ---------------------------------------------------------------------------

class WorkerRegistry:
    """Snapshot of workers for one orchestration run, in creation order."""

    def __init__(self, agents: list[AutonomousAgent]):
        self._agents = list(agents)
        self._taken: set[str] = set()

    @classmethod
    async def load(cls, db: AsyncSession) -> "WorkerRegistry":
        result = await db.execute(
            select(AutonomousAgent).order_by(AutonomousAgent.created_at, AutonomousAgent.id)
        )
        return cls(list(result.scalars().all()))

    def __len__(self) -> int:
        return len(self._agents)

    def candidates(self, agent_type: str | None = None, statuses=("idle",)) -> list[AutonomousAgent]:
        """Matching workers, best performance first; ties keep creation order."""
        matching = [
            a for a in self._agents
            if a.status in statuses
            and a.id not in self._taken
            and (agent_type is None or a.agent_type == agent_type)
        ]
        return sorted(matching, key=lambda a: -float(a.performance_score or 0))

    def mark_taken(self, agent_id: str) -> None:
        self._taken.add(agent_id)

    def best_idle(self, agent_type: str) -> AutonomousAgent | None:
        found = self.candidates(agent_type)
        return found[0] if found else None


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaskPlan:
    opportunity_id: str
    opportunity_kind: str  # demand | market
    demand: float  # 0-1
    potential_revenue: Decimal
    target_api_id: str | None
    deadline: datetime | None
    agent_type: str
    task_type: str
    priority: int


def plan_for(opportunity: DemandOpportunity | MarketOpportunity) -> TaskPlan:
    """Normalise either opportunity kind and choose worker type and priority."""
    if isinstance(opportunity, DemandOpportunity):
        kind = "demand"
        demand = float(opportunity.demand_score) / 100
        revenue = to_decimal(opportunity.suggested_price)
        target = None
        deadline = _utcnow() + timedelta(days=int(opportunity.estimated_delivery_days or 7))
    else:
        kind = "market"
        demand = float(opportunity.demand_score)
        revenue = to_decimal(opportunity.potential_revenue)
        target = opportunity.api_product_id
        deadline = opportunity.time_window_end

    if demand > 0.8:
        agent_type, task_type = "volume_generator", "volume_generation"
    elif revenue > 1000:
        agent_type, task_type = "payment_bot", "payment"
    else:
        agent_type, task_type = "api_consumer", "api_consumption"

    if demand > 0.9:
        priority = 1
    elif demand > 0.7:
        priority = 2
    else:
        priority = 3

    return TaskPlan(
        opportunity_id=opportunity.id,
        opportunity_kind=kind,
        demand=demand,
        potential_revenue=revenue,
        target_api_id=target,
        deadline=deadline,
        agent_type=agent_type,
        task_type=task_type,
        priority=priority,
    )


def task_budget(agent: AutonomousAgent, potential_revenue: Decimal) -> Decimal:
    return to_decimal(min(
        to_decimal(agent.daily_budget) * to_decimal(settings.task_budget_agent_pct),
        to_decimal(potential_revenue) * to_decimal(settings.task_budget_revenue_pct),
    ))


async def _claim_worker(db: AsyncSession, agent: AutonomousAgent, task_id: str) -> bool:
    result = await db.execute(
        update(AutonomousAgent)
        .where(AutonomousAgent.id == agent.id, AutonomousAgent.status == "idle")
        .values(status="active", current_task_id=task_id, last_active_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def assign_opportunity(
    db: AsyncSession,
    registry: WorkerRegistry,
    opportunity: DemandOpportunity | MarketOpportunity,
) -> BrainTask | None:
    """Create an assigned task for the best idle worker, or return None if none is free."""
    plan = plan_for(opportunity)

    for agent in registry.candidates(plan.agent_type):
        task_id = str(uuid.uuid4())
        claimed = await _claim_worker(db, agent, task_id)
        registry.mark_taken(agent.id)
        if not claimed:
            # Another run took this worker after our snapshot
            continue

        agent.status = "active"
        agent.current_task_id = task_id
        task = BrainTask(
            id=task_id,
            task_type=plan.task_type,
            priority=plan.priority,
            opportunity_id=plan.opportunity_id,
            opportunity_kind=plan.opportunity_kind,
            target_api_id=plan.target_api_id,
            assigned_agent_id=agent.id,
            status="assigned",
            allocated_budget=task_budget(agent, plan.potential_revenue),
            expected_revenue=plan.potential_revenue,
            deadline=plan.deadline,
        )
        db.add(task)
        opportunity.status = "assigned"
        await db.commit()
        await db.refresh(task)
        logger.info(
            "Task %s (%s, priority %d, budget %s) assigned to agent %s",
            task.id, task.task_type, task.priority, task.allocated_budget, agent.id,
        )
        return task

    logger.warning(
        "[agent_assignment] No idle %s worker for %s opportunity %s; left unassigned",
        plan.agent_type, plan.opportunity_kind, plan.opportunity_id,
    )
    return None


async def create_task_for_opportunity(
    db: AsyncSession, opportunity_id: str, kind: str = "market",
) -> BrainTask | None:
    model = DemandOpportunity if kind == "demand" else MarketOpportunity
    opportunity = await db.get(model, opportunity_id)
    if opportunity is None:
        raise NotFoundError("Opportunity", opportunity_id)
    registry = await WorkerRegistry.load(db)
    return await assign_opportunity(db, registry, opportunity)


async def schedule_opportunities(db: AsyncSession, limit: int = 50) -> dict:
    """One scheduling pass over every unassigned opportunity."""
    market = (await db.execute(
        select(MarketOpportunity)
        .where(MarketOpportunity.status == "detected")
        .order_by(MarketOpportunity.potential_revenue.desc())
        .limit(limit)
    )).scalars().all()
    demand = (await db.execute(
        select(DemandOpportunity)
        .where(
            DemandOpportunity.temperature == "hot",
            DemandOpportunity.status.in_(["detected", "offer_generated"]),
        )
        .order_by(DemandOpportunity.demand_score.desc())
        .limit(limit)
    )).scalars().all()

    pending = list(market) + list(demand)

    registry = await WorkerRegistry.load(db)
    assigned, unassigned = [], []
    for opportunity in pending:
        task = await assign_opportunity(db, registry, opportunity)
        if task is None:
            unassigned.append(opportunity.id)
        else:
            assigned.append(task.id)

    return {
        "tasks_created": len(assigned),
        "task_ids": assigned,
        "unassigned": len(unassigned),
        "unassigned_opportunity_ids": unassigned,
    }


# ---------------------------------------------------------------------------
# Task execution
# ---------------------------------------------------------------------------

_TASK_TRANSITIONS = {
    "pending": {"assigned", "cancelled"},
    "assigned": {"executing", "cancelled"},
    "executing": {"completed", "failed"},
}


def _move_task(task: BrainTask, new_status: str) -> None:
    if new_status not in _TASK_TRANSITIONS.get(task.status, set()):
        raise ValueError(f"Task is '{task.status}', cannot move to '{new_status}'")
    task.status = new_status


async def execute_task(db: AsyncSession, task_id: str, dispatcher=None, stripe=None) -> dict:
    """Run an assigned task through the execution engine and release its worker."""
    from brokerage.services import execution_service

    task = await db.get(BrainTask, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    # Conditional claim so two runners cannot both start the same task
    claimed = await db.execute(
        update(BrainTask)
        .where(BrainTask.id == task_id, BrainTask.status == "assigned")
        .values(status="executing", updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        task = await db.get(BrainTask, task_id, populate_existing=True)
        raise ValueError(f"Task is '{task.status}', cannot move to 'executing'")
    await db.commit()
    task = await db.get(BrainTask, task_id, populate_existing=True)

    cost = task.allocated_budget
    if task.target_api_id:
        product = await db.get(ApiProduct, task.target_api_id)
        if product is not None:
            cost = product.price_per_call

    execution = await execution_service.create_execution(
        db,
        agent_id=task.assigned_agent_id,
        api_product_id=task.target_api_id,
        task_id=task.id,
        cost=cost,
        source="task",
        task_type=task.task_type,
        payload={"task_id": task.id, "task_type": task.task_type},
    )
    outcome = await execution_service.run_execution(db, execution.id, dispatcher=dispatcher, stripe=stripe)

    task = await db.get(BrainTask, task_id, populate_existing=True)
    _move_task(task, "completed" if outcome.status == "completed" else "failed")
    task.result_json = json.dumps({
        "execution_id": outcome.execution_id,
        "status": outcome.status,
        "error": outcome.error,
    })
    agent = await db.get(AutonomousAgent, task.assigned_agent_id, populate_existing=True)
    if agent is not None and agent.current_task_id == task.id:
        agent.current_task_id = None
        if agent.status == "active":
            agent.status = "idle"
    await db.commit()
    return {"task_id": task.id, "status": task.status, "execution_id": outcome.execution_id}


async def run_assigned_tasks(db: AsyncSession, dispatcher=None, stripe=None, limit: int = 50) -> dict:
    """Execute assigned tasks, most urgent first, returning each worker to the pool."""
    task_ids = (await db.execute(
        select(BrainTask.id)
        .where(BrainTask.status == "assigned")
        .order_by(BrainTask.priority, BrainTask.created_at)
        .limit(limit)
    )).scalars().all()

    completed = failed = 0
    for task_id in task_ids:
        try:
            result = await execute_task(db, task_id, dispatcher=dispatcher, stripe=stripe)
        except ValueError as exc:
            # Started or cancelled elsewhere since the select
            logger.info("Skipping task %s: %s", task_id, exc)
            continue
        if result["status"] == "completed":
            completed += 1
        else:
            failed += 1

    if task_ids:
        logger.info("Ran %d assigned tasks: %d completed, %d failed", completed + failed, completed, failed)
    return {"tasks_run": completed + failed, "completed": completed, "failed": failed}


# ---------------------------------------------------------------------------
# Agent scheduler
# ---------------------------------------------------------------------------

async def _get_agent(db: AsyncSession, agent_id: str) -> AutonomousAgent:
    agent = await db.get(AutonomousAgent, agent_id)
    if agent is None:
        raise NotFoundError("Agent", agent_id)
    return agent


async def activate_agent(db: AsyncSession, agent_id: str) -> AutonomousAgent:
    agent = await _get_agent(db, agent_id)
    agent.status = "active"
    agent.last_active_at = _utcnow()
    await db.commit()
    return agent


async def deactivate_agent(db: AsyncSession, agent_id: str) -> AutonomousAgent:
    """Return a worker to ``idle``, cancelling a task it was assigned but has not started."""
    agent = await _get_agent(db, agent_id)
    if agent.current_task_id:
        task = await db.get(BrainTask, agent.current_task_id)
        if task is not None and task.status == "executing":
            raise ConflictError(
                f"Agent {agent_id} is executing task {task.id}", step="agent_scheduler",
            )
        if task is not None and task.status == "assigned":
            _move_task(task, "cancelled")
            await _reopen_opportunity(db, task)
            logger.info("Cancelled task %s on deactivation of agent %s", task.id, agent_id)
    agent.status = "idle"
    agent.current_task_id = None
    await db.commit()
    return agent


async def _reopen_opportunity(db: AsyncSession, task: BrainTask) -> None:
    if not task.opportunity_id:
        return
    model = DemandOpportunity if task.opportunity_kind == "demand" else MarketOpportunity
    opportunity = await db.get(model, task.opportunity_id)
    if opportunity is not None and opportunity.status == "assigned":
        opportunity.status = "detected"


async def restart_failed_agents(db: AsyncSession) -> int:
    """Return every worker in ``error`` to ``idle`` with a cleared error counter."""
    result = await db.execute(
        update(AutonomousAgent)
        .where(AutonomousAgent.status == "error")
        .values(status="idle", error_count=0, current_task_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    restarted = result.rowcount or 0
    if restarted:
        logger.info("Restarted %d failed agents", restarted)
    return restarted


def _start_of_day() -> datetime:
    return _utcnow().replace(hour=0, minute=0, second=0, microsecond=0)


async def spent_today(db: AsyncSession, agent_id: str) -> tuple[Decimal, int]:
    total, count = (await db.execute(
        select(func.coalesce(func.sum(Execution.cost), 0), func.count(Execution.id)).where(
            Execution.agent_id == agent_id,
            Execution.created_at >= _start_of_day(),
            Execution.status != "failed",
        )
    )).one()
    return to_decimal(total), int(count)


async def get_agent_status(db: AsyncSession, agent_id: str) -> dict:
    agent = await _get_agent(db, agent_id)
    spent, executions = await spent_today(db, agent_id)
    budget = to_decimal(agent.daily_budget)
    return {
        "agent": agent_to_dict(agent),
        "today": {
            "spent": float(spent),
            "executions": executions,
            "remaining_budget": float(max(Decimal("0"), budget - spent)),
        },
    }


async def run_scheduled_cycle(
    db: AsyncSession, dispatcher=None, stripe=None, rng: random.Random | None = None,
) -> dict:
    """Give every active agent with budget left one billed execution of an affordable product."""
    from brokerage.services import billing_service

    rng = rng or random.Random()
    agents = (await db.execute(
        select(AutonomousAgent)
        .where(AutonomousAgent.status == "active")
        .order_by(AutonomousAgent.created_at, AutonomousAgent.id)
    )).scalars().all()
    agent_ids = [(a.id, to_decimal(a.daily_budget)) for a in agents]

    results = []
    for agent_id, budget in agent_ids:
        spent, _ = await spent_today(db, agent_id)
        remaining = budget - spent
        if remaining <= 0:
            results.append({"agent_id": agent_id, "status": "skipped", "reason": "daily budget exhausted"})
            continue

        products = (await db.execute(
            select(ApiProduct.id)
            .where(ApiProduct.is_active.is_(True), ApiProduct.price_per_call <= remaining)
            .order_by(ApiProduct.created_at, ApiProduct.id)
        )).scalars().all()
        if not products:
            results.append({"agent_id": agent_id, "status": "skipped", "reason": "no affordable product"})
            continue

        payment = await billing_service.create_execution_payment(
            db, agent_id, rng.choice(products), dispatcher=dispatcher, stripe=stripe,
        )
        results.append({"agent_id": agent_id, **payment})

    executed = sum(1 for r in results if r.get("status") == "completed")
    logger.info("Scheduled cycle: %d agents, %d successful executions", len(results), executed)
    return {"agents_processed": len(results), "successful_executions": executed, "results": results}


def agent_to_dict(agent: AutonomousAgent) -> dict:
    return {
        "id": agent.id,
        "agent_name": agent.agent_name,
        "agent_type": agent.agent_type,
        "status": agent.status,
        "capabilities": json.loads(agent.capabilities or "[]"),
        "performance_score": float(agent.performance_score or 0),
        "success_rate": float(agent.success_rate or 0),
        "daily_budget": float(agent.daily_budget or 0),
        "wallet_address": agent.wallet_address or "",
        "current_task_id": agent.current_task_id,
        "error_count": agent.error_count or 0,
        "last_error": agent.last_error,
        "total_tasks_completed": agent.total_tasks_completed or 0,
        "total_revenue_generated": float(agent.total_revenue_generated or 0),
    }


async def get_brain_status(db: AsyncSession) -> dict:
    """Worker, task and open-opportunity counts for the operator dashboard."""
    agents = dict((await db.execute(
        select(AutonomousAgent.status, func.count(AutonomousAgent.id)).group_by(AutonomousAgent.status)
    )).all())
    tasks = dict((await db.execute(
        select(BrainTask.status, func.count(BrainTask.id)).group_by(BrainTask.status)
    )).all())
    open_market = (await db.execute(
        select(func.count(MarketOpportunity.id)).where(MarketOpportunity.status == "detected")
    )).scalar()
    return {
        "agents": {"total": sum(agents.values()), "by_status": agents},
        "tasks": {"total": sum(tasks.values()), "by_status": tasks},
        "open_market_opportunities": int(open_market or 0),
    }


def task_to_dict(task: BrainTask) -> dict:
    return {
        "id": task.id,
        "task_type": task.task_type,
        "priority": task.priority,
        "opportunity_id": task.opportunity_id,
        "opportunity_kind": task.opportunity_kind,
        "target_api_id": task.target_api_id,
        "assigned_agent_id": task.assigned_agent_id,
        "status": task.status,
        "allocated_budget": float(task.allocated_budget or 0),
        "expected_revenue": float(task.expected_revenue or 0),
        "deadline": task.deadline.isoformat() if task.deadline else None,
    }
