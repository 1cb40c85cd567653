"""Task scheduler / agent assignor and the agent scheduler operations."""

import random
import uuid
from unittest.mock import patch
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from brokerage.core.exceptions import ConflictError, NotFoundError
from brokerage.models.agent import AutonomousAgent, BrainTask
from brokerage.models.execution import Execution
from brokerage.models.opportunity import DemandOpportunity, MarketOpportunity
from brokerage.models.revenue import RevenueRecord
from brokerage.services import scheduler_service
from brokerage.services.scheduler_service import WorkerRegistry, plan_for, task_budget
from brokerage.tests.support import TestSession


def _id() -> str:
    return str(uuid.uuid4())


async def _market_opportunity(db, product_id, demand=0.6, revenue=2000):
    now = datetime.now(timezone.utc)
    opportunity = MarketOpportunity(
        api_product_id=product_id,
        demand_score=demand,
        competition_score=0.2,
        complexity_score=0.4,
        potential_revenue=revenue,
        estimated_cost=revenue * 0.2,
        time_window_start=now,
        time_window_end=now + timedelta(hours=24),
        status="detected",
    )
    db.add(opportunity)
    await db.commit()
    await db.refresh(opportunity)
    return opportunity


async def _demand_opportunity(db, score=95.0, price=750, temperature="hot"):
    opportunity = DemandOpportunity(
        signal_id=_id(),
        intent_id=_id(),
        prediction_id=_id(),
        title="Demand: api integration",
        demand_score=score,
        temperature=temperature,
        recommended_service="api_on_demand",
        suggested_price=price,
        estimated_delivery_days=7,
        status="detected",
    )
    db.add(opportunity)
    await db.commit()
    await db.refresh(opportunity)
    return opportunity


# ---------------------------------------------------------------------------
# Registry + planning
# ---------------------------------------------------------------------------

class TestWorkerRegistry:
    async def test_best_idle_prefers_performance(self, db, make_agent):
        await make_agent("api_consumer", performance_score=0.4)
        best = await make_agent("api_consumer", performance_score=0.9)
        await make_agent("api_consumer", status="active", performance_score=1.0)

        registry = await WorkerRegistry.load(db)
        assert registry.best_idle("api_consumer").id == best.id

    async def test_ties_keep_creation_order(self, db, make_agent):
        first = await make_agent("payment_bot", performance_score=0.7)
        await make_agent("payment_bot", performance_score=0.7)

        registry = await WorkerRegistry.load(db)
        assert registry.best_idle("payment_bot").id == first.id

    async def test_mark_taken_excludes_worker(self, db, make_agent):
        only = await make_agent("volume_generator")
        registry = await WorkerRegistry.load(db)
        registry.mark_taken(only.id)
        assert registry.best_idle("volume_generator") is None


class TestPlanning:
    async def test_high_demand_goes_to_volume_generator(self, db):
        opportunity = await _demand_opportunity(db, score=95.0)
        plan = plan_for(opportunity)
        assert (plan.agent_type, plan.task_type, plan.priority) == ("volume_generator", "volume_generation", 1)
        assert plan.opportunity_kind == "demand"
        assert plan.potential_revenue == Decimal("750.000000")

    async def test_high_revenue_goes_to_payment_bot(self, db, make_product):
        product = await make_product()
        opportunity = await _market_opportunity(db, product.id, demand=0.6, revenue=2000)
        plan = plan_for(opportunity)
        assert (plan.agent_type, plan.task_type, plan.priority) == ("payment_bot", "payment", 3)
        assert plan.target_api_id == product.id

    async def test_default_is_api_consumer(self, db, make_product):
        product = await make_product()
        opportunity = await _market_opportunity(db, product.id, demand=0.75, revenue=100)
        plan = plan_for(opportunity)
        assert (plan.agent_type, plan.priority) == ("api_consumer", 2)

    async def test_task_budget_is_smaller_cap(self, db, make_agent):
        agent = await make_agent(daily_budget=100)
        assert task_budget(agent, Decimal("2000")) == Decimal("10.000000")
        assert task_budget(agent, Decimal("100")) == Decimal("5.000000")


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

class TestAssignOpportunity:
    async def test_assigns_best_idle_worker(self, db, make_agent, make_product):
        product = await make_product()
        await make_agent("payment_bot", performance_score=0.3)
        best = await make_agent("payment_bot", performance_score=0.8)
        opportunity = await _market_opportunity(db, product.id, revenue=2000)

        registry = await WorkerRegistry.load(db)
        task = await scheduler_service.assign_opportunity(db, registry, opportunity)

        assert task.status == "assigned"
        assert task.assigned_agent_id == best.id
        assert task.allocated_budget == Decimal("10.000000")
        assert task.target_api_id == product.id

        async with TestSession() as check:
            worker = await check.get(AutonomousAgent, best.id)
            assert worker.status == "active"
            assert worker.current_task_id == task.id
            stored = await check.get(MarketOpportunity, opportunity.id)
            assert stored.status == "assigned"

    async def test_no_worker_leaves_opportunity_unassigned(self, db, make_product):
        product = await make_product()
        opportunity = await _market_opportunity(db, product.id)

        registry = await WorkerRegistry.load(db)
        assert await scheduler_service.assign_opportunity(db, registry, opportunity) is None

        assert (await db.execute(select(BrainTask))).scalars().all() == []
        await db.refresh(opportunity)
        assert opportunity.status == "detected"

    async def test_stale_registry_cannot_double_book(self, db, make_agent, make_product):
        product = await make_product()
        worker = await make_agent("payment_bot")
        first = await _market_opportunity(db, product.id)
        second = await _market_opportunity(db, product.id)

        async with TestSession() as other:
            stale = await WorkerRegistry.load(other)
            fresh = await WorkerRegistry.load(db)

            assert (await scheduler_service.assign_opportunity(db, fresh, first)).assigned_agent_id == worker.id
            other_second = await other.get(MarketOpportunity, second.id)
            assert await scheduler_service.assign_opportunity(other, stale, other_second) is None

        tasks = (await db.execute(select(BrainTask))).scalars().all()
        assert len(tasks) == 1

    async def test_schedule_pass_counts(self, db, make_agent, make_product):
        product = await make_product()
        await make_agent("payment_bot")
        await make_agent("volume_generator")
        await _market_opportunity(db, product.id, revenue=5000)
        await _market_opportunity(db, product.id, revenue=3000)
        await _demand_opportunity(db, score=95.0)
        await _demand_opportunity(db, score=30.0, temperature="cold")

        result = await scheduler_service.schedule_opportunities(db)

        assert result["tasks_created"] == 2
        assert result["unassigned"] == 1

    async def test_create_task_for_unknown_opportunity(self, db):
        with pytest.raises(NotFoundError):
            await scheduler_service.create_task_for_opportunity(db, "missing")


# ---------------------------------------------------------------------------
# Task execution
# ---------------------------------------------------------------------------

class TestExecuteTask:
    async def test_runs_execution_and_releases_worker(self, db, make_agent, make_product, dispatcher):
        product = await make_product(price_per_call=2.0)
        worker = await make_agent("payment_bot")
        opportunity = await _market_opportunity(db, product.id)
        task = await scheduler_service.create_task_for_opportunity(db, opportunity.id)

        result = await scheduler_service.execute_task(db, task.id, dispatcher=dispatcher)

        assert result["status"] == "completed"
        async with TestSession() as check:
            execution = await check.get(Execution, result["execution_id"])
            assert execution.source == "task"
            assert execution.task_id == task.id
            assert execution.cost == Decimal("2.000000")
            assert execution.status == "completed"

            stored_worker = await check.get(AutonomousAgent, worker.id)
            assert stored_worker.status == "idle"
            assert stored_worker.current_task_id is None
            assert stored_worker.total_tasks_completed == 1

            revenue = (await check.execute(
                select(RevenueRecord).where(RevenueRecord.task_id == task.id)
            )).scalar_one()
            assert revenue.revenue_source == "task_execution"

    async def test_failed_task(self, db, make_agent, make_product):
        from brokerage.tests.support import make_dispatcher

        product = await make_product()
        await make_agent("payment_bot")
        opportunity = await _market_opportunity(db, product.id)
        task = await scheduler_service.create_task_for_opportunity(db, opportunity.id)

        result = await scheduler_service.execute_task(db, task.id, dispatcher=make_dispatcher(failure_rate=1.0))
        assert result["status"] == "failed"

    async def test_task_cannot_run_twice(self, db, make_agent, make_product, dispatcher):
        product = await make_product()
        await make_agent("payment_bot")
        opportunity = await _market_opportunity(db, product.id)
        task = await scheduler_service.create_task_for_opportunity(db, opportunity.id)

        await scheduler_service.execute_task(db, task.id, dispatcher=dispatcher)
        with pytest.raises(ValueError):
            await scheduler_service.execute_task(db, task.id, dispatcher=dispatcher)


class TestRunAssignedTasks:
    async def test_pass_runs_tasks_and_frees_workers(self, db, make_agent, make_product, dispatcher):
        product = await make_product(price_per_call=2.0)
        worker = await make_agent("payment_bot")
        await _market_opportunity(db, product.id)

        scheduled = await scheduler_service.schedule_opportunities(db)
        assert scheduled["tasks_created"] == 1

        result = await scheduler_service.run_assigned_tasks(db, dispatcher=dispatcher)

        assert result == {"tasks_run": 1, "completed": 1, "failed": 0}
        async with TestSession() as check:
            stored = await check.get(AutonomousAgent, worker.id)
            assert stored.status == "idle"
            assert stored.current_task_id is None
            task = await check.get(BrainTask, scheduled["task_ids"][0])
            assert task.status == "completed"

        await _market_opportunity(db, product.id)
        again = await scheduler_service.schedule_opportunities(db)
        assert again["tasks_created"] == 1

    async def test_nothing_assigned(self, db):
        result = await scheduler_service.run_assigned_tasks(db)
        assert result == {"tasks_run": 0, "completed": 0, "failed": 0}

    async def test_cancelled_task_is_not_run(self, db, make_agent, make_product, dispatcher):
        product = await make_product()
        worker = await make_agent("payment_bot")
        opportunity = await _market_opportunity(db, product.id)
        await scheduler_service.create_task_for_opportunity(db, opportunity.id)
        await scheduler_service.deactivate_agent(db, worker.id)

        result = await scheduler_service.run_assigned_tasks(db, dispatcher=dispatcher)

        assert result["tasks_run"] == 0

    async def test_market_loop_keeps_workers_available(
        self, db, make_agent, make_product, make_usage, dispatcher,
    ):
        from brokerage.main import _market_job

        product = await make_product(price_per_call=1.0, active_consumers=5)
        await make_usage(product.id, hours=3, calls=200)
        worker = await make_agent("volume_generator")

        with patch("brokerage.services.execution_service.get_dispatcher", return_value=dispatcher):
            await _market_job(db)
            await _market_job(db)

        async with TestSession() as check:
            tasks = (await check.execute(select(BrainTask))).scalars().all()
            assert [t.status for t in tasks] == ["completed", "completed"]
            assert {t.assigned_agent_id for t in tasks} == {worker.id}
            executions = (await check.execute(select(Execution))).scalars().all()
            assert len(executions) == 2
            stored = await check.get(AutonomousAgent, worker.id)
            assert stored.status == "idle"


# ---------------------------------------------------------------------------
# Agent scheduler
# ---------------------------------------------------------------------------

class TestAgentScheduler:
    async def test_activate_and_deactivate(self, db, make_agent):
        agent = await make_agent()
        assert (await scheduler_service.activate_agent(db, agent.id)).status == "active"
        assert (await scheduler_service.deactivate_agent(db, agent.id)).status == "idle"

    async def test_deactivate_cancels_unstarted_task(self, db, make_agent, make_product):
        product = await make_product()
        worker = await make_agent("payment_bot")
        opportunity = await _market_opportunity(db, product.id)
        task = await scheduler_service.create_task_for_opportunity(db, opportunity.id)
        task_id, opportunity_id = task.id, opportunity.id

        agent = await scheduler_service.deactivate_agent(db, worker.id)

        assert agent.status == "idle"
        assert agent.current_task_id is None
        async with TestSession() as check:
            assert (await check.get(BrainTask, task_id)).status == "cancelled"
            assert (await check.get(MarketOpportunity, opportunity_id)).status == "detected"
        with pytest.raises(ValueError):
            await scheduler_service.execute_task(db, task_id)

    async def test_deactivate_refuses_while_executing(self, db, make_agent, make_product):
        product = await make_product()
        worker = await make_agent("payment_bot")
        opportunity = await _market_opportunity(db, product.id)
        task = await scheduler_service.create_task_for_opportunity(db, opportunity.id)
        task.status = "executing"
        await db.commit()

        with pytest.raises(ConflictError) as exc_info:
            await scheduler_service.deactivate_agent(db, worker.id)

        assert exc_info.value.status_code == 409
        async with TestSession() as check:
            stored = await check.get(AutonomousAgent, worker.id)
            assert stored.current_task_id == task.id

    async def test_unknown_agent(self, db):
        with pytest.raises(NotFoundError):
            await scheduler_service.activate_agent(db, "missing")

    async def test_restart_failed_agents(self, db, make_agent):
        broken = await make_agent(status="error", error_count=5)
        await make_agent(status="idle")

        assert await scheduler_service.restart_failed_agents(db) == 1
        async with TestSession() as check:
            restored = await check.get(AutonomousAgent, broken.id)
            assert restored.status == "idle"
            assert restored.error_count == 0

    async def test_scheduled_cycle_bills_active_agents(
        self, db, make_agent, make_product, dispatcher, fake_stripe,
    ):
        await make_product(price_per_call=1.0)
        runner = await make_agent("api_consumer", status="active", daily_budget=50)
        await make_agent("api_consumer", status="active", daily_budget=0)
        await make_agent("api_consumer", status="idle")

        result = await scheduler_service.run_scheduled_cycle(
            db, dispatcher=dispatcher, stripe=fake_stripe, rng=random.Random(3),
        )

        assert result["agents_processed"] == 2
        assert result["successful_executions"] == 1
        skipped = [r for r in result["results"] if r["status"] == "skipped"]
        assert skipped[0]["reason"] == "daily budget exhausted"

        status = await scheduler_service.get_agent_status(db, runner.id)
        assert status["today"]["executions"] == 1
        assert status["today"]["spent"] == pytest.approx(1.0)
        assert status["today"]["remaining_budget"] == pytest.approx(49.0)
        assert len(fake_stripe.intents) == 1

    async def test_brain_status_counts(self, db, make_agent):
        await make_agent(status="idle")
        await make_agent(status="error")
        status = await scheduler_service.get_brain_status(db)
        assert status["agents"]["total"] == 2
        assert status["agents"]["by_status"] == {"idle": 1, "error": 1}
        assert status["tasks"]["total"] == 0
