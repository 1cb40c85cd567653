"""Execution engine: the execution state machine, target dispatch and the worker queue.

An execution moves ``pending -> executing -> completed | failed`` (or straight
from ``pending`` to ``failed`` when it never dispatches). Terminal states are
final. The engine never retries a failed execution; retries belong to the
payment path.

``run_execution`` commits in two phases: the terminal state together with
worker/product statistics, then the billing step. A billing failure is logged
against the execution and never rolls back its terminal state.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
from fastapi import HTTPException, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from brokerage.config import settings
from brokerage.core.exceptions import (
    BrokerageError,
    InvalidExecutionTransitionError,
    NoAvailableWorkerError,
    NotFoundError,
)
from brokerage.models.agent import AutonomousAgent
from brokerage.models.execution import Execution, ExecutionLog
from brokerage.models.product import ApiProduct, ApiUsageMetric
from brokerage.services import billing_service
from brokerage.services.billing_service import to_decimal
from brokerage.services.stripe_service import StripePaymentService

logger = logging.getLogger(__name__)

EXECUTION_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"executing", "failed"},
    "executing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}
TERMINAL_STATES = frozenset({"completed", "failed"})

SIMULATED_SCHEME = "simulated://"


def _utcnow():
    return datetime.now(timezone.utc)


def transition(execution: Execution, new_status: str) -> None:
    """Move ``execution`` to ``new_status`` or raise InvalidExecutionTransitionError."""
    current = execution.status
    if new_status not in EXECUTION_TRANSITIONS.get(current, set()):
        raise InvalidExecutionTransitionError(current, new_status)
    execution.status = new_status
    if new_status == "executing":
        execution.started_at = _utcnow()
    elif new_status in TERMINAL_STATES:
        execution.completed_at = _utcnow()


# ---------------------------------------------------------------------------
# Target dispatch
# ---------------------------------------------------------------------------

@dataclass
class DispatchResult:
    success: bool
    response_time_ms: int
    data: dict = field(default_factory=dict)
    error: str | None = None
    status_code: int | None = None


def is_simulated_target(product: ApiProduct | None) -> bool:
    return product is None or not product.api_endpoint or product.api_endpoint.startswith(SIMULATED_SCHEME)


def _load_json(raw: str | None) -> dict:
    try:
        value = json.loads(raw or "{}")
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


class TargetDispatcher:
    """Calls a product endpoint over HTTP, or simulates it when it has none."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        failure_rate: float | None = None,
        latency_ms: tuple[int, int] | None = None,
        rng: random.Random | None = None,
    ):
        self._client = client
        self._owns_client = client is None
        self.failure_rate = settings.simulated_failure_rate if failure_rate is None else failure_rate
        self.latency_ms = latency_ms or (settings.simulated_latency_ms_min, settings.simulated_latency_ms_max)
        self.rng = rng or random.Random()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.target_timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def dispatch(self, product: ApiProduct | None, payload: dict) -> DispatchResult:
        if is_simulated_target(product):
            return await self._simulate(product, payload)
        return await self._call(product, payload)

    async def _simulate(self, product: ApiProduct | None, payload: dict) -> DispatchResult:
        low, high = self.latency_ms
        latency = self.rng.randint(low, high) if high > 0 else 0
        if latency:
            await asyncio.sleep(latency / 1000)
        if self.rng.random() < self.failure_rate:
            return DispatchResult(False, latency, error="Simulated target failure")
        return DispatchResult(
            True,
            latency,
            data={
                "simulated": True,
                "target": product.name if product else "simulated",
                "echo": payload,
            },
            status_code=200,
        )

    async def _call(self, product: ApiProduct, payload: dict) -> DispatchResult:
        headers = {str(k): str(v) for k, v in _load_json(product.request_headers).items()}
        credentials = _load_json(product.auth_credentials)
        if product.auth_method == "bearer" and credentials.get("token"):
            headers["Authorization"] = f"Bearer {credentials['token']}"
        elif product.auth_method == "api_key" and credentials.get("key"):
            headers[credentials.get("header", "X-API-Key")] = str(credentials["key"])

        method = (product.request_method or "POST").upper()
        started = time.perf_counter()
        try:
            if method in {"GET", "DELETE"}:
                response = await self.client.request(
                    method, product.api_endpoint, headers=headers, params=payload,
                )
            else:
                response = await self.client.request(
                    method, product.api_endpoint, headers=headers, json=payload,
                )
        except httpx.HTTPError as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            return DispatchResult(False, elapsed, error=f"{type(exc).__name__}: {exc}")

        elapsed = int((time.perf_counter() - started) * 1000)
        try:
            body = response.json()
        except ValueError:
            body = {"text": response.text[:1000]}
        if not isinstance(body, dict):
            body = {"data": body}

        if not response.is_success:
            return DispatchResult(
                False, elapsed, data=body, error=f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return DispatchResult(True, elapsed, data=body, status_code=response.status_code)


_default_dispatcher: TargetDispatcher | None = None


def get_dispatcher() -> TargetDispatcher:
    """FastAPI dependency for the process-wide dispatcher."""
    global _default_dispatcher
    if _default_dispatcher is None:
        _default_dispatcher = TargetDispatcher()
    return _default_dispatcher


# ---------------------------------------------------------------------------
# Execution records and step log
# ---------------------------------------------------------------------------

@dataclass
class ExecutionOutcome:
    execution_id: str
    status: str
    response_time_ms: int | None = None
    result: dict = field(default_factory=dict)
    error: str | None = None
    revenue_record_id: str | None = None
    billing_error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "completed" and self.billing_error is None


async def log_step(
    db: AsyncSession,
    execution_id: str,
    step: str,
    status: str,
    details: dict | None = None,
    duration_ms: int | None = None,
    api_key_id: str | None = None,
) -> ExecutionLog:
    """Append a step to the execution log. Flushes; the caller commits."""
    entry = ExecutionLog(
        execution_id=execution_id,
        api_key_id=api_key_id,
        step=step,
        status=status,
        details=json.dumps(details or {}, default=str),
        duration_ms=duration_ms,
    )
    db.add(entry)
    await db.flush()
    log = logger.warning if status == "error" else logger.info
    log("[%s] execution=%s status=%s %s", step, execution_id, status, details or "")
    return entry


async def create_execution(
    db: AsyncSession,
    agent_id: str,
    cost,
    source: str,
    api_product_id: str | None = None,
    task_id: str | None = None,
    api_key_id: str | None = None,
    listing_id: str | None = None,
    user_id: str | None = None,
    task_type: str | None = None,
    payload: dict | None = None,
) -> Execution:
    """Create a ``pending`` execution and its ``request_received`` step, then commit."""
    execution = Execution(
        agent_id=agent_id,
        api_product_id=api_product_id,
        task_id=task_id,
        api_key_id=api_key_id,
        listing_id=listing_id,
        user_id=user_id,
        source=source,
        task_type=task_type,
        request_payload=json.dumps(payload or {}, default=str),
        cost=to_decimal(cost),
        status="pending",
    )
    db.add(execution)
    await db.flush()
    await log_step(
        db, execution.id, "request_received", "success",
        {"source": source, "task_type": task_type, "cost": float(execution.cost)},
        api_key_id=api_key_id,
    )
    await db.commit()
    await db.refresh(execution)
    return execution


# ---------------------------------------------------------------------------
# Worker and product statistics
# ---------------------------------------------------------------------------

def _record_agent_outcome(agent: AutonomousAgent, success: bool, error: str | None = None) -> None:
    completed = agent.total_tasks_completed or 0
    failed = agent.total_tasks_failed or 0
    if success:
        completed += 1
    else:
        failed += 1
    agent.total_tasks_completed = completed
    agent.total_tasks_failed = failed
    agent.success_rate = round(completed / (completed + failed), 4)
    previous = float(agent.performance_score if agent.performance_score is not None else 0.5)
    agent.performance_score = round(previous * 0.9 + (0.1 if success else 0.0), 4)
    agent.last_active_at = _utcnow()

    if not success:
        agent.error_count = (agent.error_count or 0) + 1
        agent.last_error = error
        if agent.error_count >= settings.worker_error_threshold and agent.status != "maintenance":
            agent.status = "error"
            logger.warning(
                "Agent %s moved to error state after %d errors", agent.id, agent.error_count,
            )


async def record_product_usage(
    db: AsyncSession,
    product: ApiProduct,
    consumer_id: str,
    success: bool,
    response_time_ms: int,
    cost,
) -> ApiUsageMetric:
    """Fold one call into the hourly usage row for (product, consumer)."""
    hour = _utcnow().replace(minute=0, second=0, microsecond=0)
    result = await db.execute(
        select(ApiUsageMetric).where(
            ApiUsageMetric.api_product_id == product.id,
            ApiUsageMetric.consumer_id == consumer_id,
            ApiUsageMetric.time_granularity == "hour",
            ApiUsageMetric.time_window == hour,
        )
    )
    metric = result.scalar_one_or_none()
    if metric is None:
        metric = ApiUsageMetric(
            api_product_id=product.id,
            consumer_id=consumer_id,
            time_window=hour,
            time_granularity="hour",
            call_count=0,
            success_count=0,
            error_count=0,
            avg_response_time_ms=0,
            total_cost=0,
        )
        db.add(metric)

    calls = (metric.call_count or 0) + 1
    metric.avg_response_time_ms = int(
        ((metric.avg_response_time_ms or 0) * (calls - 1) + response_time_ms) / calls
    )
    metric.call_count = calls
    if success:
        metric.success_count = (metric.success_count or 0) + 1
        metric.total_cost = to_decimal(metric.total_cost or 0) + to_decimal(cost)
    else:
        metric.error_count = (metric.error_count or 0) + 1

    product.total_calls = (product.total_calls or 0) + 1
    if success:
        product.successful_calls = (product.successful_calls or 0) + 1
        product.total_revenue = to_decimal(product.total_revenue or 0) + to_decimal(cost)
    else:
        product.failed_calls = (product.failed_calls or 0) + 1
    await db.flush()
    return metric


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def run_execution(
    db: AsyncSession,
    execution_id: str,
    dispatcher: TargetDispatcher | None = None,
    stripe: StripePaymentService | None = None,
) -> ExecutionOutcome:
    """Dispatch a pending execution, settle its terminal state, then bill it."""
    dispatcher = dispatcher or get_dispatcher()
    execution = await db.get(Execution, execution_id)
    if execution is None:
        raise NotFoundError("Execution", execution_id)

    agent = await db.get(AutonomousAgent, execution.agent_id)
    product = await db.get(ApiProduct, execution.api_product_id) if execution.api_product_id else None
    api_key_id = execution.api_key_id

    if agent is None:
        transition(execution, "failed")
        execution.error_message = "Assigned agent no longer exists"
        await log_step(db, execution_id, "execution_failed", "error",
                       {"error": execution.error_message}, api_key_id=api_key_id)
        await _release_key_spend(db, execution)
        await db.commit()
        return ExecutionOutcome(execution_id, "failed", error=execution.error_message)

    transition(execution, "executing")
    await log_step(
        db, execution_id, "agent_assigned", "success",
        {"agent_id": agent.id, "agent_name": agent.agent_name, "agent_type": agent.agent_type},
        api_key_id=api_key_id,
    )
    await db.commit()

    try:
        payload = _load_json(execution.request_payload)
        result = await dispatcher.dispatch(product, payload)
    except Exception as exc:
        logger.exception("[execution_dispatched] Dispatcher raised for execution %s", execution_id)
        result = DispatchResult(False, 0, error=f"Dispatch error: {exc}")

    execution.response_time_ms = result.response_time_ms
    execution.result_json = json.dumps(result.data, default=str)

    if not result.success:
        transition(execution, "failed")
        execution.error_message = result.error
        _record_agent_outcome(agent, success=False, error=result.error)
        if product is not None:
            await record_product_usage(db, product, agent.id, False, result.response_time_ms, 0)
        await _release_key_spend(db, execution)
        await log_step(
            db, execution_id, "execution_failed", "error",
            {"error": result.error, "status_code": result.status_code},
            duration_ms=result.response_time_ms, api_key_id=api_key_id,
        )
        await db.commit()
        return ExecutionOutcome(
            execution_id, "failed", result.response_time_ms, result.data, result.error,
        )

    transition(execution, "completed")
    _record_agent_outcome(agent, success=True)
    if product is not None:
        await record_product_usage(db, product, agent.id, True, result.response_time_ms, execution.cost)
    await log_step(
        db, execution_id, "execution_completed", "success",
        {"response_time_ms": result.response_time_ms},
        duration_ms=result.response_time_ms, api_key_id=api_key_id,
    )
    await db.commit()

    outcome = ExecutionOutcome(execution_id, "completed", result.response_time_ms, result.data)
    try:
        record = await billing_service.bill_execution(db, execution, stripe)
        agent.total_revenue_generated = to_decimal(agent.total_revenue_generated or 0) + record.amount
        await log_step(
            db, execution_id, "billing", "success",
            {"revenue": float(record.amount), "platform_fee": float(record.platform_fee),
             "revenue_status": record.status},
            api_key_id=api_key_id,
        )
        await db.commit()
        outcome.revenue_record_id = record.id
    except (HTTPException, ValueError, IntegrityError) as exc:
        await db.rollback()
        detail = exc.detail if isinstance(exc, HTTPException) else str(exc)
        outcome.billing_error = detail if isinstance(detail, str) else json.dumps(detail)
        await log_step(db, execution_id, "billing", "error", {"error": detail}, api_key_id=api_key_id)
        await db.commit()
    return outcome


async def _release_key_spend(db: AsyncSession, execution: Execution) -> None:
    if execution.source == "direct" and execution.api_key_id:
        from brokerage.services.api_key_service import release_spend

        await release_spend(db, execution.api_key_id, execution.cost)


async def get_execution_status(db: AsyncSession, execution_id: str) -> dict:
    """The execution record plus its ordered step log."""
    execution = await db.get(Execution, execution_id)
    if execution is None:
        raise NotFoundError("Execution", execution_id)
    logs = (await db.execute(
        select(ExecutionLog)
        .where(ExecutionLog.execution_id == execution_id)
        .order_by(ExecutionLog.created_at, ExecutionLog.id)
    )).scalars().all()
    return {
        "execution": execution_to_dict(execution),
        "logs": [
            {
                "step": entry.step,
                "status": entry.status,
                "details": _load_json(entry.details),
                "duration_ms": entry.duration_ms,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in logs
        ],
    }


def execution_to_dict(execution: Execution) -> dict:
    return {
        "id": execution.id,
        "agent_id": execution.agent_id,
        "api_product_id": execution.api_product_id,
        "task_id": execution.task_id,
        "source": execution.source,
        "task_type": execution.task_type,
        "status": execution.status,
        "cost": float(execution.cost or 0),
        "revenue": float(execution.revenue or 0),
        "response_time_ms": execution.response_time_ms,
        "error_message": execution.error_message,
        "result": _load_json(execution.result_json),
        "started_at": execution.started_at.isoformat() if execution.started_at else None,
        "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
        "created_at": execution.created_at.isoformat() if execution.created_at else None,
    }


# ---------------------------------------------------------------------------
# Queue + worker pool
# ---------------------------------------------------------------------------

class ExecutionQueue:
    """In-process queue of execution ids drained by a fixed pool of consumers.

    Each consumer opens its own session, so a failure in one execution never
    affects another. There is no cancellation of in-flight executions.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: TargetDispatcher | None = None,
        workers: int | None = None,
        maxsize: int | None = None,
        stripe: StripePaymentService | None = None,
    ):
        self._session_factory = session_factory
        self.dispatcher = dispatcher
        self.stripe = stripe
        self.workers = workers or settings.execution_workers
        self._queue: asyncio.Queue[str] = asyncio.Queue(
            maxsize=settings.execution_queue_maxsize if maxsize is None else maxsize
        )
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def qsize(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._consume(), name=f"execution-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Execution queue started with %d workers", self.workers)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def enqueue(self, execution_id: str) -> None:
        try:
            self._queue.put_nowait(execution_id)
        except asyncio.QueueFull:
            logger.error("[enqueue] Execution queue full, rejecting %s", execution_id)
            raise BrokerageError(503, "Execution queue is full", step="enqueue")

    async def join(self) -> None:
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            execution_id = await self._queue.get()
            try:
                async with self._session_factory() as db:
                    await run_execution(db, execution_id, self.dispatcher, self.stripe)
            except Exception:
                logger.exception("Execution worker failed on %s", execution_id)
            finally:
                self._queue.task_done()


def get_execution_queue(request: Request) -> ExecutionQueue:
    """FastAPI dependency for the queue created in the app lifespan."""
    return request.app.state.execution_queue


# ---------------------------------------------------------------------------
# Direct (API key) execution requests
# ---------------------------------------------------------------------------

TASK_TYPE_MULTIPLIERS = {"payment": 2.0, "automation": 1.5, "data": 1.0, "ai": 3.0}
TASK_AGENT_TYPES = {
    "payment": "payment_bot",
    "data": "api_consumer",
    "automation": "volume_generator",
    "ai": "api_consumer",
}


def price_for_task(task_type: str):
    """Quote for a direct execution, fee included (see billing_service)."""
    multiplier = TASK_TYPE_MULTIPLIERS.get(task_type)
    if multiplier is None:
        raise ValueError(f"Unknown task_type '{task_type}'")
    return to_decimal(to_decimal(settings.base_execution_fee) * to_decimal(multiplier))


async def submit_direct_execution(
    db: AsyncSession,
    key,
    task_type: str,
    payload: dict,
    queue: ExecutionQueue,
    priority: int = 3,
) -> tuple[Execution, AutonomousAgent]:
    """Admit a direct execution request and queue it.

    Order: price the task, find a worker (503), reserve budget atomically
    (402), then persist the pending execution and hand it to the queue.
    """
    from brokerage.services import api_key_service
    from brokerage.services.scheduler_service import AVAILABLE_STATUSES, WorkerRegistry

    cost = price_for_task(task_type)

    registry = await WorkerRegistry.load(db)
    wanted = TASK_AGENT_TYPES[task_type]
    candidates = registry.candidates(wanted, statuses=AVAILABLE_STATUSES) or registry.candidates(
        statuses=AVAILABLE_STATUSES
    )
    if not candidates:
        logger.warning("[agent_assignment] No available agent for task type %s", task_type)
        raise NoAvailableWorkerError(task_type)
    agent = candidates[0]

    await api_key_service.reserve_spend(db, key, cost)
    await api_key_service.record_call(db, key, cost)

    execution = await create_execution(
        db,
        agent_id=agent.id,
        api_key_id=key.id,
        cost=cost,
        source="direct",
        task_type=task_type,
        payload={"payload": payload, "priority": priority},
    )
    try:
        queue.enqueue(execution.id)
    except BrokerageError:
        transition(execution, "failed")
        execution.error_message = "Execution queue is full"
        await _release_key_spend(db, execution)
        await log_step(db, execution.id, "execution_failed", "error",
                       {"error": execution.error_message}, api_key_id=key.id)
        await db.commit()
        raise
    return execution, agent
