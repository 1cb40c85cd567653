"""Billing and revenue splitting for completed executions.

Every path uses one split. The payer is charged ``cost`` and that gross
amount is the recorded revenue. It is divided into

    platform_fee  = cost * platform_fee_pct   (5%)
    seller_amount = cost * seller_share_pct   (80%)
    agent_reward  = cost - platform_fee - seller_amount

so the three parts always sum exactly to the revenue amount.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.config import settings
from brokerage.core.exceptions import NotFoundError
from brokerage.models.api_key import ApiKey
from brokerage.models.execution import Execution
from brokerage.models.payment import Payment
from brokerage.models.product import ApiProduct
from brokerage.models.revenue import RevenueRecord
from brokerage.services.stripe_service import (
    PaymentProcessorError,
    StripePaymentService,
    get_stripe_service,
)

logger = logging.getLogger(__name__)

_QUANT = Decimal("0.000001")
DEFAULT_CALL_PRICE = Decimal("0.001")

_REVENUE_SOURCES = {
    "direct": "api_execution",
    "billing": "api_execution",
    "marketplace": "marketplace",
    "task": "task_execution",
    "scheduler": "scheduled_execution",
}


def to_decimal(value: float | int | str | Decimal) -> Decimal:
    """Coerce a value to Decimal with 6 decimal places."""
    if isinstance(value, Decimal):
        return value.quantize(_QUANT, rounding=ROUND_HALF_UP)
    return Decimal(str(value)).quantize(_QUANT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RevenueSplit:
    amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal
    agent_reward: Decimal


def compute_revenue_split(cost) -> RevenueSplit:
    amount = to_decimal(cost)
    if amount < 0:
        raise ValueError("cost must be non-negative")
    platform_fee = to_decimal(amount * to_decimal(settings.platform_fee_pct))
    seller_amount = to_decimal(amount * to_decimal(settings.seller_share_pct))
    agent_reward = amount - platform_fee - seller_amount
    return RevenueSplit(amount, platform_fee, seller_amount, agent_reward)


def _utcnow():
    return datetime.now(timezone.utc)


async def record_revenue(
    db: AsyncSession,
    split: RevenueSplit,
    revenue_source: str,
    *,
    status: str = "collected",
    agent_id: str | None = None,
    task_id: str | None = None,
    execution_id: str | None = None,
    metadata: dict | None = None,
) -> RevenueRecord:
    """Append a revenue row. The caller commits."""
    if split.platform_fee + split.seller_amount + split.agent_reward != split.amount:
        raise ValueError("Revenue split does not sum to the recorded amount")
    if status not in {"pending", "collected"}:
        raise ValueError(f"Revenue cannot be created as '{status}'")

    record = RevenueRecord(
        agent_id=agent_id,
        task_id=task_id,
        execution_id=execution_id,
        revenue_source=revenue_source,
        amount=split.amount,
        platform_fee=split.platform_fee,
        seller_amount=split.seller_amount,
        agent_reward=split.agent_reward,
        status=status,
        collected_at=_utcnow() if status == "collected" else None,
        metadata_json=json.dumps(metadata or {}),
    )
    db.add(record)
    await db.flush()
    return record


async def mark_collected(db: AsyncSession, revenue_id: str) -> RevenueRecord:
    """The only permitted mutation of a revenue row."""
    result = await db.execute(select(RevenueRecord).where(RevenueRecord.id == revenue_id))
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFoundError("Revenue record", revenue_id)
    if record.status != "pending":
        raise ValueError(f"Revenue record is '{record.status}', expected 'pending'")
    record.status = "collected"
    record.collected_at = _utcnow()
    await db.flush()
    return record


async def _charge_processor(
    db: AsyncSession,
    execution: Execution,
    record: RevenueRecord,
    stripe: StripePaymentService,
) -> Payment | None:
    amount_cents = int(record.amount * 100)
    payment = Payment(
        execution_id=execution.id,
        revenue_record_id=record.id,
        amount_cents=amount_cents,
        description=f"Execution {execution.id}",
    )
    db.add(payment)
    try:
        intent = await stripe.create_payment_intent(
            amount_cents,
            description=payment.description,
            metadata={"execution_id": execution.id, "agent_id": execution.agent_id},
        )
        payment.stripe_payment_intent_id = intent["id"]
        confirmed = await stripe.confirm_payment(intent["id"])
        if confirmed["status"] != "succeeded":
            raise PaymentProcessorError(f"Payment intent {intent['id']} is {confirmed['status']}")
        payment.status = "succeeded"
    except PaymentProcessorError as exc:
        payment.status = "failed"
        logger.warning("[payment] Processor error for execution %s: %s", execution.id, exc)
        from brokerage.services import payment_service

        seller_id = None
        if execution.api_product_id:
            product = await db.get(ApiProduct, execution.api_product_id)
            seller_id = product.seller_id if product else None
        await payment_service.enqueue_payment(
            db,
            amount=record.amount,
            seller_id=seller_id,
            execution_id=execution.id,
            purpose=f"Retry charge for execution {execution.id}",
            commit=False,
        )
        return payment

    await mark_collected(db, record.id)
    return payment


async def bill_execution(
    db: AsyncSession,
    execution: Execution,
    stripe: StripePaymentService | None = None,
) -> RevenueRecord:
    """Billing step for a completed execution. Flushes; the caller commits."""
    split = compute_revenue_split(execution.cost)
    source = execution.source

    if source == "marketplace":
        from brokerage.services import wallet_service

        await wallet_service.debit_for_execution(
            db,
            user_id=execution.user_id,
            amount=split.amount,
            agent_id=execution.agent_id,
            execution_id=execution.id,
        )

    if source == "direct" and execution.api_key_id:
        key = await db.get(ApiKey, execution.api_key_id)
        if key is not None:
            key.total_spent = to_decimal(key.total_spent or 0) + split.amount
            key.total_executions = (key.total_executions or 0) + 1
            key.last_used_at = _utcnow()

    charge_processor = source == "billing" and split.amount * 100 >= settings.min_charge_cents
    record = await record_revenue(
        db,
        split,
        _REVENUE_SOURCES.get(source, "api_execution"),
        status="pending" if charge_processor else "collected",
        agent_id=execution.agent_id,
        task_id=execution.task_id,
        execution_id=execution.id,
        metadata={"source": source, "api_product_id": execution.api_product_id},
    )
    execution.revenue = split.amount

    if charge_processor:
        await _charge_processor(db, execution, record, stripe or get_stripe_service())

    logger.info(
        "[billing] Execution %s billed %s (fee=%s seller=%s reward=%s, %s)",
        execution.id, split.amount, split.platform_fee, split.seller_amount,
        split.agent_reward, record.status,
    )
    return record


async def create_execution_payment(
    db: AsyncSession,
    agent_id: str,
    api_product_id: str,
    amount: float | None = None,
    dispatcher=None,
    stripe: StripePaymentService | None = None,
) -> dict:
    """Run a billed execution of ``api_product_id`` by ``agent_id`` and charge it."""
    from brokerage.models.agent import AutonomousAgent
    from brokerage.services import execution_service

    agent = await db.get(AutonomousAgent, agent_id)
    if agent is None:
        raise NotFoundError("Agent", agent_id)
    product = await db.get(ApiProduct, api_product_id)
    if product is None or not product.is_active:
        raise NotFoundError("API product", api_product_id)

    if amount is not None and amount <= 0:
        raise ValueError("amount must be positive")
    cost = to_decimal(amount if amount is not None else (product.price_per_call or DEFAULT_CALL_PRICE))

    execution = await execution_service.create_execution(
        db,
        agent_id=agent.id,
        api_product_id=product.id,
        cost=cost,
        source="billing",
    )
    execution_id = execution.id
    # A failed billing step rolls back and expires the execution instance
    outcome = await execution_service.run_execution(
        db, execution_id, dispatcher=dispatcher, stripe=stripe,
    )

    payment = None
    revenue = None
    if outcome.revenue_record_id:
        revenue = await db.get(RevenueRecord, outcome.revenue_record_id)
        result = await db.execute(
            select(Payment).where(Payment.execution_id == execution_id)
        )
        payment = result.scalar_one_or_none()

    return {
        "execution_id": execution_id,
        "status": outcome.status,
        "cost": float(cost),
        "revenue": float(revenue.amount) if revenue else 0.0,
        "platform_fee": float(revenue.platform_fee) if revenue else 0.0,
        "revenue_status": revenue.status if revenue else None,
        "payment_intent_id": payment.stripe_payment_intent_id if payment else None,
        "payment_status": payment.status if payment else None,
        "error": outcome.error,
    }


async def get_billing_summary(db: AsyncSession) -> dict:
    """Aggregate revenue and execution figures, overall and for the current UTC day."""
    today = _utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

    totals = (await db.execute(
        select(
            func.coalesce(func.sum(RevenueRecord.amount), 0),
            func.coalesce(func.sum(RevenueRecord.platform_fee), 0),
        )
    )).one()
    today_revenue = (await db.execute(
        select(func.coalesce(func.sum(RevenueRecord.amount), 0)).where(
            RevenueRecord.created_at >= today
        )
    )).scalar()
    today_executions = (await db.execute(
        select(func.count(Execution.id)).where(Execution.created_at >= today)
    )).scalar()
    finished = (await db.execute(
        select(Execution.status, func.count(Execution.id))
        .where(Execution.status.in_(["completed", "failed"]))
        .group_by(Execution.status)
    )).all()
    counts = {status: n for status, n in finished}
    completed = counts.get("completed", 0)
    total_finished = completed + counts.get("failed", 0)

    return {
        "total_revenue": float(totals[0]),
        "total_platform_fees": float(totals[1]),
        "today_revenue": float(today_revenue or 0),
        "today_executions": int(today_executions or 0),
        "successful_executions": completed,
        "success_rate": round(completed / total_finished * 100, 2) if total_finished else 0.0,
    }
