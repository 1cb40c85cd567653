"""Pending payment queue with bounded exponential-backoff retries."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.config import settings
from brokerage.models.payment import PendingPayment
from brokerage.models.product import Seller
from brokerage.models.revenue import RevenueRecord
from brokerage.services.billing_service import RevenueSplit, mark_collected, record_revenue, to_decimal
from brokerage.services.stripe_service import PaymentProcessorError, StripePaymentService

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("stripe", "crypto")
STRIPE_APPLICATION_FEE_PCT = Decimal("0.05")


def _utcnow():
    return datetime.now(timezone.utc)


def retry_delay(retry_count: int) -> timedelta:
    """Backoff after the ``retry_count``-th failure: base * 2^(n-1), capped."""
    seconds = settings.payment_retry_base_seconds * (2 ** max(0, retry_count - 1))
    return timedelta(seconds=min(seconds, settings.payment_retry_max_seconds))


async def enqueue_payment(
    db: AsyncSession,
    amount,
    seller_id: str | None = None,
    payment_method: str = "stripe",
    purpose: str = "",
    execution_id: str | None = None,
    scheduled_for: datetime | None = None,
    commit: bool = True,
) -> PendingPayment:
    if payment_method not in PAYMENT_METHODS:
        raise ValueError(f"Unsupported payment method '{payment_method}'")
    amount_d = to_decimal(amount)
    if amount_d <= 0:
        raise ValueError("amount must be positive")

    payment = PendingPayment(
        seller_id=seller_id,
        execution_id=execution_id,
        amount=amount_d,
        payment_method=payment_method,
        purpose=purpose,
        status="pending",
        scheduled_for=scheduled_for or _utcnow(),
    )
    db.add(payment)
    if commit:
        await db.commit()
        await db.refresh(payment)
    else:
        await db.flush()
    logger.info("[payment] Queued %s payment %s of %s", payment_method, payment.id, amount_d)
    return payment


def _claimable(now: datetime):
    """Due pending rows, failed rows due for retry, and processing rows whose claim lapsed."""
    stale = now - timedelta(seconds=settings.payment_claim_lease_seconds)
    return or_(
        and_(PendingPayment.status == "pending", PendingPayment.scheduled_for <= now),
        and_(PendingPayment.status == "failed", PendingPayment.next_retry_at <= now),
        and_(PendingPayment.status == "processing", PendingPayment.claimed_at <= stale),
    )


async def _claim_due(db: AsyncSession, now: datetime, limit: int) -> list[str]:
    due = (await db.execute(
        select(PendingPayment.id)
        .where(_claimable(now))
        .order_by(PendingPayment.scheduled_for)
        .limit(limit)
    )).scalars().all()

    claimed = []
    for payment_id in due:
        result = await db.execute(
            update(PendingPayment)
            .where(PendingPayment.id == payment_id, _claimable(now))
            .values(status="processing", claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(payment_id)
    await db.commit()
    return claimed


async def _execute_payment(
    db: AsyncSession, payment: PendingPayment, stripe: StripePaymentService,
) -> tuple[str, Decimal]:
    """Send one payment. Returns (transaction id, fee kept by the platform)."""
    amount = to_decimal(payment.amount)
    amount_cents = int(amount * 100)

    if payment.payment_method == "crypto":
        fee = to_decimal(amount * to_decimal(settings.crypto_fee_pct))
        return f"0x{uuid.uuid4().hex}", fee

    if payment.seller_id is None:
        # Re-attempt of a platform charge, no payout destination
        intent = await stripe.create_payment_intent(amount_cents, description=payment.purpose)
        confirmed = await stripe.confirm_payment(intent["id"])
        if confirmed["status"] != "succeeded":
            raise PaymentProcessorError(f"Payment intent {intent['id']} is {confirmed['status']}")
        return intent["id"], Decimal("0")

    seller = await db.get(Seller, payment.seller_id)
    if seller is None or not seller.stripe_account_id:
        raise PaymentProcessorError("Seller has no connected Stripe account")
    fee = to_decimal(amount * STRIPE_APPLICATION_FEE_PCT)
    charge = await stripe.create_destination_charge(
        amount_cents,
        destination_account=seller.stripe_account_id,
        application_fee_cents=int(fee * 100),
        description=payment.purpose,
    )
    return charge["id"], fee


async def _on_success(db: AsyncSession, payment: PendingPayment, transaction_id: str, fee: Decimal) -> None:
    payment.status = "completed"
    payment.transaction_id = transaction_id
    payment.completed_at = _utcnow()
    payment.claimed_at = None
    payment.error_message = None

    if payment.seller_id is None and payment.execution_id:
        pending = (await db.execute(
            select(RevenueRecord.id).where(
                RevenueRecord.execution_id == payment.execution_id,
                RevenueRecord.status == "pending",
            )
        )).scalars().all()
        for revenue_id in pending:
            await mark_collected(db, revenue_id)
        return

    amount = to_decimal(payment.amount)
    await record_revenue(
        db,
        RevenueSplit(amount=amount, platform_fee=fee, seller_amount=amount - fee, agent_reward=Decimal("0")),
        "payment_fees",
        metadata={"pending_payment_id": payment.id, "method": payment.payment_method},
    )


def _on_failure(payment: PendingPayment, error: str) -> None:
    payment.retry_count = (payment.retry_count or 0) + 1
    payment.error_message = error
    if payment.retry_count >= settings.payment_max_retries:
        payment.status = "abandoned"
        payment.next_retry_at = None
        logger.error(
            "[payment] Payment %s abandoned after %d attempts: %s",
            payment.id, payment.retry_count, error,
        )
        return
    payment.status = "failed"
    payment.next_retry_at = _utcnow() + retry_delay(payment.retry_count)
    logger.warning(
        "[payment] Payment %s failed (attempt %d), retry at %s: %s",
        payment.id, payment.retry_count, payment.next_retry_at, error,
    )


async def process_payment_queue(db: AsyncSession, stripe: StripePaymentService) -> dict:
    """One idempotent pass over due payments.

    Every claimed row ends the pass completed, failed or abandoned; an
    unexpected error on one payment counts as a failed attempt for that row.
    """
    claimed = await _claim_due(db, _utcnow(), settings.payment_batch_size)

    completed = failed = abandoned = 0
    for payment_id in claimed:
        # The claim UPDATE bypassed the identity map
        payment = await db.get(PendingPayment, payment_id, populate_existing=True)
        try:
            transaction_id, fee = await _execute_payment(db, payment, stripe)
            await _on_success(db, payment, transaction_id, fee)
            await db.commit()
        except PaymentProcessorError as exc:
            error = str(exc)
        except Exception as exc:
            logger.exception("[payment] Unexpected error on payment %s", payment_id)
            error = f"Unexpected error: {exc}"
        else:
            completed += 1
            continue

        await db.rollback()
        payment = await db.get(PendingPayment, payment_id, populate_existing=True)
        payment.claimed_at = None
        _on_failure(payment, error)
        if payment.status == "abandoned":
            abandoned += 1
        else:
            failed += 1
        await db.commit()

    return {
        "processed": len(claimed),
        "completed": completed,
        "failed": failed,
        "abandoned": abandoned,
    }
