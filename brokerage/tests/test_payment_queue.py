"""Pending payment queue: payouts, retry backoff and abandonment."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from brokerage.config import settings
from brokerage.models.payment import PendingPayment
from brokerage.models.revenue import RevenueRecord
from brokerage.services import billing_service, payment_service
from brokerage.services.payment_service import retry_delay
from brokerage.tests.support import FakeStripe, TestSession, make_dispatcher


async def _make_due(payment_id: str) -> None:
    """Pull a failed payment's retry time into the past."""
    async with TestSession() as session:
        payment = await session.get(PendingPayment, payment_id)
        payment.next_retry_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await session.commit()


class TestRetryDelay:
    def test_backoff_doubles_and_caps(self):
        assert retry_delay(1) == timedelta(seconds=300)
        assert retry_delay(2) == timedelta(seconds=600)
        assert retry_delay(3) == timedelta(seconds=1200)
        assert retry_delay(4) == timedelta(seconds=2400)
        assert retry_delay(5) == timedelta(seconds=3600)
        assert retry_delay(9) == timedelta(seconds=3600)


class TestEnqueue:
    async def test_rejects_bad_input(self, db):
        with pytest.raises(ValueError):
            await payment_service.enqueue_payment(db, 0)
        with pytest.raises(ValueError):
            await payment_service.enqueue_payment(db, 10, payment_method="cheque")

    async def test_future_payment_is_not_due(self, db, fake_stripe):
        await payment_service.enqueue_payment(
            db, 10, scheduled_for=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        result = await payment_service.process_payment_queue(db, fake_stripe)
        assert result["processed"] == 0


class TestProcessQueue:
    async def test_seller_payout_via_destination_charge(self, db, make_seller, fake_stripe):
        seller = await make_seller("acct_seller_1")
        payment = await payment_service.enqueue_payment(db, 20, seller_id=seller.id, purpose="payout")

        result = await payment_service.process_payment_queue(db, fake_stripe)

        assert result == {"processed": 1, "completed": 1, "failed": 0, "abandoned": 0}
        charge = fake_stripe.destination_charges[0]
        assert charge["destination"] == "acct_seller_1"
        assert charge["amount"] == 2000
        assert charge["application_fee_amount"] == 100

        async with TestSession() as check:
            stored = await check.get(PendingPayment, payment.id)
            assert stored.status == "completed"
            assert stored.transaction_id == charge["id"]
            record = (await check.execute(select(RevenueRecord))).scalar_one()
            assert record.revenue_source == "payment_fees"
            assert record.platform_fee == Decimal("1.000000")

    async def test_crypto_payout_keeps_fee(self, db, make_seller, fake_stripe):
        seller = await make_seller(None)
        payment = await payment_service.enqueue_payment(db, 100, seller_id=seller.id, payment_method="crypto")

        result = await payment_service.process_payment_queue(db, fake_stripe)

        assert result["completed"] == 1
        assert fake_stripe.destination_charges == []
        async with TestSession() as check:
            stored = await check.get(PendingPayment, payment.id)
            assert stored.transaction_id.startswith("0x")
            record = (await check.execute(select(RevenueRecord))).scalar_one()
            assert float(record.platform_fee) == pytest.approx(100 * settings.crypto_fee_pct)

    async def test_seller_without_account_fails_with_backoff(self, db, make_seller, fake_stripe):
        seller = await make_seller(None)
        payment = await payment_service.enqueue_payment(db, 5, seller_id=seller.id)

        before = datetime.now(timezone.utc)
        result = await payment_service.process_payment_queue(db, fake_stripe)

        assert result["failed"] == 1
        async with TestSession() as check:
            stored = await check.get(PendingPayment, payment.id)
            assert stored.status == "failed"
            assert stored.retry_count == 1
            assert "Stripe account" in stored.error_message
            retry_at = stored.next_retry_at.replace(tzinfo=timezone.utc)
            assert retry_at >= before + timedelta(seconds=299)

    async def test_failed_payment_not_retried_before_due(self, db, make_seller):
        seller = await make_seller()
        await payment_service.enqueue_payment(db, 5, seller_id=seller.id)

        await payment_service.process_payment_queue(db, FakeStripe(fail_times=1))
        second = await payment_service.process_payment_queue(db, FakeStripe())
        assert second["processed"] == 0

    async def test_abandoned_after_max_retries(self, db, make_seller):
        seller = await make_seller()
        stripe = FakeStripe(fail_times=100)
        payment = await payment_service.enqueue_payment(db, 5, seller_id=seller.id)

        outcomes = [await payment_service.process_payment_queue(db, stripe)]
        for _ in range(settings.payment_max_retries - 1):
            await _make_due(payment.id)
            outcomes.append(await payment_service.process_payment_queue(db, stripe))

        assert [o["failed"] for o in outcomes] == [1, 1, 1, 1, 0]
        assert outcomes[-1]["abandoned"] == 1
        async with TestSession() as check:
            stored = await check.get(PendingPayment, payment.id)
            assert stored.status == "abandoned"
            assert stored.retry_count == settings.payment_max_retries
            assert stored.next_retry_at is None

        again = await payment_service.process_payment_queue(db, stripe)
        assert again["processed"] == 0

    async def test_retry_succeeds_after_failure(self, db, make_seller):
        seller = await make_seller()
        stripe = FakeStripe(fail_times=1)
        payment = await payment_service.enqueue_payment(db, 5, seller_id=seller.id)

        first = await payment_service.process_payment_queue(db, stripe)
        await _make_due(payment.id)
        second = await payment_service.process_payment_queue(db, stripe)

        assert first["failed"] == 1
        assert second["completed"] == 1

    async def test_retried_platform_charge_collects_revenue(
        self, db, make_agent, make_product,
    ):
        agent = await make_agent()
        product = await make_product(price_per_call=3.0)
        result = await billing_service.create_execution_payment(
            db, agent.id, product.id, dispatcher=make_dispatcher(), stripe=FakeStripe(fail_times=1),
        )
        assert result["revenue_status"] == "pending"

        processed = await payment_service.process_payment_queue(db, FakeStripe())

        assert processed["completed"] == 1
        async with TestSession() as check:
            record = (await check.execute(
                select(RevenueRecord).where(RevenueRecord.execution_id == result["execution_id"])
            )).scalar_one()
            assert record.status == "collected"


class BrokenStripe(FakeStripe):
    """Processor whose payout call blows up with a non-processor error."""

    async def create_destination_charge(self, *args, **kwargs):
        raise RuntimeError("connection reset by peer")


async def _mark_processing(payment_id: str, claimed_at: datetime) -> None:
    async with TestSession() as session:
        payment = await session.get(PendingPayment, payment_id)
        payment.status = "processing"
        payment.claimed_at = claimed_at
        await session.commit()


class TestClaimedRows:
    async def test_unexpected_error_records_failure(self, db, make_seller):
        seller = await make_seller()
        first = await payment_service.enqueue_payment(db, 5, seller_id=seller.id)
        second = await payment_service.enqueue_payment(db, 7, seller_id=seller.id)
        payment_ids = [first.id, second.id]

        result = await payment_service.process_payment_queue(db, BrokenStripe())

        assert result == {"processed": 2, "completed": 0, "failed": 2, "abandoned": 0}
        async with TestSession() as check:
            for payment_id in payment_ids:
                stored = await check.get(PendingPayment, payment_id)
                assert stored.status == "failed"
                assert stored.retry_count == 1
                assert stored.next_retry_at is not None
                assert stored.claimed_at is None
                assert "connection reset" in stored.error_message

    async def test_lapsed_claim_is_picked_up_again(self, db, make_seller, fake_stripe):
        seller = await make_seller()
        stale = await payment_service.enqueue_payment(db, 5, seller_id=seller.id)
        fresh = await payment_service.enqueue_payment(db, 6, seller_id=seller.id)
        stale_id, fresh_id = stale.id, fresh.id
        now = datetime.now(timezone.utc)
        await _mark_processing(stale_id, now - timedelta(seconds=settings.payment_claim_lease_seconds + 60))
        await _mark_processing(fresh_id, now)

        result = await payment_service.process_payment_queue(db, fake_stripe)

        assert result["processed"] == 1
        assert result["completed"] == 1
        async with TestSession() as check:
            assert (await check.get(PendingPayment, stale_id)).status == "completed"
            assert (await check.get(PendingPayment, fresh_id)).status == "processing"
