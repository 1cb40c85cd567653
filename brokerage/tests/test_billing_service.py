"""Revenue split, revenue records and billed executions."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from brokerage.core.exceptions import NotFoundError
from brokerage.models.payment import Payment, PendingPayment
from brokerage.models.revenue import RevenueRecord
from brokerage.services import billing_service, payment_service
from brokerage.services.billing_service import compute_revenue_split, record_revenue, to_decimal
from brokerage.tests.support import FakeStripe, TestSession, make_dispatcher


class TestRevenueSplit:
    def test_one_dollar(self):
        split = compute_revenue_split(1)
        assert split.amount == Decimal("1.000000")
        assert split.platform_fee == Decimal("0.050000")
        assert split.seller_amount == Decimal("0.800000")
        assert split.agent_reward == Decimal("0.150000")

    @pytest.mark.parametrize("cost", ["0.01", "0.015", "0.000001", "3.333333", "12345.678901"])
    def test_parts_always_sum_to_amount(self, cost):
        split = compute_revenue_split(Decimal(cost))
        assert split.platform_fee + split.seller_amount + split.agent_reward == split.amount
        assert split.agent_reward >= 0

    def test_zero_cost(self):
        split = compute_revenue_split(0)
        assert split.amount == split.platform_fee == split.agent_reward == Decimal("0")

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError):
            compute_revenue_split(-1)

    def test_to_decimal_rounds_half_up(self):
        assert to_decimal(0.0000005) == Decimal("0.000001")
        assert to_decimal("1.2345674") == Decimal("1.234567")


class TestRevenueRecords:
    async def test_record_and_collect(self, db):
        record = await record_revenue(db, compute_revenue_split(2), "api_execution", status="pending")
        await db.commit()
        assert record.collected_at is None

        collected = await billing_service.mark_collected(db, record.id)
        await db.commit()
        assert collected.status == "collected"
        assert collected.collected_at is not None

    async def test_collect_twice_rejected(self, db):
        record = await record_revenue(db, compute_revenue_split(2), "api_execution")
        await db.commit()
        with pytest.raises(ValueError):
            await billing_service.mark_collected(db, record.id)

    async def test_collect_unknown(self, db):
        with pytest.raises(NotFoundError):
            await billing_service.mark_collected(db, "missing")

    async def test_unbalanced_split_rejected(self, db):
        bad = billing_service.RevenueSplit(
            amount=Decimal("1"), platform_fee=Decimal("0.5"),
            seller_amount=Decimal("0.5"), agent_reward=Decimal("0.5"),
        )
        with pytest.raises(ValueError):
            await record_revenue(db, bad, "api_execution")

    async def test_unknown_status_rejected(self, db):
        with pytest.raises(ValueError):
            await record_revenue(db, compute_revenue_split(1), "api_execution", status="distributed")


class TestCreateExecutionPayment:
    async def test_charge_above_minimum(self, db, make_agent, make_product, fake_stripe):
        agent = await make_agent()
        product = await make_product(price_per_call=2.5)

        result = await billing_service.create_execution_payment(
            db, agent.id, product.id, dispatcher=make_dispatcher(), stripe=fake_stripe,
        )

        assert result["status"] == "completed"
        assert result["cost"] == pytest.approx(2.5)
        assert result["revenue"] == pytest.approx(2.5)
        assert result["platform_fee"] == pytest.approx(0.125)
        assert result["revenue_status"] == "collected"
        assert result["payment_status"] == "succeeded"
        assert result["payment_intent_id"] == fake_stripe.intents[0]["id"]
        assert fake_stripe.intents[0]["amount"] == 250

    async def test_below_minimum_is_collected_without_charge(self, db, make_agent, make_product, fake_stripe):
        agent = await make_agent()
        product = await make_product(price_per_call=0.2)

        result = await billing_service.create_execution_payment(
            db, agent.id, product.id, dispatcher=make_dispatcher(), stripe=fake_stripe,
        )

        assert result["revenue_status"] == "collected"
        assert result["payment_intent_id"] is None
        assert fake_stripe.intents == []

    async def test_explicit_amount_overrides_price(self, db, make_agent, make_product, fake_stripe):
        agent = await make_agent()
        product = await make_product(price_per_call=0.2)

        result = await billing_service.create_execution_payment(
            db, agent.id, product.id, amount=1.0, dispatcher=make_dispatcher(), stripe=fake_stripe,
        )
        assert result["cost"] == pytest.approx(1.0)
        assert fake_stripe.intents[0]["amount"] == 100

    async def test_processor_failure_queues_retry(self, db, make_agent, make_product, make_seller):
        stripe = FakeStripe(fail_times=1)
        seller = await make_seller()
        agent = await make_agent()
        product = await make_product(price_per_call=3.0, seller_id=seller.id)

        result = await billing_service.create_execution_payment(
            db, agent.id, product.id, dispatcher=make_dispatcher(), stripe=stripe,
        )

        assert result["status"] == "completed"
        assert result["revenue_status"] == "pending"
        assert result["payment_status"] == "failed"
        async with TestSession() as check:
            pending = (await check.execute(select(PendingPayment))).scalar_one()
            assert pending.execution_id == result["execution_id"]
            assert pending.seller_id == seller.id
            assert pending.amount == Decimal("3.000000")
            assert pending.status == "pending"

    async def test_unconfirmed_intent_queues_retry(self, db, make_agent, make_product):
        agent = await make_agent()
        product = await make_product(price_per_call=2.5)

        result = await billing_service.create_execution_payment(
            db, agent.id, product.id, dispatcher=make_dispatcher(),
            stripe=FakeStripe(confirm_status="requires_action"),
        )

        assert result["revenue_status"] == "pending"
        assert result["payment_status"] == "failed"
        async with TestSession() as check:
            pending = (await check.execute(select(PendingPayment))).scalar_one()
            assert pending.execution_id == result["execution_id"]
            assert pending.seller_id is None

        processed = await payment_service.process_payment_queue(db, FakeStripe())

        assert processed["completed"] == 1
        async with TestSession() as check:
            record = (await check.execute(select(RevenueRecord))).scalar_one()
            assert record.status == "collected"

    async def test_billing_error_still_reports_execution(self, db, make_agent, make_product, fake_stripe):
        agent = await make_agent()
        product = await make_product(price_per_call=2.0)

        with patch(
            "brokerage.services.billing_service.bill_execution",
            AsyncMock(side_effect=ValueError("revenue ledger unavailable")),
        ):
            result = await billing_service.create_execution_payment(
                db, agent.id, product.id, dispatcher=make_dispatcher(), stripe=fake_stripe,
            )

        assert result["status"] == "completed"
        assert result["execution_id"]
        assert result["revenue_status"] is None
        assert result["payment_status"] is None
        async with TestSession() as check:
            assert (await check.execute(select(RevenueRecord))).scalars().all() == []

    async def test_failed_execution_is_not_billed(self, db, make_agent, make_product, fake_stripe):
        agent = await make_agent()
        product = await make_product(price_per_call=5.0)

        result = await billing_service.create_execution_payment(
            db, agent.id, product.id, dispatcher=make_dispatcher(failure_rate=1.0), stripe=fake_stripe,
        )

        assert result["status"] == "failed"
        assert result["revenue"] == 0.0
        assert result["payment_status"] is None
        async with TestSession() as check:
            assert (await check.execute(select(Payment))).scalars().all() == []
            assert (await check.execute(select(RevenueRecord))).scalars().all() == []

    async def test_unknown_agent_or_product(self, db, make_agent, make_product):
        agent = await make_agent()
        product = await make_product()
        with pytest.raises(NotFoundError):
            await billing_service.create_execution_payment(db, "missing", product.id)
        with pytest.raises(NotFoundError):
            await billing_service.create_execution_payment(db, agent.id, "missing")

    async def test_inactive_product(self, db, make_agent, make_product):
        agent = await make_agent()
        product = await make_product(is_active=False)
        with pytest.raises(NotFoundError):
            await billing_service.create_execution_payment(db, agent.id, product.id)

    async def test_non_positive_amount(self, db, make_agent, make_product):
        agent = await make_agent()
        product = await make_product()
        with pytest.raises(ValueError):
            await billing_service.create_execution_payment(db, agent.id, product.id, amount=0)


class TestBillingSummary:
    async def test_summary(self, db, make_agent, make_product, fake_stripe):
        agent = await make_agent()
        product = await make_product(price_per_call=2.0)
        await billing_service.create_execution_payment(
            db, agent.id, product.id, dispatcher=make_dispatcher(), stripe=fake_stripe,
        )
        await billing_service.create_execution_payment(
            db, agent.id, product.id, dispatcher=make_dispatcher(failure_rate=1.0), stripe=fake_stripe,
        )

        summary = await billing_service.get_billing_summary(db)

        assert summary["total_revenue"] == pytest.approx(2.0)
        assert summary["total_platform_fees"] == pytest.approx(0.1)
        assert summary["today_revenue"] == pytest.approx(2.0)
        assert summary["today_executions"] == 2
        assert summary["successful_executions"] == 1
        assert summary["success_rate"] == 50.0

    async def test_empty_summary(self, db):
        summary = await billing_service.get_billing_summary(db)
        assert summary["total_revenue"] == 0.0
        assert summary["success_rate"] == 0.0
