import pytest
from sqlalchemy import select

from brokerage.models.opportunity import MarketOpportunity
from brokerage.services import market_monitor_service


class TestAnalyzeProduct:
    async def test_scores_from_hourly_usage(self, db, make_product, make_usage):
        product = await make_product(price_per_call=0.5, active_consumers=10, rate_limit_per_minute=60)
        await make_usage(product.id, hours=4, calls=80, successes=60)

        analysis = await market_monitor_service.analyze_product(db, product)

        assert analysis["demand_score"] == pytest.approx(0.8)
        assert analysis["competition_score"] == pytest.approx(0.2)
        assert analysis["complexity_score"] == pytest.approx(0.4)
        assert analysis["success_rate"] == pytest.approx(0.75)
        # 80 calls/window * 0.5 * 30 * 0.75
        assert analysis["potential_revenue"] == pytest.approx(900.0)

    async def test_no_history_uses_default_success_rate(self, db, make_product):
        product = await make_product()
        analysis = await market_monitor_service.analyze_product(db, product)
        assert analysis["demand_score"] == 0
        assert analysis["success_rate"] == pytest.approx(0.8)
        assert analysis["potential_revenue"] == 0

    async def test_per_call_rows_are_ignored(self, db, make_product):
        from datetime import datetime, timezone

        from brokerage.models.product import ApiUsageMetric

        product = await make_product()
        db.add(ApiUsageMetric(
            api_product_id=product.id, consumer_id="k", time_window=datetime.now(timezone.utc),
            time_granularity="call", call_count=500,
        ))
        await db.commit()
        analysis = await market_monitor_service.analyze_product(db, product)
        assert analysis["demand_score"] == 0


class TestMonitorMarket:
    async def test_only_products_above_threshold(self, db, make_product, make_usage):
        busy = await make_product(price_per_call=1.0)
        quiet = await make_product(price_per_call=1.0)
        await make_usage(busy.id, calls=90)
        await make_usage(quiet.id, calls=50)

        found = await market_monitor_service.monitor_market(db)

        assert [o.api_product_id for o in found] == [busy.id]
        assert float(found[0].estimated_cost) == pytest.approx(float(found[0].potential_revenue) * 0.2, abs=0.01)

    async def test_sorted_by_revenue(self, db, make_product, make_usage):
        cheap = await make_product(price_per_call=0.1)
        pricey = await make_product(price_per_call=2.0)
        await make_usage(cheap.id, calls=100)
        await make_usage(pricey.id, calls=100)

        found = await market_monitor_service.monitor_market(db)
        assert [o.api_product_id for o in found] == [pricey.id, cheap.id]

    async def test_rescan_supersedes_without_editing_scores(self, db, make_product, make_usage):
        product = await make_product()
        await make_usage(product.id, calls=90)

        first = (await market_monitor_service.monitor_market(db))[0]
        first_score = float(first.demand_score)
        await market_monitor_service.monitor_market(db)

        rows = (await db.execute(
            select(MarketOpportunity).order_by(MarketOpportunity.created_at)
        )).scalars().all()
        assert len(rows) == 2
        await db.refresh(rows[0])
        assert rows[0].status == "superseded"
        assert float(rows[0].demand_score) == first_score
        assert rows[1].status == "detected"

    async def test_inactive_products_skipped(self, db, make_product, make_usage):
        product = await make_product(is_active=False)
        await make_usage(product.id, calls=100)
        assert await market_monitor_service.monitor_market(db) == []
