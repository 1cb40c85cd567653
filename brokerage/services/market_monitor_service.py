"""Catalog-side opportunity scoring from product usage history."""

import json
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.models.opportunity import MarketOpportunity
from brokerage.models.product import ApiProduct, ApiUsageMetric

logger = logging.getLogger(__name__)

DEMAND_THRESHOLD = 0.5
DEFAULT_SUCCESS_RATE = 0.8
USAGE_HISTORY_ROWS = 100


async def analyze_product(db: AsyncSession, product: ApiProduct) -> dict:
    """Score one product from its latest hourly usage rows. Pure read."""
    metrics = (await db.execute(
        select(ApiUsageMetric)
        .where(
            ApiUsageMetric.api_product_id == product.id,
            ApiUsageMetric.time_granularity == "hour",
        )
        .order_by(ApiUsageMetric.time_window.desc())
        .limit(USAGE_HISTORY_ROWS)
    )).scalars().all()

    total_calls = sum(m.call_count or 0 for m in metrics)
    calls_per_window = total_calls / len(metrics) if metrics else 0.0
    if metrics:
        rates = [(m.success_count or 0) / m.call_count for m in metrics if m.call_count]
        success_rate = sum(rates) / len(rates) if rates else DEFAULT_SUCCESS_RATE
    else:
        success_rate = DEFAULT_SUCCESS_RATE

    price = float(product.price_per_call or 0)
    demand = min(1.0, calls_per_window / 100)
    competition = min(1.0, (product.active_consumers or 0) / 50)
    complexity = 1 - min(1.0, (product.rate_limit_per_minute or 0) / 100)
    potential_revenue = calls_per_window * price * 30 * success_rate

    now = datetime.now(timezone.utc)
    return {
        "api_product_id": product.id,
        "product_name": product.name,
        "demand_score": round(demand, 2),
        "competition_score": round(competition, 2),
        "complexity_score": round(complexity, 2),
        "potential_revenue": round(potential_revenue, 2),
        "calls_per_window": round(calls_per_window, 2),
        "success_rate": round(success_rate, 2),
        "time_window_start": now,
        "time_window_end": now + timedelta(hours=24),
    }


async def monitor_market(db: AsyncSession) -> list[MarketOpportunity]:
    """Scan active products and append a fresh opportunity for each in demand.

    Earlier ``detected`` opportunities for the same product are marked
    ``superseded``; their scores are left untouched.
    """
    products = (await db.execute(
        select(ApiProduct).where(ApiProduct.is_active.is_(True))
    )).scalars().all()

    created: list[MarketOpportunity] = []
    for product in products:
        analysis = await analyze_product(db, product)
        if analysis["demand_score"] <= DEMAND_THRESHOLD:
            continue

        await db.execute(
            update(MarketOpportunity)
            .where(
                MarketOpportunity.api_product_id == product.id,
                MarketOpportunity.status == "detected",
            )
            .values(status="superseded")
            .execution_options(synchronize_session=False)
        )
        opportunity = MarketOpportunity(
            api_product_id=product.id,
            demand_score=analysis["demand_score"],
            competition_score=analysis["competition_score"],
            complexity_score=analysis["complexity_score"],
            potential_revenue=analysis["potential_revenue"],
            estimated_cost=round(analysis["potential_revenue"] * 0.2, 2),
            time_window_start=analysis["time_window_start"],
            time_window_end=analysis["time_window_end"],
            status="detected",
            analysis_json=json.dumps({
                "calls_per_window": analysis["calls_per_window"],
                "success_rate": analysis["success_rate"],
            }),
        )
        db.add(opportunity)
        created.append(opportunity)

    await db.commit()
    created.sort(key=lambda o: float(o.potential_revenue), reverse=True)
    logger.info("Market scan: %d products, %d opportunities", len(products), len(created))
    return created
