"""Demand radar: signal intake, the classify -> predict -> score pipeline, and offer generation."""

import json
import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.config import settings
from brokerage.core.exceptions import NotFoundError
from brokerage.models.opportunity import DemandOpportunity, ServiceOffer
from brokerage.models.product import MarketplaceListing
from brokerage.models.signal import ClassifiedIntent, DemandSignal, TrendPrediction
from brokerage.services import scoring_service

logger = logging.getLogger(__name__)

_SIMULATED_SIGNALS = [
    ("api integration", "Need an API integration for our billing system asap", "forum"),
    ("white label saas", "Looking for a white label SaaS we can resell", "social"),
    ("ai automation", "How to automate support tickets with AI?", "search"),
    ("backend help", "Need help fixing our backend, budget available", "forum"),
    ("workflow tool", "Which workflow tool is best for small teams?", "search"),
    ("data pipeline", "What is the easiest way to learn data pipelines", "social"),
]

_SERVICE_CATEGORIES = {
    "api_on_demand": "development",
    "white_label_saas": "saas",
    "ai_automation": "automation",
    "express_consulting": "consulting",
    "ready_backend": "development",
}


@dataclass(frozen=True)
class _SignalData:
    """Plain copy of a signal so a rollback cannot expire what we read."""

    id: str
    keyword: str
    signal_text: str
    signal_volume: int
    velocity_score: float


async def submit_signal(
    db: AsyncSession,
    keyword: str | None,
    source: str = "manual_input",
    signal_text: str | None = None,
    signal_volume: int = 100,
    velocity_score: float = 1.5,
) -> DemandSignal:
    """Append a raw demand signal. Signals are never edited afterwards."""
    keyword = (keyword or "").strip()
    if not keyword:
        raise ValueError("keyword is required")
    if signal_volume < 0:
        raise ValueError("signal_volume must be non-negative")
    if velocity_score < 0:
        raise ValueError("velocity_score must be non-negative")

    signal = DemandSignal(
        source=source or "manual_input",
        keyword=keyword,
        signal_text=signal_text or f"Manual signal: {keyword}",
        signal_volume=signal_volume,
        velocity_score=velocity_score,
    )
    db.add(signal)
    await db.commit()
    await db.refresh(signal)
    logger.info("Signal %s accepted (keyword=%r, source=%s)", signal.id, keyword, signal.source)
    return signal


async def generate_simulated_signals(
    db: AsyncSession, count: int = 5, rng: random.Random | None = None,
) -> list[DemandSignal]:
    rng = rng or random.Random()
    signals = []
    for _ in range(count):
        keyword, text, source = rng.choice(_SIMULATED_SIGNALS)
        signal = DemandSignal(
            source=source,
            keyword=keyword,
            signal_text=text,
            signal_volume=rng.randint(50, 600),
            velocity_score=round(rng.uniform(0.5, 3.5), 2),
        )
        db.add(signal)
        signals.append(signal)
    await db.commit()
    return signals


async def process_signal(db: AsyncSession, signal: _SignalData) -> dict:
    """Score one signal and persist intent, prediction and opportunity atomically.

    Returns ``status="skipped"`` if the signal already has an opportunity,
    including when a concurrent run inserted it first.
    """
    existing = await db.execute(
        select(DemandOpportunity.id).where(DemandOpportunity.signal_id == signal.id)
    )
    if existing.scalar_one_or_none() is not None:
        return {"signal_id": signal.id, "status": "skipped", "reason": "already processed"}

    intent = scoring_service.classify_intent(
        signal.keyword, signal.signal_text, signal.velocity_score, signal.signal_volume,
    )
    trend = scoring_service.predict_trend(
        signal.velocity_score, signal.signal_volume, intent.confidence,
    )
    score, temperature = scoring_service.calculate_demand_score(
        signal.signal_volume, intent.confidence, trend.trend_score,
    )
    service = scoring_service.map_to_service(signal.keyword, temperature)

    try:
        intent_row = ClassifiedIntent(
            signal_id=signal.id,
            intent_level=intent.intent_level,
            confidence_score=intent.confidence,
            analysis_reasoning=intent.reasoning,
            keywords_matched=json.dumps(intent.keywords_matched),
        )
        db.add(intent_row)
        await db.flush()

        prediction = TrendPrediction(
            intent_id=intent_row.id,
            trend_score=trend.trend_score,
            momentum_index=trend.momentum_index,
            predicted_growth_rate=trend.predicted_growth_rate,
        )
        db.add(prediction)
        await db.flush()

        opportunity = DemandOpportunity(
            signal_id=signal.id,
            intent_id=intent_row.id,
            prediction_id=prediction.id,
            title=f"Demand: {signal.keyword}",
            description=signal.signal_text,
            keywords=json.dumps([signal.keyword]),
            demand_score=score,
            temperature=temperature,
            urgency_score=min(100.0, signal.velocity_score * 20),
            recommended_service=service.service_type,
            suggested_price=service.suggested_price,
            estimated_delivery_days=service.delivery_days,
            status="detected",
        )
        db.add(opportunity)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Signal %s already scored by a concurrent run, skipping", signal.id)
        return {"signal_id": signal.id, "status": "skipped", "reason": "already processed"}

    return {
        "signal_id": signal.id,
        "status": "processed",
        "opportunity_id": opportunity.id,
        "intent": intent.intent_level,
        "confidence": intent.confidence,
        "trend_score": trend.trend_score,
        "demand_score": score,
        "temperature": temperature,
        "recommended_service": service.service_type,
        "suggested_price": service.suggested_price,
    }


async def process_signals(db: AsyncSession, limit: int | None = None) -> list[dict]:
    """Drain the newest unscored signals through the pipeline."""
    limit = limit or settings.signal_batch_size
    scored = select(DemandOpportunity.signal_id)
    result = await db.execute(
        select(DemandSignal)
        .where(DemandSignal.id.not_in(scored))
        .order_by(DemandSignal.created_at.desc())
        .limit(limit)
    )
    batch = [
        _SignalData(
            id=s.id,
            keyword=s.keyword,
            signal_text=s.signal_text or "",
            signal_volume=int(s.signal_volume or 0),
            velocity_score=float(s.velocity_score or 0),
        )
        for s in result.scalars().all()
    ]

    results = []
    for signal in batch:
        results.append(await process_signal(db, signal))

    processed = sum(1 for r in results if r["status"] == "processed")
    logger.info("Processed %d/%d signals", processed, len(batch))
    return results


def _copy_template(opportunity: DemandOpportunity, price: float, days: int) -> str:
    return (
        f"{opportunity.title}\n\n"
        f"We deliver a {opportunity.recommended_service.replace('_', ' ')} package "
        f"in {days} day(s) for ${price:,.0f}.\n"
        f"Demand score {float(opportunity.demand_score):.1f} ({opportunity.temperature})."
    )


async def generate_offer(
    db: AsyncSession, opportunity_id: str, auto_publish: bool = True,
) -> ServiceOffer:
    """Turn an opportunity into a service offer and, when published, a marketplace listing."""
    result = await db.execute(
        select(DemandOpportunity).where(DemandOpportunity.id == opportunity_id)
    )
    opportunity = result.scalar_one_or_none()
    if opportunity is None:
        raise NotFoundError("Opportunity", opportunity_id)

    price = float(opportunity.suggested_price)
    days = int(opportunity.estimated_delivery_days)
    now = datetime.now(timezone.utc)
    offer = ServiceOffer(
        demand_opportunity_id=opportunity.id,
        offer_type=opportunity.recommended_service,
        title=opportunity.title.replace("Demand:", "Offer:", 1),
        description=opportunity.description or "",
        price=price,
        delivery_days=days,
        copy_template=_copy_template(opportunity, price, days),
        status="published" if auto_publish else "draft",
        published_at=now if auto_publish else None,
    )
    db.add(offer)
    await db.flush()

    if auto_publish:
        db.add(MarketplaceListing(
            offer_id=offer.id,
            name=offer.title,
            short_description=(opportunity.description or "")[:500],
            description=offer.copy_template,
            category=_SERVICE_CATEGORIES.get(offer.offer_type, "automation"),
            tags=opportunity.keywords or "[]",
            price_per_execution=price,
            min_credits_required=math.ceil(price / 10),
            is_featured=float(opportunity.demand_score) >= settings.featured_score_threshold,
        ))

    opportunity.status = "offer_generated"
    await db.commit()
    await db.refresh(offer)
    logger.info("Offer %s generated for opportunity %s (%s)", offer.id, opportunity.id, offer.status)
    return offer


async def auto_generate_offers(db: AsyncSession) -> list[ServiceOffer]:
    """Publish offers for every hot opportunity that has none yet."""
    result = await db.execute(
        select(DemandOpportunity.id).where(
            DemandOpportunity.temperature == "hot",
            DemandOpportunity.status == "detected",
        )
    )
    offers = []
    for opportunity_id in result.scalars().all():
        offers.append(await generate_offer(db, opportunity_id, auto_publish=True))
    return offers


async def run_autonomous_cycle(db: AsyncSession) -> dict:
    results = await process_signals(db)
    offers = await auto_generate_offers(db) if settings.auto_generate_offers else []
    return {
        "signals_processed": sum(1 for r in results if r["status"] == "processed"),
        "signals_skipped": sum(1 for r in results if r["status"] == "skipped"),
        "offers_generated": len(offers),
    }


async def get_radar_status(db: AsyncSession) -> dict:
    async def _count(stmt) -> int:
        return int((await db.execute(stmt)).scalar() or 0)

    total_signals = await _count(select(func.count(DemandSignal.id)))
    total_opps = await _count(select(func.count(DemandOpportunity.id)))
    hot_opps = await _count(
        select(func.count(DemandOpportunity.id)).where(DemandOpportunity.temperature == "hot")
    )
    total_offers = await _count(select(func.count(ServiceOffer.id)))
    published = await _count(
        select(func.count(ServiceOffer.id)).where(ServiceOffer.status == "published")
    )
    return {
        "total_signals": total_signals,
        "pending_signals": total_signals - total_opps,
        "total_opportunities": total_opps,
        "hot_opportunities": hot_opps,
        "total_offers": total_offers,
        "published_offers": published,
        "conversion_rate": round(total_offers / total_opps * 100, 1) if total_opps else 0.0,
    }


async def list_signals(db: AsyncSession, limit: int = 50) -> list[DemandSignal]:
    result = await db.execute(
        select(DemandSignal).order_by(DemandSignal.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def list_opportunities(
    db: AsyncSession, temperature: str | None = None, limit: int = 50,
) -> list[DemandOpportunity]:
    stmt = select(DemandOpportunity)
    if temperature:
        stmt = stmt.where(DemandOpportunity.temperature == temperature)
    result = await db.execute(stmt.order_by(DemandOpportunity.demand_score.desc()).limit(limit))
    return list(result.scalars().all())
