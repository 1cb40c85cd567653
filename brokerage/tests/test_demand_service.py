"""Demand radar: signal intake, the scoring pipeline, dedup and offer generation."""

import json
import random

import pytest
from sqlalchemy import func, select

from brokerage.core.exceptions import NotFoundError
from brokerage.models.opportunity import DemandOpportunity, ServiceOffer
from brokerage.models.product import MarketplaceListing
from brokerage.models.signal import ClassifiedIntent, DemandSignal, TrendPrediction
from brokerage.services import demand_service
from brokerage.services.demand_service import _SignalData


async def _count(db, model) -> int:
    return (await db.execute(select(func.count(model.id)))).scalar()


class TestSubmitSignal:
    async def test_defaults(self, db):
        signal = await demand_service.submit_signal(db, "  api integration  ")
        assert signal.keyword == "api integration"
        assert signal.source == "manual_input"
        assert signal.signal_text == "Manual signal: api integration"
        assert signal.signal_volume == 100
        assert float(signal.velocity_score) == pytest.approx(1.5)

    @pytest.mark.parametrize("keyword", ["", "   ", None])
    async def test_empty_keyword_rejected(self, db, keyword):
        with pytest.raises(ValueError):
            await demand_service.submit_signal(db, keyword)
        assert await _count(db, DemandSignal) == 0

    async def test_simulated_signals(self, db):
        signals = await demand_service.generate_simulated_signals(db, 4, rng=random.Random(1))
        assert len(signals) == 4
        assert await _count(db, DemandSignal) == 4


class TestProcessSignals:
    async def test_pipeline_persists_chain(self, db):
        signal = await demand_service.submit_signal(
            db, "api integration", signal_text="Need an API integration asap",
            signal_volume=500, velocity_score=3.0,
        )
        results = await demand_service.process_signals(db)

        assert len(results) == 1
        result = results[0]
        assert result["status"] == "processed"
        assert result["intent"] == "purchase_intent"
        assert result["temperature"] == "hot"

        opportunity = (await db.execute(select(DemandOpportunity))).scalar_one()
        assert opportunity.signal_id == signal.id
        assert opportunity.title == "Demand: api integration"
        assert opportunity.status == "detected"
        assert opportunity.recommended_service == "api_on_demand"
        assert float(opportunity.suggested_price) == 750
        assert float(opportunity.urgency_score) == pytest.approx(60.0)

        intent = (await db.execute(select(ClassifiedIntent))).scalar_one()
        prediction = (await db.execute(select(TrendPrediction))).scalar_one()
        assert opportunity.intent_id == intent.id
        assert opportunity.prediction_id == prediction.id
        assert prediction.intent_id == intent.id

    async def test_processing_twice_creates_one_opportunity(self, db):
        await demand_service.submit_signal(db, "ai automation")
        first = await demand_service.process_signals(db)
        second = await demand_service.process_signals(db)

        assert [r["status"] for r in first] == ["processed"]
        assert second == []
        assert await _count(db, DemandOpportunity) == 1

    async def test_reprocessing_same_signal_is_skipped(self, db):
        signal = await demand_service.submit_signal(db, "backend help")
        data = _SignalData(signal.id, signal.keyword, signal.signal_text, 100, 1.5)

        assert (await demand_service.process_signal(db, data))["status"] == "processed"
        assert (await demand_service.process_signal(db, data))["status"] == "skipped"
        assert await _count(db, DemandOpportunity) == 1
        assert await _count(db, ClassifiedIntent) == 1

    async def test_lost_insert_race_is_reported_as_skipped(self, db):
        """A concurrent run scored the signal between our check and our insert."""
        signal = await demand_service.submit_signal(db, "workflow tool")
        db.add(ClassifiedIntent(
            signal_id=signal.id, intent_level="research", confidence_score=0.5,
            analysis_reasoning="scored elsewhere", keywords_matched="[]",
        ))
        await db.commit()

        data = _SignalData(signal.id, signal.keyword, signal.signal_text, 100, 1.5)
        result = await demand_service.process_signal(db, data)

        assert result["status"] == "skipped"
        assert await _count(db, DemandOpportunity) == 0
        assert await _count(db, ClassifiedIntent) == 1

    async def test_limit_takes_newest_first(self, db):
        for i in range(3):
            await demand_service.submit_signal(db, f"keyword {i}")
        results = await demand_service.process_signals(db, limit=2)
        assert len(results) == 2
        assert await _count(db, DemandOpportunity) == 2


class TestOffers:
    async def _hot_opportunity(self, db):
        await demand_service.submit_signal(
            db, "white label saas", signal_text="Looking for a white label SaaS, budget ready",
            signal_volume=600, velocity_score=4.0,
        )
        await demand_service.process_signals(db)
        return (await db.execute(select(DemandOpportunity))).scalar_one()

    async def test_published_offer_creates_listing(self, db):
        opportunity = await self._hot_opportunity(db)
        offer = await demand_service.generate_offer(db, opportunity.id)

        assert offer.status == "published"
        assert offer.title.startswith("Offer:")
        assert float(offer.price) == float(opportunity.suggested_price)

        listing = (await db.execute(select(MarketplaceListing))).scalar_one()
        assert listing.offer_id == offer.id
        assert float(listing.price_per_execution) == float(offer.price)
        assert listing.min_credits_required == 300
        assert listing.is_featured is True
        assert json.loads(listing.tags) == ["white label saas"]

        await db.refresh(opportunity)
        assert opportunity.status == "offer_generated"

    async def test_draft_offer_has_no_listing(self, db):
        opportunity = await self._hot_opportunity(db)
        offer = await demand_service.generate_offer(db, opportunity.id, auto_publish=False)
        assert offer.status == "draft"
        assert offer.published_at is None
        assert await _count(db, MarketplaceListing) == 0

    async def test_unknown_opportunity(self, db):
        with pytest.raises(NotFoundError):
            await demand_service.generate_offer(db, "missing")

    async def test_autonomous_cycle(self, db):
        await demand_service.submit_signal(
            db, "ai automation", signal_text="Need AI automation asap, budget approved",
            signal_volume=600, velocity_score=4.0,
        )
        await demand_service.submit_signal(db, "what is a widget", signal_volume=5, velocity_score=0.1)

        result = await demand_service.run_autonomous_cycle(db)
        assert result["signals_processed"] == 2
        assert result["offers_generated"] == 1
        assert await _count(db, ServiceOffer) == 1

        status = await demand_service.get_radar_status(db)
        assert status["total_signals"] == 2
        assert status["pending_signals"] == 0
        assert status["hot_opportunities"] == 1
        assert status["conversion_rate"] == 50.0
