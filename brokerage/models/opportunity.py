import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from brokerage.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class DemandOpportunity(Base):
    """A scored signal, mapped to a recommended service offer."""

    __tablename__ = "demand_opportunities"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # unique: a signal yields at most one opportunity even under concurrent processing
    signal_id = Column(String(36), ForeignKey("demand_signals.id"), unique=True, nullable=False)
    intent_id = Column(String(36), ForeignKey("classified_intents.id"), nullable=False)
    prediction_id = Column(String(36), ForeignKey("trend_predictions.id"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, default="")
    keywords = Column(Text, default="[]")  # JSON array
    demand_score = Column(Numeric(5, 1), nullable=False)
    temperature = Column(String(10), nullable=False)  # hot | warm | cold
    urgency_score = Column(Numeric(6, 2), nullable=False, default=0)
    recommended_service = Column(String(50), nullable=False)
    suggested_price = Column(Numeric(12, 2), nullable=False)
    estimated_delivery_days = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="detected")  # detected | offer_generated | assigned
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_demand_opp_status", "status"),
        Index("idx_demand_opp_score", "demand_score"),
    )


class MarketOpportunity(Base):
    """Catalog-side twin of DemandOpportunity, produced by periodic product scans."""

    __tablename__ = "market_opportunities"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    api_product_id = Column(String(36), ForeignKey("api_products.id"), nullable=False)
    demand_score = Column(Numeric(6, 2), nullable=False)
    competition_score = Column(Numeric(6, 2), nullable=False)
    complexity_score = Column(Numeric(6, 2), nullable=False)
    potential_revenue = Column(Numeric(14, 2), nullable=False)
    estimated_cost = Column(Numeric(14, 2), nullable=False, default=0)
    time_window_start = Column(DateTime(timezone=True), nullable=False)
    time_window_end = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default="detected")  # detected | assigned | superseded
    analysis_json = Column(Text, default="{}")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_market_opp_product", "api_product_id"),
        Index("idx_market_opp_status", "status"),
    )


class ServiceOffer(Base):
    __tablename__ = "service_offers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    demand_opportunity_id = Column(String(36), ForeignKey("demand_opportunities.id"), nullable=False)
    offer_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, default="")
    price = Column(Numeric(12, 2), nullable=False)
    delivery_days = Column(Integer, nullable=False)
    copy_template = Column(Text, default="")
    status = Column(String(20), nullable=False, default="draft")  # draft | published
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_offer_opportunity", "demand_opportunity_id"),
    )
