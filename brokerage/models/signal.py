"""Demand radar intake: raw signals and the scoring rows derived from them."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from brokerage.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class DemandSignal(Base):
    """Append-only raw observation of demand (keyword + free text + volume/velocity)."""

    __tablename__ = "demand_signals"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    source = Column(String(50), nullable=False, default="manual_input")
    keyword = Column(String(200), nullable=False)
    signal_text = Column(Text, nullable=False, default="")
    signal_volume = Column(Integer, nullable=False, default=100)
    velocity_score = Column(Numeric(10, 4), nullable=False, default=1.5)
    detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_signal_keyword", "keyword"),
        Index("idx_signal_created", "created_at"),
    )


class ClassifiedIntent(Base):
    __tablename__ = "classified_intents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    signal_id = Column(String(36), ForeignKey("demand_signals.id"), unique=True, nullable=False)
    intent_level = Column(String(30), nullable=False)  # purchase_intent | solution_search | research | curiosity
    confidence_score = Column(Numeric(6, 4), nullable=False)
    analysis_reasoning = Column(Text, default="")
    keywords_matched = Column(Text, default="[]")  # JSON array
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class TrendPrediction(Base):
    __tablename__ = "trend_predictions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    intent_id = Column(String(36), ForeignKey("classified_intents.id"), unique=True, nullable=False)
    trend_score = Column(Numeric(6, 2), nullable=False)
    momentum_index = Column(Numeric(6, 2), nullable=False)
    predicted_growth_rate = Column(Numeric(6, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
