import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from brokerage.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Seller(Base):
    __tablename__ = "sellers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    business_name = Column(String(200), nullable=False)
    email = Column(String(255), default="")
    stripe_account_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ApiProduct(Base):
    """A third-party endpoint in the catalog that workers call per execution."""

    __tablename__ = "api_products"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    seller_id = Column(String(36), ForeignKey("sellers.id"), nullable=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, default="")
    api_endpoint = Column(String(500), default="")  # empty or simulated:// = simulated target
    request_method = Column(String(10), nullable=False, default="POST")
    request_headers = Column(Text, default="{}")  # JSON object
    auth_method = Column(String(20), nullable=False, default="none")  # none | bearer | api_key
    auth_credentials = Column(Text, default="{}")  # JSON object
    price_per_call = Column(Numeric(12, 6), nullable=False, default=0.001)
    rate_limit_per_minute = Column(Integer, nullable=False, default=60)
    rate_limit_per_hour = Column(Integer, nullable=False, default=1000)
    is_active = Column(Boolean, nullable=False, default=True)
    active_consumers = Column(Integer, nullable=False, default=0)
    total_calls = Column(Integer, nullable=False, default=0)
    successful_calls = Column(Integer, nullable=False, default=0)
    failed_calls = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Numeric(18, 6), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_product_active", "is_active"),
    )


class ApiUsageMetric(Base):
    """Usage rows keyed by window start.

    ``call`` rows are written once per metered API-key request and back the
    rate limiter; ``hour`` rows aggregate product traffic for the market monitor.
    """

    __tablename__ = "api_usage_metrics"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    api_product_id = Column(String(36), ForeignKey("api_products.id"), nullable=True)
    consumer_id = Column(String(36), nullable=True)
    time_window = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    time_granularity = Column(String(10), nullable=False, default="call")  # call | hour
    call_count = Column(Integer, nullable=False, default=1)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    avg_response_time_ms = Column(Integer, nullable=False, default=0)
    total_cost = Column(Numeric(18, 6), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_usage_consumer_window", "consumer_id", "time_window"),
        Index("idx_usage_product_window", "api_product_id", "time_window"),
    )


class MarketplaceListing(Base):
    """A credit-priced agent offering in the consumer marketplace."""

    __tablename__ = "marketplace_listings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agent_id = Column(String(36), ForeignKey("autonomous_agents.id"), nullable=True)
    offer_id = Column(String(36), ForeignKey("service_offers.id"), nullable=True)
    api_product_id = Column(String(36), ForeignKey("api_products.id"), nullable=True)
    name = Column(String(200), nullable=False)
    short_description = Column(String(500), default="")
    description = Column(Text, default="")
    category = Column(String(50), nullable=False, default="automation")
    tags = Column(Text, default="[]")  # JSON array
    price_per_execution = Column(Numeric(12, 2), nullable=False)
    min_credits_required = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="active")
    is_public = Column(Boolean, nullable=False, default=True)
    is_featured = Column(Boolean, nullable=False, default=False)
    execution_count = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Numeric(18, 6), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("offer_id", name="uq_listing_offer"),
        Index("idx_listing_status", "status", "is_public"),
    )
