import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, Text

from brokerage.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class RevenueRecord(Base):
    """Append-only revenue row. Only ``status`` may change (pending -> collected)."""

    __tablename__ = "revenue_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agent_id = Column(String(36), ForeignKey("autonomous_agents.id"), nullable=True)
    task_id = Column(String(36), nullable=True)
    execution_id = Column(String(36), ForeignKey("executions.id"), nullable=True)
    revenue_source = Column(String(30), nullable=False)  # api_execution | marketplace | credit_purchase | payment_fees
    amount = Column(Numeric(18, 6), nullable=False)
    platform_fee = Column(Numeric(18, 6), nullable=False, default=0)
    seller_amount = Column(Numeric(18, 6), nullable=False, default=0)
    agent_reward = Column(Numeric(18, 6), nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default="pending")  # pending | collected | distributed
    metadata_json = Column(Text, default="{}")
    collected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_revenue_created", "created_at"),
        Index("idx_revenue_source", "revenue_source"),
    )
