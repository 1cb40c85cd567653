import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from brokerage.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Execution(Base):
    """One concrete run against a target: pending -> executing -> completed | failed."""

    __tablename__ = "executions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agent_id = Column(String(36), ForeignKey("autonomous_agents.id"), nullable=False)
    api_product_id = Column(String(36), ForeignKey("api_products.id"), nullable=True)
    task_id = Column(String(36), ForeignKey("brain_tasks.id"), nullable=True)
    api_key_id = Column(String(36), ForeignKey("api_keys.id"), nullable=True)
    listing_id = Column(String(36), ForeignKey("marketplace_listings.id"), nullable=True)
    user_id = Column(String(100), nullable=True)
    source = Column(String(20), nullable=False, default="direct")  # direct | marketplace | task | billing
    task_type = Column(String(30), nullable=True)
    request_payload = Column(Text, default="{}")
    result_json = Column(Text, default="{}")
    cost = Column(Numeric(18, 6), nullable=False, default=0)
    revenue = Column(Numeric(18, 6), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")
    response_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_execution_status", "status"),
        Index("idx_execution_agent", "agent_id", "created_at"),
        Index("idx_execution_key", "api_key_id"),
    )


class ExecutionLog(Base):
    """Append-only step log for an execution."""

    __tablename__ = "execution_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = Column(String(36), ForeignKey("executions.id"), nullable=False)
    api_key_id = Column(String(36), nullable=True)
    step = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)  # success | error | info
    details = Column(Text, default="{}")  # JSON object
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_exec_log_execution", "execution_id", "created_at"),
        Index("idx_exec_log_key", "api_key_id", "created_at"),
    )
