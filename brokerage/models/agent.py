import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)

from brokerage.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class AutonomousAgent(Base):
    """A worker that executes tasks against third-party APIs."""

    __tablename__ = "autonomous_agents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agent_name = Column(String(100), nullable=False)
    agent_type = Column(String(30), nullable=False)  # api_consumer | payment_bot | volume_generator
    capabilities = Column(Text, default="[]")  # JSON array
    status = Column(String(20), nullable=False, default="idle")  # idle | active | error | maintenance
    performance_score = Column(Numeric(6, 4), nullable=False, default=0.5)
    success_rate = Column(Numeric(6, 4), nullable=False, default=1)
    daily_budget = Column(Numeric(12, 2), nullable=False, default=100)
    wallet_address = Column(String(120), default="")
    current_task_id = Column(String(36), nullable=True)
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    total_tasks_completed = Column(Integer, nullable=False, default=0)
    total_tasks_failed = Column(Integer, nullable=False, default=0)
    total_revenue_generated = Column(Numeric(18, 6), nullable=False, default=0)
    last_active_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "performance_score >= 0 AND performance_score <= 1",
            name="ck_agent_performance_range",
        ),
        Index("idx_agent_type_status", "agent_type", "status"),
    )


class BrainTask(Base):
    """A budgeted unit of work bound to exactly one worker."""

    __tablename__ = "brain_tasks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    task_type = Column(String(30), nullable=False)  # volume_generation | payment | api_consumption
    priority = Column(Integer, nullable=False, default=3)
    opportunity_id = Column(String(36), nullable=True)
    opportunity_kind = Column(String(10), nullable=False, default="market")  # market | demand
    target_api_id = Column(String(36), ForeignKey("api_products.id"), nullable=True)
    assigned_agent_id = Column(String(36), ForeignKey("autonomous_agents.id"), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    allocated_budget = Column(Numeric(12, 6), nullable=False, default=0)
    expected_revenue = Column(Numeric(14, 2), nullable=False, default=0)
    deadline = Column(DateTime(timezone=True), nullable=True)
    result_json = Column(Text, default="{}")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("priority >= 1 AND priority <= 5", name="ck_task_priority_range"),
        Index("idx_task_status", "status"),
        Index("idx_task_agent", "assigned_agent_id"),
    )
