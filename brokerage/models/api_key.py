import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)

from brokerage.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class ApiKey(Base):
    """Bearer key for direct execution requests. Only the SHA-256 hash is stored."""

    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    key_hash = Column(String(64), unique=True, nullable=False)
    key_prefix = Column(String(12), nullable=False)
    name = Column(String(100), nullable=False, default="")
    owner_id = Column(String(100), nullable=False)
    permissions = Column(Text, default='["execute", "status", "balance"]')  # JSON array
    rate_limit_per_minute = Column(Integer, nullable=False, default=60)
    rate_limit_per_hour = Column(Integer, nullable=False, default=1000)
    daily_budget = Column(Numeric(18, 6), nullable=False, default=100)
    daily_spent = Column(Numeric(18, 6), nullable=False, default=0)
    daily_spent_date = Column(String(10), nullable=True)  # UTC date the counter belongs to
    total_spent = Column(Numeric(18, 6), nullable=False, default=0)
    total_executions = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("daily_spent >= 0", name="ck_api_key_spent_nonneg"),
        Index("idx_api_key_owner", "owner_id"),
    )
