import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from brokerage.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Payment(Base):
    """A payment intent created with the external processor for a billed execution."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = Column(String(36), ForeignKey("executions.id"), nullable=True)
    revenue_record_id = Column(String(36), ForeignKey("revenue_records.id"), nullable=True)
    stripe_payment_intent_id = Column(String(100), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    status = Column(String(30), nullable=False, default="pending")
    description = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_payment_execution", "execution_id"),
    )


class PendingPayment(Base):
    """Outbound payout queued for the payment worker, retried with bounded backoff."""

    __tablename__ = "pending_payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    seller_id = Column(String(36), ForeignKey("sellers.id"), nullable=True)
    execution_id = Column(String(36), nullable=True)
    amount = Column(Numeric(18, 6), nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    payment_method = Column(String(20), nullable=False, default="stripe")  # stripe | crypto
    purpose = Column(String(200), default="")
    status = Column(String(20), nullable=False, default="pending")
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    transaction_id = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_pending_payment_status", "status", "scheduled_for"),
    )
