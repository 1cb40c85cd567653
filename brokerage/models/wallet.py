"""Prepaid credit wallets and their append-only transaction log."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
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


class UserWallet(Base):
    """Cached balance per user. The credit transaction log is authoritative."""

    __tablename__ = "user_wallets"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(100), unique=True, nullable=False)
    balance_credits = Column(Numeric(18, 6), nullable=False, default=0)
    total_spent = Column(Numeric(18, 6), nullable=False, default=0)
    total_earned = Column(Numeric(18, 6), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("balance_credits >= 0", name="ck_wallet_balance_nonneg"),
    )


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    wallet_id = Column(String(36), ForeignKey("user_wallets.id"), nullable=False)
    user_id = Column(String(100), nullable=False)
    # (wallet_id, sequence) is unique so two writers cannot fork the chain
    sequence = Column(Integer, nullable=False)
    transaction_type = Column(String(10), nullable=False)  # credit | debit
    amount = Column(Numeric(18, 6), nullable=False)
    source = Column(String(30), nullable=False)  # signup_bonus | purchase | manual | agent_execution
    description = Column(Text, default="")
    agent_id = Column(String(36), nullable=True)
    execution_id = Column(String(36), nullable=True)
    balance_before = Column(Numeric(18, 6), nullable=False)
    balance_after = Column(Numeric(18, 6), nullable=False)
    metadata_json = Column(Text, default="{}")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("wallet_id", "sequence", name="uq_credit_tx_wallet_seq"),
        CheckConstraint("amount > 0", name="ck_credit_tx_amount_pos"),
        CheckConstraint("balance_after >= 0", name="ck_credit_tx_after_nonneg"),
        Index("idx_credit_tx_user", "user_id", "created_at"),
    )


class CreditPack(Base):
    __tablename__ = "credit_packs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False)
    credits_amount = Column(Numeric(18, 6), nullable=False)
    bonus_credits = Column(Numeric(18, 6), nullable=False, default=0)
    price_usd = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
