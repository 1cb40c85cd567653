"""Credit wallet ledger.

The credit transaction log is the source of truth. ``UserWallet.balance_credits``
is a cache written only by ``append_transaction`` from the transaction it just
appended, and ``recompute_balance`` can always rebuild it from the log.
"""

import json
import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.config import settings
from brokerage.core.exceptions import InsufficientCreditsError, NotFoundError
from brokerage.models.execution import Execution
from brokerage.models.product import MarketplaceListing
from brokerage.models.wallet import CreditPack, CreditTransaction, UserWallet
from brokerage.services.billing_service import RevenueSplit, record_revenue, to_decimal

logger = logging.getLogger(__name__)

_is_sqlite: bool = settings.database_url.startswith("sqlite")

DEFAULT_CREDIT_PACKS = [
    {"name": "Starter", "credits_amount": 100, "bonus_credits": 0, "price_usd": 10, "sort_order": 1},
    {"name": "Growth", "credits_amount": 500, "bonus_credits": 50, "price_usd": 45, "sort_order": 2},
    {"name": "Scale", "credits_amount": 2000, "bonus_credits": 300, "price_usd": 160, "sort_order": 3},
]


async def _get_wallet(db: AsyncSession, user_id: str, lock: bool = False) -> UserWallet | None:
    stmt = select(UserWallet).where(UserWallet.user_id == user_id)
    if lock and not _is_sqlite:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _last_transaction(db: AsyncSession, wallet_id: str) -> CreditTransaction | None:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.wallet_id == wallet_id)
        .order_by(CreditTransaction.sequence.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def append_transaction(
    db: AsyncSession,
    wallet: UserWallet,
    amount,
    transaction_type: str,
    source: str,
    description: str = "",
    agent_id: str | None = None,
    execution_id: str | None = None,
    metadata: dict | None = None,
) -> CreditTransaction:
    """Append one ledger entry chained to the previous one. Flushes; the caller commits.

    balance_before is the previous entry's balance_after, and the
    (wallet_id, sequence) constraint rejects a concurrent writer that read the
    same predecessor.
    """
    amount_d = to_decimal(amount)
    if amount_d <= 0:
        raise ValueError("Transaction amount must be positive")
    if transaction_type not in {"credit", "debit"}:
        raise ValueError(f"Unknown transaction type '{transaction_type}'")

    last = await _last_transaction(db, wallet.id)
    balance_before = to_decimal(last.balance_after) if last else Decimal("0.000000")
    sequence = (last.sequence + 1) if last else 1

    if transaction_type == "credit":
        balance_after = balance_before + amount_d
    else:
        balance_after = balance_before - amount_d
        if balance_after < 0:
            raise InsufficientCreditsError(amount_d, balance_before)

    tx = CreditTransaction(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        sequence=sequence,
        transaction_type=transaction_type,
        amount=amount_d,
        source=source,
        description=description,
        agent_id=agent_id,
        execution_id=execution_id,
        balance_before=balance_before,
        balance_after=balance_after,
        metadata_json=json.dumps(metadata or {}),
    )
    db.add(tx)

    wallet.balance_credits = balance_after
    if transaction_type == "credit":
        wallet.total_earned = to_decimal(wallet.total_earned or 0) + amount_d
    else:
        wallet.total_spent = to_decimal(wallet.total_spent or 0) + amount_d
    await db.flush()
    return tx


async def get_or_create_wallet(db: AsyncSession, user_id: str) -> UserWallet:
    """Return the user's wallet, creating it with the signup credit on first sight."""
    if not user_id:
        raise ValueError("user_id is required")
    wallet = await _get_wallet(db, user_id)
    if wallet is not None:
        return wallet

    wallet = UserWallet(user_id=user_id, balance_credits=0)
    db.add(wallet)
    try:
        await db.flush()
        if settings.wallet_signup_credits > 0:
            await append_transaction(
                db, wallet, settings.wallet_signup_credits, "credit", "signup_bonus",
                description="Welcome credits",
            )
        await db.commit()
    except IntegrityError:
        # Another request created it first
        await db.rollback()
        wallet = await _get_wallet(db, user_id)
        if wallet is None:
            raise
        return wallet

    logger.info("Wallet created for user %s with %s credits", user_id, wallet.balance_credits)
    return wallet


def verify_chain(transactions: list[CreditTransaction]) -> bool:
    """Check the balance continuity of transactions ordered by sequence."""
    previous_after = Decimal("0")
    for tx in transactions:
        before = to_decimal(tx.balance_before)
        after = to_decimal(tx.balance_after)
        amount = to_decimal(tx.amount)
        if before != previous_after:
            return False
        expected = before + amount if tx.transaction_type == "credit" else before - amount
        if after != expected:
            return False
        previous_after = after
    return True


async def recompute_balance(db: AsyncSession, wallet_id: str) -> Decimal:
    """Derive the balance by replaying the ledger, and refresh the cached value."""
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.wallet_id == wallet_id)
        .order_by(CreditTransaction.sequence)
    )
    transactions = list(result.scalars().all())
    if not verify_chain(transactions):
        raise ValueError(f"Credit ledger for wallet {wallet_id} is not continuous")

    balance = to_decimal(transactions[-1].balance_after) if transactions else Decimal("0.000000")
    wallet = await db.get(UserWallet, wallet_id)
    if wallet is not None and to_decimal(wallet.balance_credits) != balance:
        logger.warning("Wallet %s cache drifted (%s != %s), repairing", wallet_id, wallet.balance_credits, balance)
        wallet.balance_credits = balance
        await db.commit()
    return balance


def ensure_sufficient_credits(wallet: UserWallet, price) -> None:
    """Raise 402 when the wallet cannot cover ``price``. Writes nothing."""
    price_d = to_decimal(price)
    available = to_decimal(wallet.balance_credits or 0)
    if available < price_d:
        raise InsufficientCreditsError(price_d, available)


async def debit_for_execution(
    db: AsyncSession,
    user_id: str,
    amount,
    agent_id: str | None,
    execution_id: str,
) -> CreditTransaction:
    wallet = await _get_wallet(db, user_id, lock=True)
    if wallet is None:
        raise NotFoundError("Wallet", user_id)
    return await append_transaction(
        db, wallet, amount, "debit", "agent_execution",
        description=f"Agent execution {execution_id}",
        agent_id=agent_id,
        execution_id=execution_id,
    )


async def add_credits(
    db: AsyncSession,
    user_id: str,
    amount: float,
    source: str = "manual",
    description: str = "",
) -> CreditTransaction:
    wallet = await get_or_create_wallet(db, user_id)
    tx = await append_transaction(db, wallet, amount, "credit", source, description=description)
    await db.commit()
    logger.info("Added %s credits to %s (%s)", tx.amount, user_id, source)
    return tx


async def ensure_default_credit_packs(db: AsyncSession) -> None:
    existing = (await db.execute(select(func.count(CreditPack.id)))).scalar()
    if existing:
        return
    for pack in DEFAULT_CREDIT_PACKS:
        db.add(CreditPack(**pack))
    await db.commit()


async def list_credit_packs(db: AsyncSession) -> list[CreditPack]:
    result = await db.execute(
        select(CreditPack).where(CreditPack.is_active.is_(True)).order_by(CreditPack.sort_order)
    )
    return list(result.scalars().all())


async def purchase_credits(
    db: AsyncSession,
    user_id: str,
    pack_id: str,
    payment_reference: str | None = None,
) -> dict:
    """Credit a pack (plus bonus) and record the sale as platform revenue."""
    pack = await db.get(CreditPack, pack_id)
    if pack is None or not pack.is_active:
        raise NotFoundError("Credit pack", pack_id)

    credits = to_decimal(pack.credits_amount) + to_decimal(pack.bonus_credits or 0)
    wallet = await get_or_create_wallet(db, user_id)
    tx = await append_transaction(
        db, wallet, credits, "credit", "purchase",
        description=f"Purchased {pack.name} pack",
        metadata={"pack_id": pack.id, "payment_reference": payment_reference},
    )
    price = to_decimal(pack.price_usd)
    await record_revenue(
        db,
        RevenueSplit(amount=price, platform_fee=price, seller_amount=Decimal("0"), agent_reward=Decimal("0")),
        "credit_purchase",
        metadata={"user_id": user_id, "pack_id": pack.id},
    )
    await db.commit()
    return {
        "transaction_id": tx.id,
        "credits_added": float(credits),
        "new_balance": float(tx.balance_after),
    }


async def get_wallet_view(db: AsyncSession, user_id: str, limit: int = 20) -> dict:
    wallet = await get_or_create_wallet(db, user_id)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.wallet_id == wallet.id)
        .order_by(CreditTransaction.sequence.desc())
        .limit(limit)
    )
    return {
        "wallet": {
            "id": wallet.id,
            "user_id": wallet.user_id,
            "balance_credits": float(wallet.balance_credits),
            "total_spent": float(wallet.total_spent or 0),
            "total_earned": float(wallet.total_earned or 0),
        },
        "transactions": [
            {
                "id": tx.id,
                "sequence": tx.sequence,
                "transaction_type": tx.transaction_type,
                "amount": float(tx.amount),
                "source": tx.source,
                "description": tx.description,
                "balance_before": float(tx.balance_before),
                "balance_after": float(tx.balance_after),
                "created_at": tx.created_at.isoformat() if tx.created_at else None,
            }
            for tx in result.scalars().all()
        ],
    }


async def get_economy_stats(db: AsyncSession) -> dict:
    wallets, circulating, spent = (await db.execute(
        select(
            func.count(UserWallet.id),
            func.coalesce(func.sum(UserWallet.balance_credits), 0),
            func.coalesce(func.sum(UserWallet.total_spent), 0),
        )
    )).one()
    listings = (await db.execute(
        select(func.count(MarketplaceListing.id)).where(MarketplaceListing.status == "active")
    )).scalar()
    executions = (await db.execute(
        select(func.count(Execution.id)).where(Execution.source == "marketplace")
    )).scalar()
    return {
        "total_wallets": int(wallets or 0),
        "circulating_credits": float(circulating),
        "credits_spent": float(spent),
        "active_listings": int(listings or 0),
        "marketplace_executions": int(executions or 0),
    }
