"""Consumer marketplace: credit-priced agent listings executed on demand."""

import json
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.exceptions import NoAvailableWorkerError, NotFoundError
from brokerage.models.agent import AutonomousAgent
from brokerage.models.product import MarketplaceListing
from brokerage.services import api_key_service, execution_service, wallet_service
from brokerage.services.billing_service import to_decimal
from brokerage.services.scheduler_service import AVAILABLE_STATUSES, WorkerRegistry

logger = logging.getLogger(__name__)

FALLBACK_AGENT_TYPE = "api_consumer"


async def list_listings(
    db: AsyncSession, category: str | None = None, featured_only: bool = False,
) -> list[MarketplaceListing]:
    stmt = select(MarketplaceListing).where(
        MarketplaceListing.status == "active",
        MarketplaceListing.is_public.is_(True),
    )
    if category:
        stmt = stmt.where(MarketplaceListing.category == category)
    if featured_only:
        stmt = stmt.where(MarketplaceListing.is_featured.is_(True))
    result = await db.execute(
        stmt.order_by(MarketplaceListing.is_featured.desc(), MarketplaceListing.execution_count.desc())
    )
    return list(result.scalars().all())


async def get_listing(db: AsyncSession, listing_id: str) -> MarketplaceListing:
    """Look a listing up by its own id or by the id of the agent behind it."""
    listing = await db.get(MarketplaceListing, listing_id)
    if listing is None:
        result = await db.execute(
            select(MarketplaceListing).where(MarketplaceListing.agent_id == listing_id).limit(1)
        )
        listing = result.scalar_one_or_none()
    if listing is None or listing.status != "active":
        raise NotFoundError("Agent", listing_id)
    return listing


async def _pick_worker(db: AsyncSession, listing: MarketplaceListing) -> AutonomousAgent:
    if listing.agent_id:
        agent = await db.get(AutonomousAgent, listing.agent_id)
        if agent is not None and agent.status in AVAILABLE_STATUSES:
            return agent
    registry = await WorkerRegistry.load(db)
    candidates = registry.candidates(FALLBACK_AGENT_TYPE, statuses=AVAILABLE_STATUSES)
    if not candidates:
        raise NoAvailableWorkerError(listing.category)
    return candidates[0]


async def execute_listing(
    db: AsyncSession,
    agent_id: str,
    user_id: str | None = None,
    api_key: str | None = None,
    parameters: dict | None = None,
    dispatcher=None,
) -> dict:
    """Run a listing for a user, paying with wallet credits.

    The balance check happens before anything is written, so an
    under-funded request leaves no execution and no transaction behind.
    """
    if api_key:
        key = await api_key_service.authenticate_key(db, api_key)
        user_id = key.owner_id
    if not user_id:
        raise ValueError("user_id or api_key is required")

    listing = await get_listing(db, agent_id)
    price = to_decimal(listing.price_per_execution)
    wallet = await wallet_service.get_or_create_wallet(db, user_id)
    wallet_service.ensure_sufficient_credits(wallet, price)

    worker = await _pick_worker(db, listing)
    execution = await execution_service.create_execution(
        db,
        agent_id=worker.id,
        api_product_id=listing.api_product_id,
        listing_id=listing.id,
        user_id=user_id,
        cost=price,
        source="marketplace",
        task_type=listing.category,
        payload=parameters or {},
    )
    outcome = await execution_service.run_execution(db, execution.id, dispatcher=dispatcher)

    if outcome.success:
        listing = await db.get(MarketplaceListing, listing.id)
        listing.execution_count = (listing.execution_count or 0) + 1
        listing.total_revenue = to_decimal(listing.total_revenue or 0) + price
        await db.commit()

    if outcome.billing_error:
        logger.warning(
            "[credit_check] Marketplace execution %s completed but was not charged: %s",
            outcome.execution_id, outcome.billing_error,
        )
        # Balance moved between the check and the debit
        await db.refresh(wallet)
        wallet_service.ensure_sufficient_credits(wallet, price)

    return {
        "success": outcome.success,
        "execution_id": outcome.execution_id,
        "status": outcome.status,
        "cost": float(price),
        "response_time_ms": outcome.response_time_ms,
        "result": outcome.result,
        "error": outcome.error,
    }


def listing_to_dict(listing: MarketplaceListing) -> dict:
    return {
        "id": listing.id,
        "agent_id": listing.agent_id,
        "name": listing.name,
        "short_description": listing.short_description,
        "category": listing.category,
        "tags": json.loads(listing.tags or "[]"),
        "price_per_execution": float(listing.price_per_execution),
        "min_credits_required": listing.min_credits_required,
        "is_featured": bool(listing.is_featured),
        "execution_count": listing.execution_count or 0,
    }
