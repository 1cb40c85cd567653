"""Consumer marketplace and credit wallets behind a single action endpoint.

Browsing and executing listings is open; actions that mint credits need an
operator token.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Body, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.auth import get_current_operator
from brokerage.core.exceptions import ValidationFailedError
from brokerage.database import get_db
from brokerage.schemas.actions import (
    OPERATOR_ECONOMY_ACTIONS,
    AddCreditsAction,
    AgentEconomyAction,
    EconomyStatsAction,
    ExecuteListingAction,
    GetAgentAction,
    GetWalletAction,
    ListAgentsAction,
    ListCreditPacksAction,
    PurchaseCreditsAction,
)
from brokerage.services import marketplace_service, wallet_service
from brokerage.services.execution_service import TargetDispatcher, get_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent-economy", tags=["agent-economy"])


@router.post("")
async def agent_economy(
    req: Annotated[AgentEconomyAction, Body(discriminator="action")],
    authorization: str = Header(None),
    db: AsyncSession = Depends(get_db),
    dispatcher: TargetDispatcher = Depends(get_dispatcher),
):
    if req.action in OPERATOR_ECONOMY_ACTIONS:
        get_current_operator(authorization)

    try:
        if isinstance(req, ListAgentsAction):
            listings = await marketplace_service.list_listings(db, req.category, req.featured_only)
            return {
                "agents": [marketplace_service.listing_to_dict(listing) for listing in listings],
                "count": len(listings),
            }

        if isinstance(req, GetAgentAction):
            listing = await marketplace_service.get_listing(db, req.agent_id)
            return {"agent": {
                **marketplace_service.listing_to_dict(listing),
                "description": listing.description,
                "total_revenue": float(listing.total_revenue or 0),
            }}

        if isinstance(req, ExecuteListingAction):
            return await marketplace_service.execute_listing(
                db,
                req.agent_id,
                user_id=req.user_id,
                api_key=req.api_key,
                parameters=req.parameters,
                dispatcher=dispatcher,
            )

        if isinstance(req, GetWalletAction):
            return await wallet_service.get_wallet_view(db, req.user_id)

        if isinstance(req, AddCreditsAction):
            tx = await wallet_service.add_credits(
                db, req.user_id, req.amount, source=req.source, description=req.description,
            )
            return {
                "success": True,
                "transaction_id": tx.id,
                "credits_added": float(tx.amount),
                "new_balance": float(tx.balance_after),
            }

        if isinstance(req, ListCreditPacksAction):
            packs = await wallet_service.list_credit_packs(db)
            return {"packs": [
                {
                    "id": p.id,
                    "name": p.name,
                    "credits_amount": float(p.credits_amount),
                    "bonus_credits": float(p.bonus_credits or 0),
                    "price_usd": float(p.price_usd),
                }
                for p in packs
            ]}

        if isinstance(req, PurchaseCreditsAction):
            result = await wallet_service.purchase_credits(
                db, req.user_id, req.pack_id, req.payment_reference,
            )
            return {"success": True, **result}

        if isinstance(req, EconomyStatsAction):
            return await wallet_service.get_economy_stats(db)
    except ValueError as exc:
        raise ValidationFailedError(str(exc))

    raise ValidationFailedError("Unknown action")
