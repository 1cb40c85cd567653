from typing import Annotated

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.auth import get_current_operator
from brokerage.core.exceptions import ValidationFailedError
from brokerage.database import get_db
from brokerage.schemas.actions import BillingAction, BillingSummaryAction, CreateExecutionPaymentAction
from brokerage.services import billing_service
from brokerage.services.execution_service import TargetDispatcher, get_dispatcher
from brokerage.services.stripe_service import StripePaymentService, get_stripe_service

router = APIRouter(prefix="/billing-trigger", tags=["billing"])


@router.post("")
async def billing_trigger(
    req: Annotated[BillingAction, Body(discriminator="action")],
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
    dispatcher: TargetDispatcher = Depends(get_dispatcher),
    stripe: StripePaymentService = Depends(get_stripe_service),
):
    """Run a billed execution, or report revenue figures."""
    try:
        if isinstance(req, CreateExecutionPaymentAction):
            result = await billing_service.create_execution_payment(
                db,
                req.agent_id,
                req.api_product_id,
                amount=req.amount,
                dispatcher=dispatcher,
                stripe=stripe,
            )
            return {"success": result["status"] == "completed", **result}

        if isinstance(req, BillingSummaryAction):
            return await billing_service.get_billing_summary(db)
    except ValueError as exc:
        raise ValidationFailedError(str(exc))

    raise ValidationFailedError("Unknown action")
