from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.auth import get_current_operator
from brokerage.core.exceptions import ValidationFailedError
from brokerage.database import get_db
from brokerage.schemas.payment import PaymentCreateRequest, PaymentQueueResult, PendingPaymentResponse
from brokerage.services import payment_service
from brokerage.services.stripe_service import StripePaymentService, get_stripe_service

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PendingPaymentResponse, status_code=201)
async def create_payment(
    req: PaymentCreateRequest,
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    """Queue a payout or charge for the next queue pass."""
    try:
        payment = await payment_service.enqueue_payment(
            db,
            amount=req.amount,
            seller_id=req.seller_id,
            payment_method=req.payment_method,
            purpose=req.purpose,
            execution_id=req.execution_id,
            scheduled_for=req.scheduled_for,
        )
    except ValueError as exc:
        raise ValidationFailedError(str(exc))
    return payment


@router.post("/process-queue", response_model=PaymentQueueResult)
async def process_queue(
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
    stripe: StripePaymentService = Depends(get_stripe_service),
):
    return await payment_service.process_payment_queue(db, stripe)
