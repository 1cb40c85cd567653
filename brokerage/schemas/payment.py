from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class PaymentCreateRequest(BaseModel):
    amount: float = Field(..., gt=0)
    seller_id: str | None = None
    payment_method: Literal["stripe", "crypto"] = "stripe"
    purpose: str = Field(default="", max_length=500)
    execution_id: str | None = None
    scheduled_for: datetime | None = None


class PendingPaymentResponse(BaseModel):
    id: str
    seller_id: str | None = None
    execution_id: str | None = None
    amount: float
    payment_method: str
    purpose: str | None = None
    status: str
    retry_count: int
    next_retry_at: datetime | None = None
    scheduled_for: datetime | None = None

    model_config = {"from_attributes": True}


class PaymentQueueResult(BaseModel):
    processed: int
    completed: int
    failed: int
    abandoned: int
