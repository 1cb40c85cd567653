"""Stripe payment integration.

Runs in simulated mode when no secret key is configured and uses the Stripe
SDK otherwise. Processor failures surface as PaymentProcessorError so callers
can queue a retry.
"""

import logging
import uuid
from datetime import datetime, timezone

import stripe

from brokerage.config import settings

logger = logging.getLogger(__name__)


class PaymentProcessorError(Exception):
    """The external processor rejected or failed a request."""


class StripePaymentService:
    """Payment intents and destination charges for billed executions and payouts."""

    def __init__(self, secret_key: str = ""):
        self.secret_key = secret_key
        self.simulated = not secret_key
        if not self.simulated:
            stripe.api_key = secret_key
            logger.info(
                "Stripe SDK initialized (mode=%s)",
                "test" if secret_key.startswith("sk_test_") else "live",
            )

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str = "usd",
        description: str = "",
        metadata: dict | None = None,
    ) -> dict:
        """Create a PaymentIntent (or simulate one)."""
        if self.simulated:
            return {
                "id": f"pi_sim_{uuid.uuid4().hex[:16]}",
                "amount": amount_cents,
                "currency": currency,
                "status": "requires_confirmation",
                "metadata": metadata or {},
                "created": int(datetime.now(timezone.utc).timestamp()),
                "simulated": True,
            }

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                description=description,
                metadata=metadata or {},
            )
        except stripe.StripeError as exc:
            raise PaymentProcessorError(str(exc)) from exc
        return {
            "id": intent.id,
            "amount": intent.amount,
            "currency": intent.currency,
            "status": intent.status,
            "metadata": dict(intent.metadata) if intent.metadata else {},
            "created": intent.created,
            "simulated": False,
        }

    async def confirm_payment(self, payment_intent_id: str) -> dict:
        if self.simulated:
            return {"id": payment_intent_id, "status": "succeeded", "simulated": True}

        try:
            intent = stripe.PaymentIntent.confirm(payment_intent_id)
        except stripe.StripeError as exc:
            raise PaymentProcessorError(str(exc)) from exc
        return {"id": intent.id, "status": intent.status, "simulated": False}

    async def create_destination_charge(
        self,
        amount_cents: int,
        destination_account: str,
        application_fee_cents: int,
        currency: str = "usd",
        description: str = "",
    ) -> dict:
        """Charge on behalf of a connected seller account, keeping an application fee."""
        if self.simulated:
            return {
                "id": f"pi_sim_{uuid.uuid4().hex[:16]}",
                "amount": amount_cents,
                "application_fee_amount": application_fee_cents,
                "destination": destination_account,
                "status": "succeeded",
                "simulated": True,
            }

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                description=description,
                application_fee_amount=application_fee_cents,
                transfer_data={"destination": destination_account},
            )
        except stripe.StripeError as exc:
            raise PaymentProcessorError(str(exc)) from exc
        return {
            "id": intent.id,
            "amount": intent.amount,
            "application_fee_amount": application_fee_cents,
            "destination": destination_account,
            "status": intent.status,
            "simulated": False,
        }


def get_stripe_service() -> StripePaymentService:
    """FastAPI dependency; tests override it with a fake processor."""
    return StripePaymentService(settings.stripe_secret_key)
