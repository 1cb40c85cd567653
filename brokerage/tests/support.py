"""Test engine, session factory and test doubles shared by conftest and test modules.

Kept out of conftest.py so test modules import one copy of the engine.
"""

import random

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from brokerage.services.execution_service import TargetDispatcher
from brokerage.services.stripe_service import PaymentProcessorError, StripePaymentService


# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


def set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


event.listen(test_engine.sync_engine, "connect", set_sqlite_pragma)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

def make_dispatcher(failure_rate: float = 0.0, seed: int = 7) -> TargetDispatcher:
    """Simulated-target dispatcher with no latency and a fixed failure rate."""
    return TargetDispatcher(failure_rate=failure_rate, latency_ms=(0, 0), rng=random.Random(seed))


class FakeStripe(StripePaymentService):
    """Simulated processor that can be told to fail the next N calls."""

    def __init__(self, fail_times: int = 0, confirm_status: str = "succeeded"):
        super().__init__("")
        self.fail_times = fail_times
        self.confirm_status = confirm_status
        self.intents: list[dict] = []
        self.destination_charges: list[dict] = []

    def _maybe_fail(self):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise PaymentProcessorError("card_declined")

    async def create_payment_intent(self, amount_cents, currency="usd", description="", metadata=None):
        self._maybe_fail()
        intent = await super().create_payment_intent(amount_cents, currency, description, metadata)
        self.intents.append(intent)
        return intent

    async def confirm_payment(self, payment_intent_id):
        confirmed = await super().confirm_payment(payment_intent_id)
        confirmed["status"] = self.confirm_status
        return confirmed

    async def create_destination_charge(self, amount_cents, destination_account, application_fee_cents,
                                        currency="usd", description=""):
        self._maybe_fail()
        charge = await super().create_destination_charge(
            amount_cents, destination_account, application_fee_cents, currency, description,
        )
        self.destination_charges.append(charge)
        return charge
