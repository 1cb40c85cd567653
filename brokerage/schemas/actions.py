"""Request bodies for the action-dispatched operator endpoints.

Each endpoint takes a union discriminated on ``action``; an unknown action
or a missing field fails validation (400).
"""

from typing import Literal, Union

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Demand radar
# ---------------------------------------------------------------------------

class ScanAction(BaseModel):
    action: Literal["scan"]
    keyword: str = Field(..., max_length=200)
    source: str = Field(default="manual_input", max_length=50)
    signal_text: str | None = None
    signal_volume: int = Field(default=100, ge=0)
    velocity_score: float = Field(default=1.5, ge=0)


class SimulateAction(BaseModel):
    action: Literal["simulate"]
    count: int = Field(default=5, ge=1, le=100)


class ProcessAction(BaseModel):
    action: Literal["process"]
    limit: int | None = Field(default=None, ge=1, le=500)


class GenerateOfferAction(BaseModel):
    action: Literal["generate_offer"]
    opportunity_id: str
    auto_publish: bool = True


class AutonomousCycleAction(BaseModel):
    action: Literal["autonomous_cycle"]


DemandRadarAction = Union[
    ScanAction, SimulateAction, ProcessAction, GenerateOfferAction, AutonomousCycleAction,
]


# ---------------------------------------------------------------------------
# Agent economy (marketplace + wallets)
# ---------------------------------------------------------------------------

class ListAgentsAction(BaseModel):
    action: Literal["list_agents"]
    category: str | None = None
    featured_only: bool = False


class GetAgentAction(BaseModel):
    action: Literal["get_agent"]
    agent_id: str


class ExecuteListingAction(BaseModel):
    action: Literal["execute"]
    agent_id: str
    user_id: str | None = None
    api_key: str | None = None
    parameters: dict = Field(default_factory=dict)


class GetWalletAction(BaseModel):
    action: Literal["get_wallet"]
    user_id: str = Field(..., min_length=1)


class AddCreditsAction(BaseModel):
    action: Literal["add_credits"]
    user_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    source: str = "manual"
    description: str = ""


class ListCreditPacksAction(BaseModel):
    action: Literal["list_credit_packs"]


class PurchaseCreditsAction(BaseModel):
    action: Literal["purchase_credits"]
    user_id: str = Field(..., min_length=1)
    pack_id: str
    payment_reference: str | None = None


class EconomyStatsAction(BaseModel):
    action: Literal["economy_stats"]


AgentEconomyAction = Union[
    ListAgentsAction, GetAgentAction, ExecuteListingAction, GetWalletAction,
    AddCreditsAction, ListCreditPacksAction, PurchaseCreditsAction, EconomyStatsAction,
]

# Actions that move credits need an operator token
OPERATOR_ECONOMY_ACTIONS = frozenset({"add_credits", "purchase_credits"})


# ---------------------------------------------------------------------------
# Billing trigger
# ---------------------------------------------------------------------------

class CreateExecutionPaymentAction(BaseModel):
    action: Literal["create_execution_payment"]
    agent_id: str
    api_product_id: str
    amount: float | None = Field(default=None, gt=0)


class BillingSummaryAction(BaseModel):
    action: Literal["get_billing_summary"]


BillingAction = Union[CreateExecutionPaymentAction, BillingSummaryAction]


# ---------------------------------------------------------------------------
# Agent scheduler
# ---------------------------------------------------------------------------

class ActivateAgentAction(BaseModel):
    action: Literal["activate_agent"]
    agent_id: str


class DeactivateAgentAction(BaseModel):
    action: Literal["deactivate_agent"]
    agent_id: str


class RunScheduledCycleAction(BaseModel):
    action: Literal["run_scheduled_cycle"]


class GetAgentStatusAction(BaseModel):
    action: Literal["get_agent_status"]
    agent_id: str


class RestartFailedAgentsAction(BaseModel):
    action: Literal["restart_failed_agents"]


SchedulerAction = Union[
    ActivateAgentAction, DeactivateAgentAction, RunScheduledCycleAction,
    GetAgentStatusAction, RestartFailedAgentsAction,
]
