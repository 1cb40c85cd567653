from brokerage.models.signal import DemandSignal, ClassifiedIntent, TrendPrediction
from brokerage.models.product import Seller, ApiProduct, ApiUsageMetric, MarketplaceListing
from brokerage.models.opportunity import DemandOpportunity, MarketOpportunity, ServiceOffer
from brokerage.models.agent import AutonomousAgent, BrainTask
from brokerage.models.api_key import ApiKey
from brokerage.models.execution import Execution, ExecutionLog
from brokerage.models.revenue import RevenueRecord
from brokerage.models.wallet import UserWallet, CreditTransaction, CreditPack
from brokerage.models.payment import Payment, PendingPayment

__all__ = [
    "DemandSignal",
    "ClassifiedIntent",
    "TrendPrediction",
    "Seller",
    "ApiProduct",
    "ApiUsageMetric",
    "MarketplaceListing",
    "DemandOpportunity",
    "MarketOpportunity",
    "ServiceOffer",
    "AutonomousAgent",
    "BrainTask",
    "ApiKey",
    "Execution",
    "ExecutionLog",
    "RevenueRecord",
    "UserWallet",
    "CreditTransaction",
    "CreditPack",
    "Payment",
    "PendingPayment",
]
