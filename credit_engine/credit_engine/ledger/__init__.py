"""Credit ledger: per-tenant balances, allocations and transaction history."""

from credit_engine.ledger.allocations import (
    CREDIT_PACKS,
    FEATURE_COSTS,
    CreditPack,
    TierAllocation,
    calculate_campaign_cost,
    feature_cost,
    get_pack,
    get_tier,
)
from credit_engine.ledger.credit_ledger import CreditLedger
from credit_engine.ledger.models import Balance, CreditTransaction, DeductResult, DeductStatus

__all__ = [
    "CREDIT_PACKS",
    "FEATURE_COSTS",
    "Balance",
    "CreditLedger",
    "CreditPack",
    "CreditTransaction",
    "DeductResult",
    "DeductStatus",
    "TierAllocation",
    "calculate_campaign_cost",
    "feature_cost",
    "get_pack",
    "get_tier",
]
