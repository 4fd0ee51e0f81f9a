"""Lookup tables for tier allocations, feature costs and credit packs.

Tier allocations::

    trial:        50      one-time, reset date pushed ten years out
    starter:      500     monthly
    professional: 2_000   monthly
    enterprise:   10_000  monthly

Adding a tier or a feature is a data change; nothing in the ledger branches
on tier or feature names.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date

from dateutil.relativedelta import relativedelta

# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TierAllocation:
    tier: str
    monthly_credits: int
    renews: bool


_TIERS: dict[str, TierAllocation] = {
    "trial": TierAllocation("trial", 50, renews=False),
    "starter": TierAllocation("starter", 500, renews=True),
    "professional": TierAllocation("professional", 2_000, renews=True),
    "enterprise": TierAllocation("enterprise", 10_000, renews=True),
}

# Applied at reset time when a tenant carries a tier that is no longer catalogued.
FALLBACK_TIER = "starter"

# Non-renewing tiers are parked this far in the future so they never come due.
_NON_RENEWING_HORIZON = relativedelta(years=10)


def known_tiers() -> list[str]:
    return list(_TIERS)


def get_tier(tier: str) -> TierAllocation:
    """Return the allocation for *tier*.

    Raises
    ------
    ValueError
        If *tier* is not catalogued.
    """
    try:
        return _TIERS[tier]
    except KeyError:
        raise ValueError(f"Unknown subscription tier {tier!r}; expected one of {known_tiers()}") from None


def get_tier_or_fallback(tier: str | None) -> TierAllocation:
    return _TIERS.get(tier or "", _TIERS[FALLBACK_TIER])


def next_reset_date(allocation: TierAllocation, from_date: date) -> date:
    """One calendar month after *from_date* (clamped to month end), or ten years for non-renewing tiers."""
    if not allocation.renews:
        return from_date + _NON_RENEWING_HORIZON
    return from_date + relativedelta(months=1)


# ---------------------------------------------------------------------------
# Feature costs
# ---------------------------------------------------------------------------

FEATURE_COSTS: dict[str, int] = {
    "sms": 1,
    "appointment_reminder": 1,
    "voice_call_inbound": 5,
    "voice_call_outbound": 8,
    "ai_chat_message": 1,
    "appointment_booking": 2,
    "lead_enrichment": 5,
    "workflow_execution": 3,
    "automation_trigger": 2,
    "quick_research": 10,
    "market_analysis": 20,
    "deep_research": 25,
}

# Campaign pricing is per started block of 100 recipients.
CAMPAIGN_COST_PER_100: dict[str, int] = {
    "email": 15,
    "sms": 20,
}


def feature_cost(feature: str) -> int:
    """Credits charged for one use of *feature*.

    Raises
    ------
    ValueError
        If *feature* has no catalogued cost.
    """
    try:
        return FEATURE_COSTS[feature]
    except KeyError:
        raise ValueError(f"Unknown feature {feature!r}") from None


def calculate_campaign_cost(recipient_count: int, channel: str) -> int:
    """``ceil(recipient_count / 100)`` blocks at the channel's per-hundred rate."""
    if recipient_count < 0:
        raise ValueError("recipient_count must be non-negative")
    try:
        rate = CAMPAIGN_COST_PER_100[channel]
    except KeyError:
        raise ValueError(f"Unknown campaign channel {channel!r}; expected one of {sorted(CAMPAIGN_COST_PER_100)}") from None
    return math.ceil(recipient_count / 100) * rate


# ---------------------------------------------------------------------------
# Credit packs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreditPack:
    pack_id: str
    name: str
    credits: int
    price_usd: int


CREDIT_PACKS: dict[str, CreditPack] = {
    "pack_small": CreditPack("pack_small", "Small Pack", 100, 15),
    "pack_medium": CreditPack("pack_medium", "Medium Pack", 500, 60),
    "pack_large": CreditPack("pack_large", "Large Pack", 1_000, 100),
    "pack_enterprise": CreditPack("pack_enterprise", "Enterprise Pack", 5_000, 400),
}


def get_pack(pack_id: str) -> CreditPack:
    try:
        return CREDIT_PACKS[pack_id]
    except KeyError:
        raise ValueError(f"Unknown credit pack {pack_id!r}; expected one of {sorted(CREDIT_PACKS)}") from None
