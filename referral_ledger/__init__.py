"""
Referral Lifecycle & Reward Settlement Engine

This package provides:
- Campaign registry with cached counters and counter reconciliation
- Referral lifecycle: pending → clicked → converted / expired / rejected
- Reward lifecycle: pending → available → redeemed / expired
- Compare-and-swap status transitions over an injected store
- Referrer campaign selection (explicit and implicit)
"""

from .campaigns import CampaignRegistry
from .directory import Directory
from .models import (
    Campaign,
    Referral,
    ReferralStatus,
    Reward,
    RewardKind,
    RewardStatus,
    Role,
)
from .referrals import ReferralLedger
from .rewards import RewardLedger
from .storage import Store

__all__ = [
    "Campaign",
    "CampaignRegistry",
    "Directory",
    "Referral",
    "ReferralLedger",
    "ReferralStatus",
    "Reward",
    "RewardKind",
    "RewardLedger",
    "RewardStatus",
    "Role",
    "Store",
]
