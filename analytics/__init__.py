"""
Read-only aggregation over the referral and reward ledgers.

Provides:
- Business summary (referrals, clicks, conversions, conversion rate)
- Top referrer ranking
- Per-campaign performance and issued reward value
- Reward issuance and redemption analytics
- Recent activity feed and daily activity buckets
"""

from .engine import AnalyticsEngine, conversion_rate
from .models import (
    ActivityItem,
    AnalyticsReport,
    AnalyticsSummary,
    CampaignPerformance,
    DailyActivity,
    RewardAnalytics,
    TopReferrer,
)

__all__ = [
    "AnalyticsEngine",
    "conversion_rate",
    "ActivityItem",
    "AnalyticsReport",
    "AnalyticsSummary",
    "CampaignPerformance",
    "DailyActivity",
    "RewardAnalytics",
    "TopReferrer",
]
