from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field

from referral_ledger.models import ReferralStatus, RewardKind


class AnalyticsSummary(BaseModel):
    total_referrals: int = 0
    total_clicks: int = 0
    total_conversions: int = 0
    overall_conversion_rate: int = 0
    active_referrals_count: int = 0
    active_campaigns_count: int = 0
    customers_count: int = 0


class TopReferrer(BaseModel):
    referrer_id: UUID
    name: str
    email: Optional[str] = None
    total_referrals: int
    successful_referrals: int
    conversion_rate: int


class CampaignPerformance(BaseModel):
    campaign_id: UUID
    name: str
    is_active: bool
    total_referrals: int = 0
    converted_referrals: int = 0
    conversion_rate: int = 0
    rewards_issued: Decimal = Decimal("0")
    referrer_rewards_issued: Decimal = Decimal("0")


class ActivityItem(BaseModel):
    referral_id: UUID
    referrer_id: UUID
    customer_id: Optional[UUID] = None
    status: ReferralStatus
    campaign_id: UUID
    campaign_name: str
    timestamp: datetime


class DailyActivity(BaseModel):
    day: date
    referrals: int = 0
    first_clicks: int = 0
    conversions: int = 0


class RewardAnalytics(BaseModel):
    total_rewards_issued: int = 0
    total_rewards_redeemed: int = 0
    redemption_rate: int = 0
    # Hours from date_earned to date_redeemed over redeemed rewards
    average_hours_to_redemption: float = 0.0
    most_popular_reward_type: Optional[RewardKind] = None
    customer_reward_value: Decimal = Decimal("0")
    referrer_reward_value: Decimal = Decimal("0")


class AnalyticsReport(BaseModel):
    business_id: UUID
    generated_at: datetime
    summary: AnalyticsSummary
    reward_analytics: RewardAnalytics = Field(default_factory=RewardAnalytics)
    recent_activity: list[ActivityItem] = Field(default_factory=list)
    campaign_performance: list[CampaignPerformance] = Field(default_factory=list)
    top_referrers: list[TopReferrer] = Field(default_factory=list)
