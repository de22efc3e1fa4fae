import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from referral_ledger.config import Settings, settings as default_settings
from referral_ledger.models import ReferralStatus, RewardSide, RewardStatus, Role
from referral_ledger.storage import Store

from .models import (
    ActivityItem,
    AnalyticsReport,
    AnalyticsSummary,
    CampaignPerformance,
    DailyActivity,
    RewardAnalytics,
    TopReferrer,
)

logger = logging.getLogger(__name__)


def conversion_rate(converted: int, total: int) -> int:
    """Whole-percent conversion rate, rounded half up; 0 when there is nothing to convert."""
    if total == 0:
        return 0
    rate = Decimal(converted) * 100 / Decimal(total)
    return int(rate.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class _BusinessView:
    """The rows of one snapshot that belong to a single business."""

    def __init__(self, snapshot: dict, business_id: UUID):
        self.referrals = [r for r in snapshot["referrals"] if r["business_id"] == business_id]
        self.campaigns = [c for c in snapshot["campaigns"] if c["business_id"] == business_id]
        self.rewards = [r for r in snapshot["rewards"] if r["business_id"] == business_id]
        self.users = {u["id"]: u for u in snapshot["users"]}
        self.customers = [
            u for u in snapshot["users"]
            if u["role"] == Role.CUSTOMER and u.get("business_id") == business_id
        ]


class AnalyticsEngine:
    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or default_settings

    def report(self, business_id: UUID) -> AnalyticsReport:
        view = self._view(business_id)
        report = AnalyticsReport(
            business_id=business_id,
            generated_at=datetime.now(timezone.utc),
            summary=self._summary(view),
            reward_analytics=self._reward_analytics(view),
            recent_activity=self._recent_activity(view, self.settings.RECENT_ACTIVITY_LIMIT),
            campaign_performance=self._campaign_performance(view),
            top_referrers=self._top_referrers(view, self.settings.TOP_REFERRERS_LIMIT),
        )
        logger.info(
            f"Analytics for business {business_id}: {report.summary.total_referrals} referrals, "
            f"{report.summary.total_conversions} conversions"
        )
        return report

    def summary(self, business_id: UUID) -> AnalyticsSummary:
        return self._summary(self._view(business_id))

    def reward_analytics(self, business_id: UUID) -> RewardAnalytics:
        return self._reward_analytics(self._view(business_id))

    def top_referrers(self, business_id: UUID, limit: Optional[int] = None) -> list[TopReferrer]:
        return self._top_referrers(self._view(business_id), limit or self.settings.TOP_REFERRERS_LIMIT)

    def campaign_performance(self, business_id: UUID) -> list[CampaignPerformance]:
        return self._campaign_performance(self._view(business_id))

    def recent_activity(self, business_id: UUID, limit: Optional[int] = None) -> list[ActivityItem]:
        return self._recent_activity(self._view(business_id), limit or self.settings.RECENT_ACTIVITY_LIMIT)

    def daily_activity(
        self, business_id: UUID, days: Optional[int] = None, today: Optional[date] = None,
    ) -> list[DailyActivity]:
        """Per-day counts of new referrals, first clicks and conversions, oldest day first."""
        days = days or self.settings.DAILY_ACTIVITY_DAYS
        today = today or datetime.now(timezone.utc).date()
        buckets = {
            today - timedelta(days=offset): DailyActivity(day=today - timedelta(days=offset))
            for offset in range(days)
        }
        for referral in self._view(business_id).referrals:
            for field, stamp in (
                ("referrals", referral["created_at"]),
                ("first_clicks", referral.get("clicked_at")),
                ("conversions", referral.get("converted_at")),
            ):
                if stamp is None:
                    continue
                bucket = buckets.get(stamp.astimezone(timezone.utc).date())
                if bucket is not None:
                    setattr(bucket, field, getattr(bucket, field) + 1)
        return [buckets[day] for day in sorted(buckets)]

    def _view(self, business_id: UUID) -> _BusinessView:
        return _BusinessView(self.store.snapshot(), business_id)

    def _summary(self, view: _BusinessView) -> AnalyticsSummary:
        total = len(view.referrals)
        conversions = sum(1 for r in view.referrals if r["status"] == ReferralStatus.CONVERTED)
        return AnalyticsSummary(
            total_referrals=total,
            total_clicks=sum(r.get("click_count", 0) for r in view.referrals),
            total_conversions=conversions,
            overall_conversion_rate=conversion_rate(conversions, total),
            active_referrals_count=sum(1 for r in view.referrals if r["status"] == ReferralStatus.PENDING),
            active_campaigns_count=sum(1 for c in view.campaigns if c["is_active"]),
            customers_count=len(view.customers),
        )

    def _reward_analytics(self, view: _BusinessView) -> RewardAnalytics:
        redeemed = [
            r for r in view.rewards
            if r["status"] == RewardStatus.REDEEMED and r.get("date_redeemed") is not None
        ]
        average_hours = 0.0
        if redeemed:
            seconds = sum((r["date_redeemed"] - r["date_earned"]).total_seconds() for r in redeemed)
            average_hours = round(seconds / len(redeemed) / 3600, 2)

        kinds = Counter(r["kind"] for r in view.rewards)
        popular = None
        if kinds:
            popular = min(kinds.items(), key=lambda item: (-item[1], item[0].value))[0]

        return RewardAnalytics(
            total_rewards_issued=len(view.rewards),
            total_rewards_redeemed=len(redeemed),
            redemption_rate=conversion_rate(len(redeemed), len(view.rewards)),
            average_hours_to_redemption=average_hours,
            most_popular_reward_type=popular,
            customer_reward_value=sum(
                (r["amount"] for r in view.rewards if r["side"] == RewardSide.CUSTOMER), Decimal("0")
            ),
            referrer_reward_value=sum(
                (r["amount"] for r in view.rewards if r["side"] == RewardSide.REFERRER), Decimal("0")
            ),
        )

    def _top_referrers(self, view: _BusinessView, limit: int) -> list[TopReferrer]:
        totals: dict[UUID, list[int]] = defaultdict(lambda: [0, 0])
        for referral in view.referrals:
            counts = totals[referral["referrer_id"]]
            counts[0] += 1
            if referral["status"] == ReferralStatus.CONVERTED:
                counts[1] += 1

        # Ties on successful referrals fall back to referrer id so rankings are reproducible.
        ranked = sorted(totals.items(), key=lambda item: (-item[1][1], str(item[0])))[:limit]
        result = []
        for referrer_id, (total, converted) in ranked:
            user = view.users.get(referrer_id, {})
            result.append(TopReferrer(
                referrer_id=referrer_id,
                name=user.get("name", "Unknown"),
                email=user.get("email"),
                total_referrals=total,
                successful_referrals=converted,
                conversion_rate=conversion_rate(converted, total),
            ))
        return result

    def _campaign_performance(self, view: _BusinessView) -> list[CampaignPerformance]:
        grouped: dict[UUID, list[int]] = defaultdict(lambda: [0, 0])
        for referral in view.referrals:
            counts = grouped[referral["campaign_id"]]
            counts[0] += 1
            if referral["status"] == ReferralStatus.CONVERTED:
                counts[1] += 1

        issued: dict[tuple, Decimal] = defaultdict(Decimal)
        for reward in view.rewards:
            issued[(reward["campaign_id"], reward["side"])] += reward["amount"]

        performance = []
        for campaign in sorted(view.campaigns, key=lambda c: c["created_at"]):
            total, converted = grouped.get(campaign["id"], (0, 0))
            performance.append(CampaignPerformance(
                campaign_id=campaign["id"],
                name=campaign["name"],
                is_active=campaign["is_active"],
                total_referrals=total,
                converted_referrals=converted,
                conversion_rate=conversion_rate(converted, total),
                rewards_issued=issued[(campaign["id"], RewardSide.CUSTOMER)],
                referrer_rewards_issued=issued[(campaign["id"], RewardSide.REFERRER)],
            ))
        return performance

    def _recent_activity(self, view: _BusinessView, limit: int) -> list[ActivityItem]:
        names = {c["id"]: c["name"] for c in view.campaigns}
        latest = sorted(view.referrals, key=lambda r: r["created_at"], reverse=True)[:limit]
        return [
            ActivityItem(
                referral_id=r["id"],
                referrer_id=r["referrer_id"],
                customer_id=r.get("customer_id"),
                status=r["status"],
                campaign_id=r["campaign_id"],
                campaign_name=names.get(r["campaign_id"], "Unknown campaign"),
                timestamp=r["created_at"],
            )
            for r in latest
        ]
