import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .directory import require_owner, require_role
from .errors import CampaignNotFoundError, NotFoundError
from .models import (
    BusinessUser,
    Campaign,
    CreateCampaignRequest,
    ReferralStatus,
    ReferrerCampaign,
    ReferrerUser,
    Role,
    SelectionStatus,
    User,
)
from .storage import Store, UnitOfWork

logger = logging.getLogger(__name__)


class CampaignRegistry:
    def __init__(self, store: Store):
        self.store = store

    def create_campaign(self, actor: User, request: CreateCampaignRequest) -> Campaign:
        require_role(actor, Role.BUSINESS)
        business: BusinessUser = actor
        now = datetime.now(timezone.utc)
        campaign = Campaign(
            id=uuid4(),
            business_id=business.id,
            company_name=business.company or business.business_name,
            name=request.name,
            description=request.description,
            start_date=request.start_date or now,
            end_date=request.end_date,
            is_active=request.is_active,
            customer_reward=request.customer_reward,
            referrer_reward=request.referrer_reward,
            created_at=now,
            updated_at=now,
        )
        with self.store.atomic() as uow:
            uow.insert("campaigns", campaign.model_dump())
        logger.info(f"Business {business.id} created campaign {campaign.id} ({campaign.name})")
        return campaign

    def get_campaign(self, campaign_id: UUID) -> Campaign:
        data = self.store.get("campaigns", campaign_id)
        if not data:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return Campaign(**data)

    def list_campaigns(self, business_id: UUID, active_only: bool = False) -> list[Campaign]:
        rows = self.store.find(
            "campaigns",
            lambda c: c["business_id"] == business_id and (c["is_active"] or not active_only),
        )
        campaigns = [Campaign(**c) for c in rows]
        campaigns.sort(key=lambda c: c.created_at)
        return campaigns

    def first_running_campaign(self, business_id: UUID, at: Optional[datetime] = None) -> Campaign:
        at = at or datetime.now(timezone.utc)
        for campaign in self.list_campaigns(business_id, active_only=True):
            if campaign.is_running(at):
                return campaign
        raise CampaignNotFoundError("This business has no running campaign")

    def set_active(self, actor: User, campaign_id: UUID, is_active: bool) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        require_owner(actor, campaign.business_id)
        with self.store.atomic() as uow:
            data = uow.update("campaigns", campaign_id, {
                "is_active": is_active, "updated_at": datetime.now(timezone.utc),
            })
        logger.info(f"Campaign {campaign_id} is_active set to {is_active}")
        return Campaign(**data)

    # --- counters ----------------------------------------------------------

    def record_referral(self, uow: UnitOfWork, campaign_id: UUID, referrer_id: UUID) -> None:
        """Bump the cached counters for a newly opened referral."""
        uow.increment("campaigns", campaign_id, "referral_count")
        others = uow.find(
            "referrals", lambda r: r["campaign_id"] == campaign_id and r["referrer_id"] == referrer_id
        )
        if len(others) == 1:
            uow.increment("campaigns", campaign_id, "referrer_count")

    def record_conversion(self, uow: UnitOfWork, campaign_id: UUID) -> None:
        uow.increment("campaigns", campaign_id, "conversion_count")

    def reconcile_counters(self, campaign_id: UUID, actor: Optional[User] = None) -> Campaign:
        """Recompute the cached counters of a campaign from the referral ledger."""
        campaign = self.get_campaign(campaign_id)
        if actor is not None:
            require_owner(actor, campaign.business_id)
        with self.store.atomic() as uow:
            referrals = uow.find("referrals", lambda r: r["campaign_id"] == campaign_id)
            counters = {
                "referral_count": len(referrals),
                "conversion_count": sum(1 for r in referrals if r["status"] == ReferralStatus.CONVERTED),
                "referrer_count": len({r["referrer_id"] for r in referrals}),
            }
            current = uow.get("campaigns", campaign_id)
            drift = {k: (current[k], v) for k, v in counters.items() if current[k] != v}
            if drift:
                logger.warning(f"Campaign {campaign_id} counters drifted: {drift}")
                current = uow.update("campaigns", campaign_id, counters)
        return Campaign(**current)

    def reconcile_all(self, business_id: Optional[UUID] = None) -> list[Campaign]:
        rows = self.store.find("campaigns", lambda c: business_id is None or c["business_id"] == business_id)
        return [self.reconcile_counters(row["id"]) for row in rows]

    # --- referrer selections -----------------------------------------------

    def select_campaign(self, actor: User, campaign_id: UUID) -> ReferrerCampaign:
        require_role(actor, Role.REFERRER)
        campaign = self.get_campaign(campaign_id)
        if not campaign.is_running(datetime.now(timezone.utc)):
            raise NotFoundError("Campaign not found or not active")
        return self.ensure_selection(actor, campaign)

    def ensure_selection(self, referrer: ReferrerUser, campaign: Campaign, implicit: bool = False) -> ReferrerCampaign:
        """Idempotently record that the referrer promotes this campaign."""
        key = (referrer.id, campaign.id)
        with self.store.atomic() as uow:
            existing_id = uow.lookup("selection", key)
            if existing_id is not None:
                return ReferrerCampaign(**uow.get("selections", existing_id))
            selection = ReferrerCampaign(
                id=uuid4(),
                referrer_id=referrer.id,
                campaign_id=campaign.id,
                business_id=campaign.business_id,
                status=SelectionStatus.ACTIVE,
                selected_at=datetime.now(timezone.utc),
                implicit=implicit,
            )
            uow.insert("selections", selection.model_dump(), unique={"selection": key})
        logger.info(
            f"Referrer {referrer.id} selected campaign {campaign.id}" + (" (implicit)" if implicit else "")
        )
        return selection

    def get_selection(self, referrer_id: UUID, campaign_id: UUID) -> Optional[ReferrerCampaign]:
        selection_id = self.store.lookup("selection", (referrer_id, campaign_id))
        if selection_id is None:
            return None
        return ReferrerCampaign(**self.store.get("selections", selection_id))

    def list_selections(self, referrer_id: UUID) -> list[ReferrerCampaign]:
        rows = self.store.find("selections", lambda s: s["referrer_id"] == referrer_id)
        return sorted((ReferrerCampaign(**s) for s in rows), key=lambda s: s.selected_at)
