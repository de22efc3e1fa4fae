"""
Referral ledger: one record per referral attempt.

A referral moves pending -> clicked -> converted, or ends early as expired or
rejected. Every status write is a compare-and-swap inside a store unit of
work, so concurrent requests on one referral can never produce a backwards
or duplicate transition.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union
from uuid import UUID, uuid4

from .campaigns import CampaignRegistry
from .config import Settings, settings as default_settings
from .directory import Directory, require_owner, require_role
from .errors import (
    ConflictError,
    DuplicateKeyError,
    ForbiddenError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    ReferralNotFoundError,
    StaleStatusError,
    ValidationFailedError,
)
from .models import (
    OPEN_REFERRAL_STATUSES,
    Campaign,
    ClickResponse,
    ConversionResponse,
    ConvertRequest,
    EmbeddedReward,
    GenerateLinkRequest,
    GenerateLinkResponse,
    Referral,
    ReferralStatus,
    ReferrerUser,
    RewardSide,
    Role,
    SubmitReferralRequest,
    TrackClickRequest,
    TrackClickResponse,
    User,
)
from .rewards import RewardLedger
from .storage import Store, UnitOfWork

logger = logging.getLogger(__name__)


class ReferralLedger:
    def __init__(
        self,
        store: Store,
        directory: Directory,
        campaigns: CampaignRegistry,
        rewards: RewardLedger,
        settings: Optional[Settings] = None,
        code_factory: Optional[Callable[[], str]] = None,
    ):
        self.store = store
        self.directory = directory
        self.campaigns = campaigns
        self.rewards = rewards
        self.settings = settings or default_settings
        self.code_factory = code_factory or self._random_code

    def _random_code(self) -> str:
        return secrets.token_hex(self.settings.REFERRAL_CODE_BYTES)

    # --- link generation ---------------------------------------------------

    def generate_link(self, actor: User, request: GenerateLinkRequest) -> GenerateLinkResponse:
        require_role(actor, Role.REFERRER)
        campaign = self.campaigns.get_campaign(request.campaign_id)
        self._ensure_access(actor, campaign)

        referral = self._open_referral(campaign, actor, custom_message=request.custom_message)
        logger.info(f"Referrer {actor.id} generated link {referral.referral_code} for campaign {campaign.id}")
        return GenerateLinkResponse(
            referral_link=referral.referral_link,
            code=referral.referral_code,
            referral_id=referral.id,
        )

    def _ensure_access(self, referrer: ReferrerUser, campaign: Campaign) -> None:
        if self.campaigns.get_selection(referrer.id, campaign.id) is not None:
            return
        if not self.directory.shares_company(referrer, campaign):
            logger.warning(f"Referrer {referrer.id} denied access to campaign {campaign.id}")
            raise ForbiddenError("You don't have access to this campaign")
        self.campaigns.ensure_selection(referrer, campaign, implicit=True)

    def _open_referral(
        self, campaign: Campaign, referrer: ReferrerUser, custom_message: Optional[str] = None,
    ) -> Referral:
        now = datetime.now(timezone.utc)
        data = {
            "id": uuid4(),
            "campaign_id": campaign.id,
            "business_id": campaign.business_id,
            "company_name": campaign.company_name,
            "referrer_id": referrer.id,
            "custom_message": custom_message,
            "status": ReferralStatus.PENDING,
            "click_count": 0,
            "created_at": now,
            "updated_at": now,
            "expires_at": now + timedelta(days=self.settings.REFERRAL_VALIDITY_DAYS),
            "version": 0,
        }
        with self.store.atomic() as uow:
            for attempt in range(1, self.settings.CODE_GENERATION_ATTEMPTS + 1):
                code = self.code_factory()
                data["referral_code"] = code
                data["referral_link"] = f"{self.settings.share_base_url}/r/{code}"
                try:
                    uow.insert("referrals", data, unique={"referral_code": code})
                    break
                except DuplicateKeyError:
                    logger.warning(f"Referral code collision on attempt {attempt}, retrying")
            else:
                raise InternalError("Could not allocate a unique referral code")
            self.campaigns.record_referral(uow, campaign.id, referrer.id)
        return Referral(**data)

    # --- clicks ------------------------------------------------------------

    def track_click(self, referral_code: str) -> ClickResponse:
        """Record one click on a referral link; the first click stamps clicked_at."""
        referral = self.get_by_code(referral_code)
        now = datetime.now(timezone.utc)
        if self._expire_if_overdue(referral, now) or not referral.is_open():
            raise ReferralNotFoundError("Invalid or expired referral link")

        try:
            with self.store.atomic() as uow:
                click_count = uow.increment("referrals", referral.id, "click_count")
                current = uow.get("referrals", referral.id)
                if current["status"] == ReferralStatus.PENDING:
                    current = uow.compare_and_set_status(
                        "referrals", referral.id, {ReferralStatus.PENDING}, ReferralStatus.CLICKED,
                        {"clicked_at": now, "updated_at": now},
                    )
                elif current["status"] != ReferralStatus.CLICKED:
                    raise StaleStatusError(referral.id, OPEN_REFERRAL_STATUSES, current["status"])
        except StaleStatusError:
            raise ReferralNotFoundError("Invalid or expired referral link")

        logger.info(f"Click {click_count} on referral {referral.id}")
        campaign = self.campaigns.get_campaign(referral.campaign_id)
        return ClickResponse(
            referral=Referral(**current),
            campaign_name=campaign.name,
            campaign_description=campaign.description,
            company_name=campaign.company_name,
            referrer_name=self.directory.display_name(referral.referrer_id),
            custom_message=referral.custom_message,
        )

    def track_business_click(self, request: TrackClickRequest) -> TrackClickResponse:
        """Click on a /refer/{businessCode}[/{referrerCode}] link."""
        business = self.directory.get_business_by_code(request.business_code)
        if request.referrer_code:
            referrer = self.directory.get_referrer_by_code(request.referrer_code)
            referral = self._latest_open_referral(business.id, referrer.id)
            if referral is not None:
                self.track_click(referral.referral_code)
            else:
                logger.info(f"No open referral for referrer {referrer.id} at business {business.id}")
        return TrackClickResponse(business_name=business.business_name or business.name)

    # --- conversion --------------------------------------------------------

    def submit_conversion(
        self, referral_ref: Union[UUID, str], request: ConvertRequest, actor: Optional[User] = None,
    ) -> ConversionResponse:
        referral = self._resolve(referral_ref)
        if actor is not None:
            self._authorize_conversion(actor, referral)
        return self._convert(referral, request, guard_duplicate=False)

    @staticmethod
    def _authorize_conversion(actor: User, referral: Referral) -> None:
        """Customers of the business, its owner or an admin may record a conversion."""
        if actor.role == Role.CUSTOMER:
            if actor.business_id != referral.business_id:
                logger.warning(f"Customer {actor.id} tried to convert referral {referral.id} of another business")
                raise ForbiddenError("You are not a customer of this business")
            return
        require_owner(actor, referral.business_id)

    def submit_referral(self, request: SubmitReferralRequest) -> ConversionResponse:
        """Public form flow: the prospect submits their details through a referrer's business link."""
        business = self.directory.get_business_by_code(request.business_code)
        referrer = self.directory.get_referrer_by_code(request.referrer_code)

        campaign = None
        if request.campaign_id is not None:
            campaign = self.campaigns.get_campaign(request.campaign_id)
            if campaign.business_id != business.id or not campaign.is_running(datetime.now(timezone.utc)):
                raise NotFoundError("Invalid or inactive campaign")

        referral = self._latest_open_referral(business.id, referrer.id, request.campaign_id)
        if referral is None:
            campaign = campaign or self.campaigns.first_running_campaign(business.id)
            referral = self._open_referral(campaign, referrer)
            logger.info(f"Opened referral {referral.id} from form submission for business {business.id}")

        convert = ConvertRequest(
            name=request.name,
            email=request.email,
            phone=request.phone,
            notes=request.notes,
            conversion_details=request.conversion_details,
        )
        return self._convert(referral, convert, guard_duplicate=True)

    def _convert(self, referral: Referral, request: ConvertRequest, guard_duplicate: bool) -> ConversionResponse:
        now = datetime.now(timezone.utc)
        if self._expire_if_overdue(referral, now):
            raise InvalidStateError(f"Referral {referral.id} has expired")
        if not referral.is_open():
            raise InvalidStateError(f"Cannot convert referral in {referral.status.value} state")

        referrer = self.directory.get_user(referral.referrer_id)
        if referrer.email.lower() == request.email.lower():
            raise ValidationFailedError(
                "Invalid conversion", fields={"email": "You cannot use your own referral link"}
            )
        campaign = self.campaigns.get_campaign(referral.campaign_id)

        try:
            with self.store.atomic() as uow:
                if guard_duplicate and self._already_converted(uow, referral, request.email):
                    raise ConflictError("This person has already been referred")

                data = uow.compare_and_set_status(
                    "referrals", referral.id, OPEN_REFERRAL_STATUSES, ReferralStatus.CONVERTED,
                    {
                        "converted_at": now,
                        "updated_at": now,
                        "referee_email": request.email,
                        "referee_name": request.name,
                        "referee_phone": request.phone,
                        "notes": request.notes,
                        "conversion_details": request.conversion_details.model_dump(),
                    },
                )
                customer = self.directory.ensure_customer(
                    uow, referral.business_id, request.email, request.name, request.phone,
                    referred_by=referral.referrer_id, referral_id=referral.id,
                )
                changes = {"customer_id": customer.id}
                rewards = []
                sides = (
                    (RewardSide.REFERRER, campaign.referrer_reward, referral.referrer_id),
                    (RewardSide.CUSTOMER, campaign.customer_reward, customer.id),
                )
                for side, terms, recipient_id in sides:
                    if terms is None or terms.amount <= 0:
                        continue
                    reward = self.rewards.issue(
                        uow, referral=data, campaign=campaign, side=side,
                        recipient_id=recipient_id, terms=terms, now=now,
                    )
                    rewards.append(reward)
                    changes[f"{side.value}_reward"] = EmbeddedReward(
                        reward_id=reward.id, kind=terms.kind, amount=terms.amount,
                    ).model_dump()
                data = uow.update("referrals", referral.id, changes)
                self.campaigns.record_conversion(uow, campaign.id)
        except StaleStatusError as e:
            logger.warning(f"Lost conversion race on referral {referral.id}: {e}")
            raise InvalidStateError(f"Cannot convert referral in {e.actual.value} state")

        logger.info(f"Referral {referral.id} converted with {len(rewards)} reward(s)")
        return ConversionResponse(
            referral=Referral(**data), rewards=rewards, message="Referral submitted successfully"
        )

    @staticmethod
    def _already_converted(uow: UnitOfWork, referral: Referral, email: str) -> bool:
        email = email.lower()
        return bool(uow.find("referrals", lambda r: (
            r["business_id"] == referral.business_id
            and r["referrer_id"] == referral.referrer_id
            and r["status"] == ReferralStatus.CONVERTED
            and (r.get("referee_email") or "").lower() == email
        )))

    # --- expiry and rejection ----------------------------------------------

    def expire(self, referral_id: UUID, actor: Optional[User] = None) -> Referral:
        referral = self.get_referral(referral_id)
        if actor is not None:
            require_owner(actor, referral.business_id)
        data = self._close(referral, ReferralStatus.EXPIRED, {})
        logger.info(f"Referral {referral_id} expired")
        return Referral(**data)

    def reject(self, referral_id: UUID, reason: str, actor: User) -> Referral:
        referral = self.get_referral(referral_id)
        require_owner(actor, referral.business_id)
        data = self._close(referral, ReferralStatus.REJECTED, {"rejection_reason": reason})
        logger.info(f"Referral {referral_id} rejected: {reason}")
        return Referral(**data)

    def expire_overdue(self, now: Optional[datetime] = None) -> list[UUID]:
        """Expire every open referral whose expires_at has passed."""
        now = now or datetime.now(timezone.utc)
        expired = []
        with self.store.atomic() as uow:
            overdue = uow.find("referrals", lambda r: self._is_overdue(r, now))
            for row in overdue:
                uow.compare_and_set_status(
                    "referrals", row["id"], OPEN_REFERRAL_STATUSES, ReferralStatus.EXPIRED, {"updated_at": now}
                )
                expired.append(row["id"])
        if expired:
            logger.info(f"Expired {len(expired)} overdue referrals")
        return expired

    def _close(self, referral: Referral, status: ReferralStatus, changes: dict) -> dict:
        if not referral.can_transition_to(status):
            raise InvalidStateError(f"Cannot move referral from {referral.status.value} to {status.value}")
        changes = {**changes, "updated_at": datetime.now(timezone.utc)}
        try:
            with self.store.atomic() as uow:
                return uow.compare_and_set_status("referrals", referral.id, OPEN_REFERRAL_STATUSES, status, changes)
        except StaleStatusError as e:
            raise InvalidStateError(f"Cannot move referral from {e.actual.value} to {status.value}")

    def _expire_if_overdue(self, referral: Referral, now: datetime) -> bool:
        if not self._is_overdue(referral.model_dump(), now):
            return False
        try:
            with self.store.atomic() as uow:
                uow.compare_and_set_status(
                    "referrals", referral.id, OPEN_REFERRAL_STATUSES, ReferralStatus.EXPIRED, {"updated_at": now}
                )
            logger.info(f"Referral {referral.id} expired on access")
        except StaleStatusError as e:
            logger.info(f"Referral {referral.id} already {e.actual.value}, not expiring")
        return True

    @staticmethod
    def _is_overdue(referral_data: dict, now: datetime) -> bool:
        expires_at = referral_data.get("expires_at")
        return (
            referral_data["status"] in OPEN_REFERRAL_STATUSES
            and expires_at is not None
            and now > expires_at
        )

    # --- reads -------------------------------------------------------------

    def get_referral(self, referral_id: UUID) -> Referral:
        data = self.store.get("referrals", referral_id)
        if not data:
            raise ReferralNotFoundError(f"Referral {referral_id} not found")
        return Referral(**data)

    def get_by_code(self, referral_code: str) -> Referral:
        referral_id = self.store.lookup("referral_code", referral_code)
        if referral_id is None:
            raise ReferralNotFoundError("Invalid or expired referral link")
        return self.get_referral(referral_id)

    def list_for_referrer(self, referrer_id: UUID) -> list[Referral]:
        rows = self.store.find("referrals", lambda r: r["referrer_id"] == referrer_id)
        return sorted((Referral(**r) for r in rows), key=lambda r: r.created_at, reverse=True)

    def list_for_business(self, business_id: UUID, status: Optional[ReferralStatus] = None) -> list[Referral]:
        rows = self.store.find(
            "referrals", lambda r: r["business_id"] == business_id and (status is None or r["status"] == status)
        )
        return sorted((Referral(**r) for r in rows), key=lambda r: r.created_at, reverse=True)

    def _resolve(self, referral_ref: Union[UUID, str]) -> Referral:
        if isinstance(referral_ref, UUID):
            return self.get_referral(referral_ref)
        return self.get_by_code(referral_ref)

    def _latest_open_referral(
        self, business_id: UUID, referrer_id: UUID, campaign_id: Optional[UUID] = None,
    ) -> Optional[Referral]:
        rows = self.store.find("referrals", lambda r: (
            r["business_id"] == business_id
            and r["referrer_id"] == referrer_id
            and r["status"] in OPEN_REFERRAL_STATUSES
            and (campaign_id is None or r["campaign_id"] == campaign_id)
        ))
        if not rows:
            return None
        latest = max(rows, key=lambda r: (r.get("clicked_at") or r["created_at"], r["created_at"]))
        return Referral(**latest)
