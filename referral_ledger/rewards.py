import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

from .config import Settings, settings as default_settings
from .directory import require_owner
from .errors import (
    AlreadyRedeemedError,
    DuplicateKeyError,
    ForbiddenError,
    InternalError,
    InvalidStateError,
    RewardNotFoundError,
    StaleStatusError,
)
from .models import (
    OPEN_REWARD_STATUSES,
    Campaign,
    EmbeddedRewardStatus,
    Reward,
    RewardResponse,
    RewardSide,
    RewardStatus,
    RewardTerms,
    User,
)
from .storage import Store, UnitOfWork

logger = logging.getLogger(__name__)

REWARD_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REWARD_CODE_LENGTH = 8

_EMBEDDED_KEYS = {
    RewardSide.REFERRER: "referrer_reward",
    RewardSide.CUSTOMER: "customer_reward",
}


def generate_reward_code() -> str:
    return "".join(secrets.choice(REWARD_CODE_ALPHABET) for _ in range(REWARD_CODE_LENGTH))


class RewardLedger:
    def __init__(
        self,
        store: Store,
        settings: Optional[Settings] = None,
        code_factory: Callable[[], str] = generate_reward_code,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.code_factory = code_factory

    def issue(
        self, uow: UnitOfWork, *, referral: dict, campaign: Campaign, side: RewardSide,
        recipient_id: UUID, terms: RewardTerms, now: datetime,
    ) -> Reward:
        """Create a pending reward inside the caller's unit of work."""
        if side == RewardSide.REFERRER:
            description = terms.description or f"Referral bonus for referring {referral['referee_email']} to {campaign.name}"
        else:
            description = terms.description or f"Reward for completing {campaign.name} campaign referral"

        reward_data = {
            "id": uuid4(),
            "user_id": recipient_id,
            "campaign_id": campaign.id,
            "business_id": campaign.business_id,
            "referral_id": referral["id"],
            "side": side,
            "kind": terms.kind,
            "amount": terms.amount,
            "status": RewardStatus.PENDING,
            "date_earned": now,
            "approved_at": None,
            "date_redeemed": None,
            "expires_at": now + timedelta(days=self.settings.REWARD_VALIDITY_DAYS),
            "description": description,
            "version": 0,
        }
        for attempt in range(1, self.settings.CODE_GENERATION_ATTEMPTS + 1):
            reward_data["code"] = self.code_factory()
            try:
                uow.insert("rewards", reward_data, unique={"reward_code": reward_data["code"]})
                break
            except DuplicateKeyError:
                logger.warning(f"Reward code collision on attempt {attempt}, retrying")
        else:
            raise InternalError("Could not allocate a unique reward code")

        logger.info(
            f"Issued {side.value} reward {reward_data['id']} ({terms.kind.value} {terms.amount}) "
            f"for referral {referral['id']}"
        )
        return Reward(**reward_data)

    def approve(self, reward_id: UUID, actor: User) -> RewardResponse:
        reward = self.get_reward(reward_id)
        require_owner(actor, reward.business_id)
        if not reward.can_approve():
            raise InvalidStateError(f"Cannot approve reward in {reward.status.value} state")

        data = self._transition(
            reward_id, {RewardStatus.PENDING}, RewardStatus.AVAILABLE,
            stamp="approved_at", embedded=(EmbeddedRewardStatus.APPROVED, "approved_at"),
        )
        logger.info(f"Reward {reward_id} approved by {actor.id}")
        return RewardResponse(reward=Reward(**data), message="Reward approved successfully")

    def redeem(self, reward_id: UUID, actor: User) -> RewardResponse:
        reward = self.get_reward(reward_id)
        if actor.id != reward.user_id:
            raise ForbiddenError("You can only redeem your own rewards")
        if reward.status == RewardStatus.REDEEMED:
            raise AlreadyRedeemedError(f"Reward {reward_id} has already been redeemed")
        if not reward.can_redeem():
            raise InvalidStateError(f"Reward cannot be redeemed because it is {reward.status.value}")

        data = self._transition(
            reward_id, {RewardStatus.AVAILABLE}, RewardStatus.REDEEMED,
            stamp="date_redeemed", embedded=(EmbeddedRewardStatus.PAID, "paid_at"),
        )
        logger.info(f"Reward {reward_id} redeemed by {actor.id}")
        return RewardResponse(reward=Reward(**data), message="Reward redeemed successfully")

    def expire(self, reward_id: UUID, actor: Optional[User] = None) -> RewardResponse:
        reward = self.get_reward(reward_id)
        if actor is not None:
            require_owner(actor, reward.business_id)
        if not reward.can_expire():
            raise InvalidStateError(f"Cannot expire reward in {reward.status.value} state")

        now = datetime.now(timezone.utc)
        try:
            with self.store.atomic() as uow:
                data = self._expire_in(uow, reward_id, now)
        except StaleStatusError as e:
            raise InvalidStateError(f"Cannot expire reward in {e.actual.value} state")
        logger.info(f"Reward {reward_id} expired")
        return RewardResponse(reward=Reward(**data), message="Reward expired")

    def expire_overdue(self, now: Optional[datetime] = None) -> list[UUID]:
        """Expire every open reward whose validity window has elapsed."""
        now = now or datetime.now(timezone.utc)
        expired = []
        with self.store.atomic() as uow:
            overdue = uow.find("rewards", lambda r: self._is_overdue(r, now))
            for row in overdue:
                self._expire_in(uow, row["id"], now)
                expired.append(row["id"])
        if expired:
            logger.info(f"Expired {len(expired)} overdue rewards")
        return expired

    def get_reward(self, reward_id: UUID) -> Reward:
        reward_data = self.store.get("rewards", reward_id)
        if not reward_data:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return Reward(**reward_data)

    def list_for_user(self, user_id: UUID, status: Optional[RewardStatus] = None) -> list[Reward]:
        rows = self.store.find(
            "rewards", lambda r: r["user_id"] == user_id and (status is None or r["status"] == status)
        )
        return sorted((Reward(**r) for r in rows), key=lambda r: r.date_earned, reverse=True)

    def list_for_business(self, business_id: UUID) -> list[Reward]:
        rows = self.store.find("rewards", lambda r: r["business_id"] == business_id)
        return sorted((Reward(**r) for r in rows), key=lambda r: r.date_earned, reverse=True)

    def _transition(self, reward_id: UUID, expected: set, new_status: RewardStatus, stamp: str, embedded: tuple) -> dict:
        """Compare-and-swap the reward status, expiring it instead when overdue."""
        now = datetime.now(timezone.utc)
        expired = False
        try:
            with self.store.atomic() as uow:
                current = uow.get("rewards", reward_id)
                if current["status"] in expected and self._is_overdue(current, now):
                    self._expire_in(uow, reward_id, now)
                    expired = True
                else:
                    data = uow.compare_and_set_status("rewards", reward_id, expected, new_status, {stamp: now})
                    self._sync_embedded(uow, data, embedded[0], embedded[1], now)
        except StaleStatusError as e:
            logger.warning(f"Lost status race on reward {reward_id}: {e}")
            if e.actual == RewardStatus.REDEEMED:
                raise AlreadyRedeemedError(f"Reward {reward_id} has already been redeemed")
            raise InvalidStateError(f"Reward is {e.actual.value}, cannot move to {new_status.value}")
        if expired:
            raise InvalidStateError(f"Reward {reward_id} has expired")
        return data

    def _expire_in(self, uow: UnitOfWork, reward_id: UUID, now: datetime) -> dict:
        data = uow.compare_and_set_status("rewards", reward_id, OPEN_REWARD_STATUSES, RewardStatus.EXPIRED)
        self._sync_embedded(uow, data, EmbeddedRewardStatus.REJECTED, None, now)
        return data

    def _sync_embedded(
        self, uow: UnitOfWork, reward_data: dict, status: EmbeddedRewardStatus, stamp: Optional[str], now: datetime,
    ) -> None:
        key = _EMBEDDED_KEYS[RewardSide(reward_data["side"])]
        referral = uow.get("referrals", reward_data["referral_id"])
        if not referral or not referral.get(key):
            return
        sub = referral[key]
        sub["status"] = status
        if stamp:
            sub[stamp] = now
        uow.update("referrals", referral["id"], {key: sub, "updated_at": now})

    @staticmethod
    def _is_overdue(reward_data: dict, now: datetime) -> bool:
        expires_at = reward_data.get("expires_at")
        return reward_data["status"] in OPEN_REWARD_STATUSES and expires_at is not None and now > expires_at
