"""
Unit Tests for the Reward Ledger

Tests cover:
1. Reward codes
2. Approval and redemption rules
3. Expiry on access and by sweep
4. Embedded reward status on the referral
"""

from datetime import datetime, timedelta, timezone

import pytest

from referral_ledger.errors import (
    AlreadyRedeemedError,
    ForbiddenError,
    InvalidStateError,
    RewardNotFoundError,
)
from referral_ledger.models import (
    ConvertRequest,
    EmbeddedRewardStatus,
    GenerateLinkRequest,
    RewardSide,
    RewardStatus,
)
from referral_ledger.rewards import REWARD_CODE_ALPHABET, REWARD_CODE_LENGTH, generate_reward_code


@pytest.fixture
def converted(engine, campaign):
    """A converted referral with both rewards issued, keyed by side."""
    link = engine.referrals.generate_link(engine.referrer, GenerateLinkRequest(campaign_id=campaign.id))
    result = engine.referrals.submit_conversion(
        link.code, ConvertRequest(name="Pat Prospect", email="pat@example.com")
    )
    customer = engine.directory.get_user(result.referral.customer_id)
    rewards = {r.side: r for r in result.rewards}
    return result.referral, rewards, customer


def make_overdue(engine, reward_id):
    with engine.store.atomic() as uow:
        uow.update("rewards", reward_id, {"expires_at": datetime.now(timezone.utc) - timedelta(minutes=5)})


class TestRewardCodes:
    """Tests for reward code generation."""

    def test_code_shape(self):
        """Codes are eight characters from an unambiguous alphabet."""
        for _ in range(50):
            code = generate_reward_code()
            assert len(code) == REWARD_CODE_LENGTH
            assert set(code) <= set(REWARD_CODE_ALPHABET)
            assert not set(code) & set("01IO")

    def test_issued_codes_are_distinct(self, converted):
        """Each issued reward carries its own code."""
        _, rewards, _ = converted
        codes = {r.code for r in rewards.values()}
        assert len(codes) == 2


class TestApprove:
    """Tests for reward approval."""

    def test_approve_makes_reward_available(self, engine, converted):
        """Approval moves pending to available and stamps approved_at."""
        referral, rewards, _ = converted

        response = engine.rewards.approve(rewards[RewardSide.REFERRER].id, engine.business)

        assert response.reward.status == RewardStatus.AVAILABLE
        assert response.reward.approved_at is not None
        embedded = engine.referrals.get_referral(referral.id).referrer_reward
        assert embedded.status == EmbeddedRewardStatus.APPROVED
        assert embedded.approved_at is not None

    def test_approve_twice_fails(self, engine, converted):
        """An available reward cannot be approved again."""
        _, rewards, _ = converted
        reward_id = rewards[RewardSide.REFERRER].id
        engine.rewards.approve(reward_id, engine.business)

        with pytest.raises(InvalidStateError):
            engine.rewards.approve(reward_id, engine.business)

    def test_only_owner_or_admin_approves(self, engine, converted):
        """Referrers and customers cannot approve rewards."""
        _, rewards, customer = converted
        reward_id = rewards[RewardSide.CUSTOMER].id

        with pytest.raises(ForbiddenError):
            engine.rewards.approve(reward_id, engine.referrer)
        with pytest.raises(ForbiddenError):
            engine.rewards.approve(reward_id, customer)
        assert engine.rewards.approve(reward_id, engine.admin).reward.status == RewardStatus.AVAILABLE

    def test_unknown_reward(self, engine):
        """Missing rewards are NotFound."""
        with pytest.raises(RewardNotFoundError):
            engine.rewards.get_reward(engine.business.id)


class TestRedeem:
    """Tests for reward redemption."""

    def test_redeem_available_reward(self, engine, converted):
        """The recipient redeems an available reward exactly once."""
        referral, rewards, customer = converted
        reward_id = rewards[RewardSide.CUSTOMER].id
        engine.rewards.approve(reward_id, engine.business)

        response = engine.rewards.redeem(reward_id, customer)

        assert response.reward.status == RewardStatus.REDEEMED
        assert response.reward.date_redeemed is not None
        embedded = engine.referrals.get_referral(referral.id).customer_reward
        assert embedded.status == EmbeddedRewardStatus.PAID
        assert embedded.paid_at is not None

    def test_redeem_twice_is_conflict(self, engine, converted):
        """A second redemption reports the reward as already redeemed."""
        _, rewards, _ = converted
        reward_id = rewards[RewardSide.REFERRER].id
        engine.rewards.approve(reward_id, engine.business)
        engine.rewards.redeem(reward_id, engine.referrer)

        with pytest.raises(AlreadyRedeemedError):
            engine.rewards.redeem(reward_id, engine.referrer)

    def test_pending_reward_cannot_be_redeemed(self, engine, converted):
        """Redemption needs an approved reward."""
        _, rewards, customer = converted

        with pytest.raises(InvalidStateError):
            engine.rewards.redeem(rewards[RewardSide.CUSTOMER].id, customer)
        assert engine.rewards.get_reward(rewards[RewardSide.CUSTOMER].id).status == RewardStatus.PENDING

    def test_cannot_redeem_someone_elses_reward(self, engine, converted):
        """Only the recipient may redeem."""
        _, rewards, customer = converted
        reward_id = rewards[RewardSide.REFERRER].id
        engine.rewards.approve(reward_id, engine.business)

        with pytest.raises(ForbiddenError):
            engine.rewards.redeem(reward_id, customer)
        with pytest.raises(ForbiddenError):
            engine.rewards.redeem(reward_id, engine.business)
        assert engine.rewards.get_reward(reward_id).status == RewardStatus.AVAILABLE

    def test_overdue_reward_expires_on_redeem(self, engine, converted):
        """Redeeming after expires_at expires the reward and fails."""
        referral, rewards, customer = converted
        reward_id = rewards[RewardSide.CUSTOMER].id
        engine.rewards.approve(reward_id, engine.business)
        make_overdue(engine, reward_id)

        with pytest.raises(InvalidStateError):
            engine.rewards.redeem(reward_id, customer)

        assert engine.rewards.get_reward(reward_id).status == RewardStatus.EXPIRED
        embedded = engine.referrals.get_referral(referral.id).customer_reward
        assert embedded.status == EmbeddedRewardStatus.REJECTED


class TestExpire:
    """Tests for reward expiry."""

    def test_expire_open_reward(self, engine, converted):
        """Pending and available rewards can be expired."""
        _, rewards, _ = converted
        pending_id = rewards[RewardSide.CUSTOMER].id
        available_id = rewards[RewardSide.REFERRER].id
        engine.rewards.approve(available_id, engine.business)

        assert engine.rewards.expire(pending_id, engine.business).reward.status == RewardStatus.EXPIRED
        assert engine.rewards.expire(available_id).reward.status == RewardStatus.EXPIRED

    def test_redeemed_reward_cannot_expire(self, engine, converted):
        """Redemption is terminal."""
        _, rewards, _ = converted
        reward_id = rewards[RewardSide.REFERRER].id
        engine.rewards.approve(reward_id, engine.business)
        engine.rewards.redeem(reward_id, engine.referrer)

        with pytest.raises(InvalidStateError):
            engine.rewards.expire(reward_id)

    def test_expired_reward_cannot_be_approved_or_redeemed(self, engine, converted):
        """Expiry is terminal."""
        _, rewards, customer = converted
        reward_id = rewards[RewardSide.CUSTOMER].id
        engine.rewards.expire(reward_id)

        with pytest.raises(InvalidStateError):
            engine.rewards.approve(reward_id, engine.business)
        with pytest.raises(InvalidStateError):
            engine.rewards.redeem(reward_id, customer)

    def test_expire_overdue_sweep(self, engine, converted):
        """The sweep only touches open rewards past their window."""
        _, rewards, _ = converted
        overdue_id = rewards[RewardSide.CUSTOMER].id
        fresh_id = rewards[RewardSide.REFERRER].id
        make_overdue(engine, overdue_id)

        assert engine.rewards.expire_overdue() == [overdue_id]
        assert engine.rewards.get_reward(overdue_id).status == RewardStatus.EXPIRED
        assert engine.rewards.get_reward(fresh_id).status == RewardStatus.PENDING
        assert engine.rewards.expire_overdue() == []


class TestListing:
    """Tests for reward listings."""

    def test_list_for_user_filters_by_status(self, engine, converted):
        """A user's rewards can be filtered by status."""
        _, rewards, customer = converted
        engine.rewards.approve(rewards[RewardSide.CUSTOMER].id, engine.business)

        assert [r.id for r in engine.rewards.list_for_user(customer.id)] == [rewards[RewardSide.CUSTOMER].id]
        assert engine.rewards.list_for_user(customer.id, RewardStatus.PENDING) == []
        assert len(engine.rewards.list_for_user(engine.referrer.id, RewardStatus.PENDING)) == 1

    def test_list_for_business(self, engine, converted):
        """Every reward issued under the business is listed."""
        assert len(engine.rewards.list_for_business(engine.business.id)) == 2
