from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from referral_ledger.campaigns import CampaignRegistry
from referral_ledger.config import Settings
from referral_ledger.directory import Directory
from referral_ledger.models import CreateCampaignRequest, RewardKind, RewardTerms
from referral_ledger.referrals import ReferralLedger
from referral_ledger.rewards import RewardLedger, generate_reward_code
from referral_ledger.storage import Store


class Engine:
    """Every service wired to one fresh store, the way the API builds them."""

    def __init__(self, settings: Settings, referral_codes=None, reward_codes=None):
        self.settings = settings
        self.store = Store()
        self.directory = Directory(self.store)
        self.campaigns = CampaignRegistry(self.store)
        self.rewards = RewardLedger(self.store, settings, code_factory=reward_codes or generate_reward_code)
        self.referrals = ReferralLedger(
            self.store, self.directory, self.campaigns, self.rewards, settings, code_factory=referral_codes,
        )

        self.business = self.directory.register_business(
            name="Owner", email="owner@example.com", business_name="Acme Coffee", business_code="acme-coffee",
        )
        self.referrer = self.directory.register_referrer(
            name="Jane Referrer", email="jane@example.com", company="Acme Coffee", referral_code="jane-acme",
        )
        self.outsider = self.directory.register_referrer(
            name="Olly Outsider", email="olly@example.org", company="Elsewhere Ltd", referral_code="olly-else",
        )
        self.admin = self.directory.register_admin(name="Admin", email="admin@example.net")

    def create_campaign(self, business=None, customer_amount="25", referrer_amount="10", **kwargs):
        request = CreateCampaignRequest(
            name=kwargs.pop("name", "Bring a Friend"),
            customer_reward=RewardTerms(kind=RewardKind.DISCOUNT, amount=Decimal(customer_amount)),
            referrer_reward=RewardTerms(kind=RewardKind.CASH, amount=Decimal(referrer_amount)),
            **kwargs,
        )
        return self.campaigns.create_campaign(business or self.business, request)


@pytest.fixture
def settings():
    return Settings(
        APP_BASE_URL="https://refer.example",
        REFERRAL_VALIDITY_DAYS=30,
        REWARD_VALIDITY_DAYS=90,
        _env_file=None,
    )


@pytest.fixture
def engine(settings):
    return Engine(settings)


@pytest.fixture
def campaign(engine):
    return engine.create_campaign(start_date=datetime.now(timezone.utc) - timedelta(days=1))


@pytest.fixture
def make_engine(settings):
    def _make(**kwargs):
        return Engine(settings, **kwargs)
    return _make
