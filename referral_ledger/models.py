from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, ConfigDict, EmailStr, Field


class RewardKind(str, Enum):
    CASH = "cash"
    DISCOUNT = "discount"
    GIFT = "gift"
    POINTS = "points"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    CLICKED = "clicked"
    CONVERTED = "converted"
    EXPIRED = "expired"
    REJECTED = "rejected"


class RewardStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


class EmbeddedRewardStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


class RewardSide(str, Enum):
    REFERRER = "referrer"
    CUSTOMER = "customer"


class Role(str, Enum):
    BUSINESS = "business"
    REFERRER = "referrer"
    CUSTOMER = "customer"
    ADMIN = "admin"


class SelectionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


SHARE_CODE_MIN_LENGTH = 5

OPEN_REFERRAL_STATUSES = frozenset({ReferralStatus.PENDING, ReferralStatus.CLICKED})
OPEN_REWARD_STATUSES = frozenset({RewardStatus.PENDING, RewardStatus.AVAILABLE})

# Allowed edges of the referral state machine. Terminal states map to nothing.
REFERRAL_TRANSITIONS: dict[ReferralStatus, frozenset] = {
    ReferralStatus.PENDING: frozenset({
        ReferralStatus.CLICKED, ReferralStatus.CONVERTED,
        ReferralStatus.EXPIRED, ReferralStatus.REJECTED,
    }),
    ReferralStatus.CLICKED: frozenset({
        ReferralStatus.CONVERTED, ReferralStatus.EXPIRED, ReferralStatus.REJECTED,
    }),
    ReferralStatus.CONVERTED: frozenset(),
    ReferralStatus.EXPIRED: frozenset(),
    ReferralStatus.REJECTED: frozenset(),
}


# --- Directory users -------------------------------------------------------

class _UserBase(BaseModel):
    id: UUID
    email: EmailStr
    name: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BusinessUser(_UserBase):
    role: Literal[Role.BUSINESS] = Role.BUSINESS
    business_name: str
    company: Optional[str] = None
    business_code: str


class ReferrerUser(_UserBase):
    role: Literal[Role.REFERRER] = Role.REFERRER
    company: Optional[str] = None
    referral_code: str


class CustomerUser(_UserBase):
    role: Literal[Role.CUSTOMER] = Role.CUSTOMER
    phone: Optional[str] = None
    business_id: UUID
    referred_by: UUID
    referral_id: UUID


class AdminUser(_UserBase):
    role: Literal[Role.ADMIN] = Role.ADMIN


User = Annotated[
    Union[BusinessUser, ReferrerUser, CustomerUser, AdminUser],
    Field(discriminator="role"),
]


# --- Campaign registry -----------------------------------------------------

class RewardTerms(BaseModel):
    kind: RewardKind
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    description: Optional[str] = None


class Campaign(BaseModel):
    id: UUID
    business_id: UUID
    company_name: str
    name: str
    description: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True
    customer_reward: RewardTerms
    referrer_reward: Optional[RewardTerms] = None
    referral_count: int = 0
    conversion_count: int = 0
    referrer_count: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_running(self, at: datetime) -> bool:
        if not self.is_active or at < self.start_date:
            return False
        return self.end_date is None or at <= self.end_date


class CreateCampaignRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True
    customer_reward: RewardTerms
    referrer_reward: Optional[RewardTerms] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Summer Referral Program",
            "customer_reward": {"kind": "discount", "amount": 25},
            "referrer_reward": {"kind": "cash", "amount": 10},
        }
    })


class SetActiveRequest(BaseModel):
    is_active: bool


class ReferrerCampaign(BaseModel):
    id: UUID
    referrer_id: UUID
    campaign_id: UUID
    business_id: UUID
    status: SelectionStatus = SelectionStatus.ACTIVE
    selected_at: datetime
    implicit: bool = False

    model_config = ConfigDict(from_attributes=True)


class SelectCampaignRequest(BaseModel):
    campaign_id: UUID


# --- Referral ledger -------------------------------------------------------

class EmbeddedReward(BaseModel):
    reward_id: Optional[UUID] = None
    kind: RewardKind
    amount: Decimal
    status: EmbeddedRewardStatus = EmbeddedRewardStatus.PENDING
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class ConversionDetails(BaseModel):
    purchase_amount: Optional[Decimal] = Field(default=None, ge=0)
    products_purchased: list[str] = Field(default_factory=list)
    transaction_id: Optional[str] = None


class Referral(BaseModel):
    id: UUID
    campaign_id: UUID
    business_id: UUID
    company_name: str
    referrer_id: UUID
    referee_email: Optional[str] = None
    referee_name: Optional[str] = None
    referee_phone: Optional[str] = None
    referral_code: str
    referral_link: str
    custom_message: Optional[str] = None
    status: ReferralStatus = ReferralStatus.PENDING
    click_count: int = 0
    created_at: datetime
    updated_at: datetime
    clicked_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    customer_id: Optional[UUID] = None
    referrer_reward: Optional[EmbeddedReward] = None
    customer_reward: Optional[EmbeddedReward] = None
    conversion_details: Optional[ConversionDetails] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    def is_open(self) -> bool:
        return self.status in OPEN_REFERRAL_STATUSES

    def can_transition_to(self, target: ReferralStatus) -> bool:
        return target in REFERRAL_TRANSITIONS[self.status]


class GenerateLinkRequest(BaseModel):
    campaign_id: UUID
    custom_message: Optional[str] = Field(default=None, max_length=500)


class GenerateLinkResponse(BaseModel):
    referral_link: str
    code: str
    referral_id: UUID


class ClickResponse(BaseModel):
    referral: Referral
    campaign_name: str
    campaign_description: Optional[str] = None
    company_name: str
    referrer_name: str
    custom_message: Optional[str] = None


class TrackClickRequest(BaseModel):
    business_code: str = Field(..., min_length=SHARE_CODE_MIN_LENGTH)
    referrer_code: Optional[str] = Field(default=None, min_length=SHARE_CODE_MIN_LENGTH)


class TrackClickResponse(BaseModel):
    business_name: str


class ConvertRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2)
    email: EmailStr
    phone: Optional[str] = None
    notes: Optional[str] = None
    conversion_details: ConversionDetails = Field(default_factory=ConversionDetails)


class SubmitReferralRequest(BaseModel):
    business_code: str = Field(..., min_length=SHARE_CODE_MIN_LENGTH)
    referrer_code: str = Field(..., min_length=SHARE_CODE_MIN_LENGTH)
    name: str = Field(..., min_length=2)
    email: EmailStr
    phone: Optional[str] = None
    notes: Optional[str] = None
    campaign_id: Optional[UUID] = None
    conversion_details: ConversionDetails = Field(default_factory=ConversionDetails)


class RejectReferralRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason for rejection")


# --- Reward ledger ---------------------------------------------------------

class Reward(BaseModel):
    id: UUID
    user_id: UUID
    campaign_id: UUID
    business_id: UUID
    referral_id: UUID
    side: RewardSide
    kind: RewardKind
    amount: Decimal
    status: RewardStatus = RewardStatus.PENDING
    date_earned: datetime
    approved_at: Optional[datetime] = None
    date_redeemed: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    description: str
    code: str
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    def can_approve(self) -> bool:
        return self.status == RewardStatus.PENDING

    def can_redeem(self) -> bool:
        return self.status == RewardStatus.AVAILABLE

    def can_expire(self) -> bool:
        return self.status in OPEN_REWARD_STATUSES


class ConversionResponse(BaseModel):
    referral: Referral
    rewards: list[Reward]
    message: str


class RewardResponse(BaseModel):
    reward: Reward
    message: str


class ExpirySweepResponse(BaseModel):
    expired_referrals: list[UUID]
    expired_rewards: list[UUID]
