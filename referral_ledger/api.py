import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from analytics import AnalyticsEngine, AnalyticsReport, DailyActivity

from .campaigns import CampaignRegistry
from .config import Settings, settings
from .directory import Directory, require_owner, require_role
from .errors import ForbiddenError, InternalError, ReferralEngineError, ValidationFailedError
from .logging_config import setup_logging
from .models import (
    Campaign,
    ClickResponse,
    ConversionResponse,
    ConvertRequest,
    CreateCampaignRequest,
    ExpirySweepResponse,
    GenerateLinkRequest,
    GenerateLinkResponse,
    Referral,
    ReferrerCampaign,
    RejectReferralRequest,
    Reward,
    RewardKind,
    RewardResponse,
    RewardTerms,
    Role,
    SelectCampaignRequest,
    SetActiveRequest,
    SubmitReferralRequest,
    TrackClickRequest,
    TrackClickResponse,
    User,
)
from .referrals import ReferralLedger
from .rewards import RewardLedger
from .storage import Store

logger = logging.getLogger(__name__)

router = APIRouter()


# --- dependencies ----------------------------------------------------------

def get_directory(request: Request) -> Directory:
    return request.app.state.directory


def get_campaigns(request: Request) -> CampaignRegistry:
    return request.app.state.campaigns


def get_referrals(request: Request) -> ReferralLedger:
    return request.app.state.referrals


def get_rewards(request: Request) -> RewardLedger:
    return request.app.state.rewards


def get_analytics(request: Request) -> AnalyticsEngine:
    return request.app.state.analytics


def get_current_actor(
    x_actor_id: Optional[UUID] = Header(default=None),
    directory: Directory = Depends(get_directory),
) -> User:
    """Resolve the authenticated actor forwarded by the session layer."""
    return directory.resolve_actor(x_actor_id)


# --- routes ----------------------------------------------------------------

@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "referral-ledger"}


@router.post("/campaigns", response_model=Campaign, status_code=status.HTTP_201_CREATED, tags=["Campaigns"])
def create_campaign(
    request: CreateCampaignRequest,
    actor: User = Depends(get_current_actor),
    campaigns: CampaignRegistry = Depends(get_campaigns),
) -> Campaign:
    return campaigns.create_campaign(actor, request)


@router.get("/campaigns/{campaign_id}", response_model=Campaign, tags=["Campaigns"])
def get_campaign(campaign_id: UUID, campaigns: CampaignRegistry = Depends(get_campaigns)) -> Campaign:
    return campaigns.get_campaign(campaign_id)


@router.get("/businesses/{business_id}/campaigns", response_model=list[Campaign], tags=["Campaigns"])
def list_campaigns(
    business_id: UUID, active_only: bool = False, campaigns: CampaignRegistry = Depends(get_campaigns),
) -> list[Campaign]:
    return campaigns.list_campaigns(business_id, active_only=active_only)


@router.post("/campaigns/{campaign_id}/active", response_model=Campaign, tags=["Campaigns"])
def set_campaign_active(
    campaign_id: UUID,
    request: SetActiveRequest,
    actor: User = Depends(get_current_actor),
    campaigns: CampaignRegistry = Depends(get_campaigns),
) -> Campaign:
    return campaigns.set_active(actor, campaign_id, request.is_active)


@router.post("/campaigns/{campaign_id}/reconcile", response_model=Campaign, tags=["Campaigns"])
def reconcile_campaign(
    campaign_id: UUID,
    actor: User = Depends(get_current_actor),
    campaigns: CampaignRegistry = Depends(get_campaigns),
) -> Campaign:
    return campaigns.reconcile_counters(campaign_id, actor=actor)


@router.post("/referrer/select-campaign", response_model=ReferrerCampaign, tags=["Referrers"])
def select_campaign(
    request: SelectCampaignRequest,
    actor: User = Depends(get_current_actor),
    campaigns: CampaignRegistry = Depends(get_campaigns),
) -> ReferrerCampaign:
    return campaigns.select_campaign(actor, request.campaign_id)


@router.post(
    "/referrals/generate-link", response_model=GenerateLinkResponse,
    status_code=status.HTTP_201_CREATED, tags=["Referrals"],
)
def generate_link(
    request: GenerateLinkRequest,
    actor: User = Depends(get_current_actor),
    referrals: ReferralLedger = Depends(get_referrals),
) -> GenerateLinkResponse:
    return referrals.generate_link(actor, request)


@router.get("/r/{code}", response_model=ClickResponse, tags=["Referrals"])
def follow_referral_link(code: str, referrals: ReferralLedger = Depends(get_referrals)) -> ClickResponse:
    return referrals.track_click(code)


@router.post("/referrals/track-click", response_model=TrackClickResponse, tags=["Referrals"])
def track_click(request: TrackClickRequest, referrals: ReferralLedger = Depends(get_referrals)) -> TrackClickResponse:
    return referrals.track_business_click(request)


@router.post(
    "/referrals/submit", response_model=ConversionResponse,
    status_code=status.HTTP_201_CREATED, tags=["Referrals"],
)
def submit_referral(
    request: SubmitReferralRequest, referrals: ReferralLedger = Depends(get_referrals),
) -> ConversionResponse:
    return referrals.submit_referral(request)


@router.post("/referrals/{code}/convert", response_model=ConversionResponse, tags=["Referrals"])
def convert_referral(
    code: str,
    request: ConvertRequest,
    actor: User = Depends(get_current_actor),
    referrals: ReferralLedger = Depends(get_referrals),
) -> ConversionResponse:
    return referrals.submit_conversion(code, request, actor=actor)


@router.get("/referrals/{referral_id}", response_model=Referral, tags=["Referrals"])
def get_referral(
    referral_id: UUID,
    actor: User = Depends(get_current_actor),
    referrals: ReferralLedger = Depends(get_referrals),
) -> Referral:
    referral = referrals.get_referral(referral_id)
    if actor.id != referral.referrer_id:
        require_owner(actor, referral.business_id)
    return referral


@router.post("/referrals/{referral_id}/expire", response_model=Referral, tags=["Referrals"])
def expire_referral(
    referral_id: UUID,
    actor: User = Depends(get_current_actor),
    referrals: ReferralLedger = Depends(get_referrals),
) -> Referral:
    return referrals.expire(referral_id, actor=actor)


@router.post("/referrals/{referral_id}/reject", response_model=Referral, tags=["Referrals"])
def reject_referral(
    referral_id: UUID,
    request: RejectReferralRequest,
    actor: User = Depends(get_current_actor),
    referrals: ReferralLedger = Depends(get_referrals),
) -> Referral:
    return referrals.reject(referral_id, request.reason, actor)


@router.get("/rewards/{reward_id}", response_model=Reward, tags=["Rewards"])
def get_reward(
    reward_id: UUID,
    actor: User = Depends(get_current_actor),
    rewards: RewardLedger = Depends(get_rewards),
) -> Reward:
    reward = rewards.get_reward(reward_id)
    if actor.id != reward.user_id:
        require_owner(actor, reward.business_id)
    return reward


@router.post("/rewards/{reward_id}/approve", response_model=RewardResponse, tags=["Rewards"])
def approve_reward(
    reward_id: UUID,
    actor: User = Depends(get_current_actor),
    rewards: RewardLedger = Depends(get_rewards),
) -> RewardResponse:
    return rewards.approve(reward_id, actor)


@router.post("/rewards/{reward_id}/redeem", response_model=RewardResponse, tags=["Rewards"])
def redeem_reward(
    reward_id: UUID,
    actor: User = Depends(get_current_actor),
    rewards: RewardLedger = Depends(get_rewards),
) -> RewardResponse:
    return rewards.redeem(reward_id, actor)


@router.post("/rewards/{reward_id}/expire", response_model=RewardResponse, tags=["Rewards"])
def expire_reward(
    reward_id: UUID,
    actor: User = Depends(get_current_actor),
    rewards: RewardLedger = Depends(get_rewards),
) -> RewardResponse:
    return rewards.expire(reward_id, actor=actor)


@router.get("/users/me/rewards", response_model=list[Reward], tags=["Users"])
def list_my_rewards(
    actor: User = Depends(get_current_actor), rewards: RewardLedger = Depends(get_rewards),
) -> list[Reward]:
    return rewards.list_for_user(actor.id)


@router.get("/analytics/{business_id}", response_model=AnalyticsReport, tags=["Analytics"])
def get_analytics_report(
    business_id: UUID,
    actor: User = Depends(get_current_actor),
    analytics: AnalyticsEngine = Depends(get_analytics),
) -> AnalyticsReport:
    require_owner(actor, business_id)
    return analytics.report(business_id)


@router.get("/analytics/{business_id}/daily", response_model=list[DailyActivity], tags=["Analytics"])
def get_daily_activity(
    business_id: UUID,
    days: Optional[int] = None,
    actor: User = Depends(get_current_actor),
    analytics: AnalyticsEngine = Depends(get_analytics),
) -> list[DailyActivity]:
    require_owner(actor, business_id)
    if days is not None and not 1 <= days <= 366:
        raise ValidationFailedError("Invalid range", fields={"days": "must be between 1 and 366"})
    return analytics.daily_activity(business_id, days=days)


@router.post("/maintenance/expire-overdue", response_model=ExpirySweepResponse, tags=["System"])
def expire_overdue(
    actor: User = Depends(get_current_actor),
    referrals: ReferralLedger = Depends(get_referrals),
    rewards: RewardLedger = Depends(get_rewards),
) -> ExpirySweepResponse:
    require_role(actor, Role.ADMIN)
    now = datetime.now(timezone.utc)
    return ExpirySweepResponse(
        expired_referrals=referrals.expire_overdue(now),
        expired_rewards=rewards.expire_overdue(now),
    )


# --- error translation -----------------------------------------------------

def _error_body(error: str, detail: str, fields: Optional[dict] = None) -> dict:
    body = {"error": error, "detail": detail}
    if fields:
        body["fields"] = fields
    return body


async def handle_engine_error(request: Request, exc: ReferralEngineError) -> JSONResponse:
    if isinstance(exc, InternalError):
        logger.error(f"Internal error on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, "Internal server error"))
    if isinstance(exc, ForbiddenError):
        logger.warning(f"Forbidden {request.method} {request.url.path}: {exc.message}")
    fields = exc.fields if isinstance(exc, ValidationFailedError) else None
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message, fields))


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = {}
    for err in exc.errors():
        location = [str(part) for part in err["loc"] if part != "body"]
        fields[".".join(location) or "body"] = err["msg"]
    return JSONResponse(
        status_code=422,
        content=_error_body("validation", "Invalid request", fields),
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("internal", "Internal server error"),
    )


# --- application factory ---------------------------------------------------

def seed_demo_data(directory: Directory, campaigns: CampaignRegistry) -> None:
    business = directory.register_business(
        name="Acme Coffee", email="owner@example.com", business_name="Acme Coffee", business_code="acme-coffee",
    )
    directory.register_referrer(
        name="Jane Referrer", email="jane@example.com", company="Acme Coffee", referral_code="jane-acme",
    )
    campaigns.create_campaign(business, CreateCampaignRequest(
        name="Bring a Friend",
        customer_reward=RewardTerms(kind=RewardKind.DISCOUNT, amount=Decimal("25")),
        referrer_reward=RewardTerms(kind=RewardKind.CASH, amount=Decimal("10")),
    ))
    logger.info("Seeded demo business, referrer and campaign")


def create_app(store: Optional[Store] = None, app_settings: Optional[Settings] = None) -> FastAPI:
    app_settings = app_settings or settings
    store = store or Store()
    setup_logging(app_settings.LOG_LEVEL)

    app = FastAPI(
        title="Referral Ledger API",
        description="Referral lifecycle, reward settlement and campaign analytics",
        version="1.0.0",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    directory = Directory(store)
    campaigns = CampaignRegistry(store)
    rewards = RewardLedger(store, app_settings)
    app.state.store = store
    app.state.directory = directory
    app.state.campaigns = campaigns
    app.state.rewards = rewards
    app.state.referrals = ReferralLedger(store, directory, campaigns, rewards, app_settings)
    app.state.analytics = AnalyticsEngine(store, app_settings)

    if app_settings.SEED_DEMO_DATA:
        seed_demo_data(directory, campaigns)

    app.add_exception_handler(ReferralEngineError, handle_engine_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
