from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.exceptions import NotFoundError
from app.deps import get_current_account, get_services, require_admin
from app.models.account import Account
from app.models.ad_reward import AdRewardConfig, AdRewardRequirements
from app.services.container import Services
from app.services.eligibility import NOT_FOUND

router = APIRouter()

AdType = Literal["rewarded_video", "interstitial", "banner"]


class AdRewardCreateRequest(BaseModel):
    ad_type: AdType
    ad_unit_id: str = Field(min_length=1, max_length=100)
    ad_unit_name: str = Field(min_length=1, max_length=100)
    coin_reward: int = Field(ge=1)
    description: str | None = Field(default=None, max_length=200)
    minimum_watch_time: int = Field(default=0, ge=0)
    daily_limit: int = Field(default=0, ge=0)
    is_active: bool = True
    requirements: AdRewardRequirements = Field(default_factory=AdRewardRequirements)


class AdRewardUpdateRequest(BaseModel):
    ad_type: AdType | None = None
    ad_unit_name: str | None = Field(default=None, min_length=1, max_length=100)
    coin_reward: int | None = Field(default=None, ge=1)
    description: str | None = Field(default=None, max_length=200)
    minimum_watch_time: int | None = Field(default=None, ge=0)
    daily_limit: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    requirements: AdRewardRequirements | None = None


class ClaimRewardRequest(BaseModel):
    ad_unit_id: str = Field(min_length=1)
    idempotency_key: str | None = Field(default=None, max_length=128)


def _public(config: AdRewardConfig) -> dict:
    return config.model_dump(mode="json", exclude={"analytics"})


@router.get("/rewards")
async def ads_rewards(services: Services = Depends(get_services), ad_type: AdType | None = Query(None)):
    """Active ad placements, highest reward first."""
    configs = await services.ad_rewards.list_active(ad_type)
    return {"ad_rewards": [_public(c) for c in configs]}


@router.get("/rewards/{ad_type}")
async def ads_rewards_by_type(ad_type: str, services: Services = Depends(get_services)):
    configs = await services.ad_rewards.list_active(ad_type)
    return {"ad_rewards": [_public(c) for c in configs]}


@router.get("/can-watch/{ad_unit_id}")
async def ads_can_watch(
    ad_unit_id: str, account: Account = Depends(get_current_account), services: Services = Depends(get_services)
):
    decision = await services.eligibility.check_eligibility(account.id, ad_unit_id, account.level)
    if decision.reason == NOT_FOUND:
        raise NotFoundError("Ad unit not found")
    config = decision.config
    return {
        **decision.as_dict(),
        "ad_reward": {
            "ad_unit_id": config.ad_unit_id,
            "ad_type": config.ad_type,
            "coin_reward": config.coin_reward,
            "minimum_watch_time": config.minimum_watch_time,
        },
    }


@router.post("/claim")
async def ads_claim(
    body: ClaimRewardRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    """Credit a completed ad view outside a game session. Denials are not errors."""
    key = f"claim:{body.idempotency_key}" if body.idempotency_key else None
    result = await services.eligibility.grant_reward(account.id, body.ad_unit_id, idempotency_key=key)
    return result.as_dict()


@router.get("/analytics")
async def ads_analytics(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
    timeframe: Literal["all", "daily", "weekly", "monthly"] = Query("all"),
):
    return await services.reporting.ad_analytics(account.id, timeframe)


# Admin


@router.post("/admin/rewards", status_code=201)
async def admin_create_reward(
    body: AdRewardCreateRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    config = await services.ad_rewards.create(AdRewardConfig(**body.model_dump()), actor_id=admin.id)
    return {"ad_reward": config.model_dump(mode="json")}


@router.put("/admin/rewards/{config_id}")
async def admin_update_reward(
    config_id: str,
    body: AdRewardUpdateRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    config = await services.ad_rewards.update(config_id, fields, actor_id=admin.id)
    return {"ad_reward": config.model_dump(mode="json")}


@router.get("/admin/rewards")
async def admin_list_rewards(
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
    ad_type: AdType | None = Query(None),
):
    configs = await services.ad_rewards.list_all(ad_type)
    return {"ad_rewards": [c.model_dump(mode="json") for c in configs]}


@router.get("/admin/analytics")
async def admin_ad_analytics(admin: Account = Depends(require_admin), services: Services = Depends(get_services)):
    return await services.ad_rewards.analytics()
