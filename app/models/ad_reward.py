import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.core.clock import utcnow

AD_TYPES = ("rewarded_video", "interstitial", "banner")

# Ledger source tag for each ad type
AD_TYPE_SOURCES = {
    "rewarded_video": "rewarded_video",
    "interstitial": "interstitial_ad",
    "banner": "banner_ad",
}


class AdRewardRequirements(BaseModel):
    min_level: int = Field(default=0, ge=0)
    cooldown_minutes: int = Field(default=0, ge=0)


class AdRewardAnalytics(BaseModel):
    """Counters derived from the ledger, updated in the same commit as each grant."""

    total_views: int = 0
    total_rewards_given: int = 0
    total_coins_distributed: int = 0


class AdRewardConfig(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ad_type: Literal["rewarded_video", "interstitial", "banner"]
    ad_unit_id: str
    ad_unit_name: str
    coin_reward: int = Field(gt=0)
    is_active: bool = True
    description: str | None = Field(default=None, max_length=200)
    minimum_watch_time: int = Field(default=0, ge=0)  # seconds
    daily_limit: int = Field(default=0, ge=0)  # 0 = unlimited
    requirements: AdRewardRequirements = Field(default_factory=AdRewardRequirements)
    analytics: AdRewardAnalytics = Field(default_factory=AdRewardAnalytics)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def source(self) -> str:
        return AD_TYPE_SOURCES[self.ad_type]
