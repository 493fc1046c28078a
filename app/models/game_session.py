import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.core.clock import utcnow
from app.models.account import DeviceInfo


class GameStats(BaseModel):
    balls_dropped: int = Field(default=0, ge=0)
    successful_hits: int = Field(default=0, ge=0)
    highest_score: int = Field(default=0, ge=0)
    levels_completed: int = Field(default=0, ge=0)


class AdView(BaseModel):
    ad_type: Literal["rewarded_video", "interstitial", "banner"]
    ad_unit_id: str
    view_id: str | None = None
    coins_rewarded: int = 0
    completed: bool = False
    reason: str | None = None
    watched_at: datetime = Field(default_factory=utcnow)


class GameSession(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    account_id: str
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    duration_seconds: int = 0
    coins_earned: int = 0
    game_stats: GameStats = Field(default_factory=GameStats)
    ads_watched: list[AdView] = Field(default_factory=list)
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    ip_address: str | None = None
    country: str | None = None
    is_completed: bool = False
