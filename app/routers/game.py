from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from app.core.pagination import page_meta
from app.deps import get_current_account, get_services
from app.models.account import Account, DeviceInfo
from app.models.game_session import GameSession
from app.services.container import Services

router = APIRouter()


class StartSessionRequest(BaseModel):
    device_info: DeviceInfo | None = None


class GameStatsUpdate(BaseModel):
    balls_dropped: int | None = Field(default=None, ge=0)
    successful_hits: int | None = Field(default=None, ge=0)
    highest_score: int | None = Field(default=None, ge=0)
    levels_completed: int | None = Field(default=None, ge=0)


class UpdateSessionRequest(BaseModel):
    game_stats: GameStatsUpdate | None = None
    coins_earned: int | None = Field(default=None, ge=0)


class AdViewRequest(BaseModel):
    ad_type: Literal["rewarded_video", "interstitial", "banner"]
    ad_unit_id: str = Field(min_length=1)
    completed: bool
    view_id: str = Field(min_length=1, max_length=128)


def _session_summary(session: GameSession) -> dict:
    return session.model_dump(mode="json", exclude={"ip_address"})


@router.post("/session/start", status_code=201)
async def game_session_start(
    body: StartSessionRequest,
    request: Request,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    session = await services.game.start(
        account,
        device_info=body.device_info,
        ip_address=request.client.host if request.client else None,
        country=request.headers.get("CF-IPCountry"),
    )
    return {"session_id": session.id, "start_time": session.start_time.isoformat()}


@router.put("/session/{session_id}")
async def game_session_update(
    session_id: str,
    body: UpdateSessionRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    stats = body.game_stats.model_dump(exclude_none=True) if body.game_stats else None
    session = await services.game.update(account.id, session_id, game_stats=stats, coins_earned=body.coins_earned)
    return {
        "session_id": session.id,
        "coins_earned": session.coins_earned,
        "game_stats": session.game_stats.model_dump(),
    }


@router.post("/session/{session_id}/end")
async def game_session_end(
    session_id: str, account: Account = Depends(get_current_account), services: Services = Depends(get_services)
):
    session = await services.game.end(account.id, session_id)
    return {
        "session_id": session.id,
        "duration": session.duration_seconds,
        "coins_earned": session.coins_earned,
        "game_stats": session.game_stats.model_dump(),
    }


@router.post("/session/{session_id}/ad-reward")
async def game_session_ad_reward(
    session_id: str,
    body: AdViewRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    """Record an ad view; completed, eligible views are credited once per view_id."""
    return await services.game.record_ad_view(
        account.id, session_id, body.ad_type, body.ad_unit_id, body.completed, body.view_id
    )


@router.get("/stats")
async def game_stats(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
    timeframe: Literal["all", "daily", "weekly", "monthly"] = Query("all"),
):
    return {"timeframe": timeframe, **await services.reporting.engagement(account.id, timeframe)}


@router.get("/sessions")
async def game_sessions(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    result = await services.game.history(account.id, offset=(page - 1) * limit, limit=limit)
    return {
        "sessions": [_session_summary(s) for s in result.items],
        "pagination": page_meta(page, limit, result.total or 0, len(result.items)),
    }
