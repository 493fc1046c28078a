from fastapi import APIRouter, Depends, Query

from app.deps import get_optional_account, get_services
from app.models.account import Account
from app.services.container import Services

router = APIRouter()


@router.get("/meta/countries")
async def leaderboard_countries(services: Services = Depends(get_services)):
    return {"countries": await services.reporting.countries()}


@router.get("/meta/stats")
async def leaderboard_stats(services: Services = Depends(get_services)):
    return await services.reporting.global_stats()


@router.get("/{timeframe}")
async def leaderboard(
    timeframe: str,
    services: Services = Depends(get_services),
    account: Account | None = Depends(get_optional_account),
    country: str | None = Query(None, min_length=2, max_length=2),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
):
    """Ranking for daily, weekly, monthly or all-time; signed-in callers also get their own rank."""
    return await services.reporting.leaderboard(
        timeframe,
        country=country,
        offset=(page - 1) * limit,
        limit=limit,
        account_id=account.id if account else None,
    )
