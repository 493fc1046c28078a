from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.pagination import page_meta
from app.deps import get_current_account, get_services, require_admin
from app.models.account import Account
from app.services.container import Services
from app.services.payouts import EMAIL_RE
from app.storage.base import AccountQuery

router = APIRouter()


class AdminUserUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    paypal_email: str | None = Field(default=None, pattern=EMAIL_RE.pattern, max_length=254)
    country: str | None = Field(default=None, min_length=2, max_length=2)
    is_active: bool | None = None
    role: Literal["user", "admin"] | None = None
    level: int | None = Field(default=None, ge=0)
    admin_notes: str | None = Field(default=None, max_length=1000)


class AdjustBalanceRequest(BaseModel):
    target_balance: int = Field(ge=0)
    note: str | None = Field(default=None, max_length=200)


@router.get("/dashboard")
async def users_dashboard(account: Account = Depends(get_current_account), services: Services = Depends(get_services)):
    return await services.reporting.user_dashboard(account)


@router.get("/balance")
async def users_balance(account: Account = Depends(get_current_account), services: Services = Depends(get_services)):
    balance = await services.balances.get_balance(account.id)
    return {"balance": balance, "total_earned": account.total_earned, "frozen": account.frozen}


@router.get("/transactions")
async def users_transactions(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    kind: str | None = Query(None),
    source: str | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
):
    """Ledger entries for the current account, newest first, with per-kind totals."""
    result = await services.ledger.list_by_account(
        account.id,
        start=start_date,
        end=end_date,
        kind=kind,
        source=source,
        offset=(page - 1) * limit,
        limit=limit,
        newest_first=True,
    )
    return {
        "transactions": [e.model_dump(mode="json") for e in result.items],
        "pagination": page_meta(page, limit, result.total or 0, len(result.items)),
        "summary": await services.reporting.entry_summary(account.id),
    }


@router.get("/analytics/earnings")
async def users_earnings(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
    timeframe: Literal["daily", "weekly", "monthly"] = Query("monthly"),
):
    return await services.reporting.earnings(account.id, timeframe)


@router.get("/stats")
async def users_stats(account: Account = Depends(get_current_account), services: Services = Depends(get_services)):
    return await services.reporting.user_stats(account)


# Admin


@router.get("/admin/all")
async def admin_users_list(
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    search: str | None = Query(None),
    country: str | None = Query(None, min_length=2, max_length=2),
    is_active: bool | None = Query(None),
    role: Literal["user", "admin"] | None = Query(None),
    sort_by: str = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
):
    query = AccountQuery(active=is_active, country=country.upper() if country else None, role=role, search=search)
    result, stats = await services.accounts.admin_list(query, (page - 1) * limit, limit, sort_by, sort_order)
    return {
        "users": [a.public_dict() for a in result.items],
        "pagination": page_meta(page, limit, result.total or 0, len(result.items)),
        "stats": stats,
    }


@router.get("/admin/{account_id}")
async def admin_user_detail(
    account_id: str, admin: Account = Depends(require_admin), services: Services = Depends(get_services)
):
    return await services.accounts.admin_detail(account_id)


@router.put("/admin/{account_id}")
async def admin_user_update(
    account_id: str,
    body: AdminUserUpdateRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Admin: profile fields only; coins are changed with adjust-balance."""
    fields = body.model_dump(exclude_unset=True)
    account = await services.accounts.admin_update(account_id, fields, actor_id=admin.id)
    return {"user": account.public_dict()}


@router.post("/admin/{account_id}/adjust-balance")
async def admin_adjust_balance(
    account_id: str,
    body: AdjustBalanceRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    applied = await services.balances.adjust_balance(account_id, body.target_balance, body.note, actor_id=admin.id)
    return {
        "balance": applied.account.balance,
        "entry": applied.entries[0].model_dump(mode="json") if applied.entries else None,
    }


@router.post("/admin/{account_id}/reconcile")
async def admin_reconcile(
    account_id: str, admin: Account = Depends(require_admin), services: Services = Depends(get_services)
):
    """Admin: replay the ledger; a mismatch freezes the account."""
    report = await services.balances.reconcile(account_id)
    return report.as_dict()


@router.post("/admin/{account_id}/repair")
async def admin_repair(account_id: str, admin: Account = Depends(require_admin), services: Services = Depends(get_services)):
    account = await services.balances.repair(account_id, actor_id=admin.id)
    return {"user": account.public_dict()}
