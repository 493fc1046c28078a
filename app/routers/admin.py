from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.clock import utcnow
from app.core.exceptions import ValidationError
from app.core.pagination import page_meta
from app.deps import get_services, require_admin
from app.models.account import Account
from app.services.container import Services

router = APIRouter()


class PolicyUpdateRequest(BaseModel):
    conversion_rate: Decimal | None = Field(default=None, gt=0)
    platform_fee_rate: Decimal | None = Field(default=None, ge=0, lt=1)
    gateway_fee_rate: Decimal | None = Field(default=None, ge=0, lt=1)
    gateway_fee_min: Decimal | None = Field(default=None, ge=0)
    gateway_fee_max: Decimal | None = Field(default=None, ge=0)
    min_payout_usd: Decimal | None = Field(default=None, gt=0)
    max_payout_usd: Decimal | None = Field(default=None, gt=0)
    payouts_enabled: bool | None = None


class BulkActionRequest(BaseModel):
    action: Literal["activate", "deactivate", "adjust-coins"]
    user_ids: list[str] = Field(min_length=1, max_length=1000)
    coin_adjustment: int | None = Field(default=None, ge=-100000, le=100000)
    reason: str | None = Field(default=None, max_length=500)


@router.get("/dashboard")
async def admin_dashboard(admin: Account = Depends(require_admin), services: Services = Depends(get_services)):
    return await services.reporting.admin_dashboard()


@router.get("/analytics")
async def admin_analytics(
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
    metric: Literal["users", "coins", "sessions", "payouts"] = Query("users"),
    timeframe: Literal["daily", "weekly", "monthly"] = Query("monthly"),
):
    data = await services.reporting.analytics(metric, timeframe)
    return {"metric": metric, "timeframe": timeframe, "data": data}


@router.get("/config")
async def admin_config(admin: Account = Depends(require_admin), services: Services = Depends(get_services)):
    policy = await services.payouts.policy()
    return {
        "policy": policy.model_dump(mode="json"),
        "gateway": services.gateway.name,
        "storage_backend": services.settings.storage_backend,
        "environment": services.settings.env,
    }


@router.put("/config")
async def admin_update_config(
    body: PolicyUpdateRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Admin: edit the payout policy; applies to requests made from now on."""
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if not fields:
        raise ValidationError("No configuration fields given")
    policy = await services.payouts.update_policy(fields, actor_id=admin.id)
    return {"policy": policy.model_dump(mode="json")}


@router.post("/users/bulk-action")
async def admin_bulk_action(
    body: BulkActionRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if body.action == "adjust-coins":
        if not body.coin_adjustment:
            raise ValidationError("Coin adjustment required")
        results = await services.balances.bulk_adjust(body.user_ids, body.coin_adjustment, body.reason, actor_id=admin.id)
    else:
        results = await services.accounts.set_active(body.user_ids, body.action == "activate", actor_id=admin.id)
    return {"action": body.action, "results": results}


@router.get("/export/{data_type}")
async def admin_export(
    data_type: str,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    limit: int = Query(1000, ge=1, le=10000),
):
    """Admin: JSON export of users, payouts, transactions, sessions or analytics."""
    data = await services.reporting.export(data_type, start=start_date, end=end_date, limit=limit)
    return {"data_type": data_type, "count": len(data), "data": data, "exported_at": utcnow().isoformat()}


@router.get("/audit")
async def admin_audit(
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
):
    events, total = await services.storage.list_audit(offset=(page - 1) * limit, limit=limit)
    return {
        "events": [e.model_dump(mode="json") for e in events],
        "pagination": page_meta(page, limit, total, len(events)),
    }


@router.post("/reconcile")
async def admin_reconcile_all(admin: Account = Depends(require_admin), services: Services = Depends(get_services)):
    """Admin: reconcile every account now; mismatched accounts are frozen."""
    mismatches = await services.balances.reconcile_all()
    return {"mismatches": [m.as_dict() for m in mismatches]}


@router.post("/payouts/refresh")
async def admin_refresh_payouts(admin: Account = Depends(require_admin), services: Services = Depends(get_services)):
    return await services.payouts.refresh_processing()


@router.get("/health")
async def admin_health(admin: Account = Depends(require_admin), services: Services = Depends(get_services)):
    database = await services.storage.ping()
    policy = await services.payouts.policy()
    return {
        "status": "healthy" if database else "degraded",
        "timestamp": utcnow().isoformat(),
        "database": "connected" if database else "unreachable",
        "services": {
            "gateway": services.gateway.name,
            "payouts_enabled": policy.payouts_enabled,
        },
    }
