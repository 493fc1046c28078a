from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.pagination import page_meta
from app.deps import get_current_account, get_services, require_admin
from app.models.account import Account
from app.services.container import Services
from app.storage.base import PayoutQuery

router = APIRouter()

Status = Literal["pending", "processing", "completed", "failed", "cancelled"]


class PayoutRequest(BaseModel):
    amount_usd: Decimal = Field(gt=0, decimal_places=2)
    paypal_email: str | None = Field(default=None, max_length=254)


class ProcessRequest(BaseModel):
    admin_notes: str | None = Field(default=None, max_length=1000)


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class CompleteRequest(BaseModel):
    gateway_transaction_ref: str = Field(min_length=1, max_length=100)


class FailRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class NotesRequest(BaseModel):
    admin_notes: str = Field(max_length=1000)


@router.post("/request", status_code=201)
async def payouts_request(
    body: PayoutRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    """Debit the coins and open a pending payout to the given (or profile) PayPal address."""
    destination = body.paypal_email or account.paypal_email or ""
    payout = await services.payouts.request_payout(account.id, body.amount_usd, destination)
    balance = await services.balances.get_balance(account.id)
    return {"payout": payout.public_dict(), "remaining_coins": balance}


@router.get("/history")
async def payouts_history(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Status | None = Query(None),
):
    result, summary = await services.payouts.history(account.id, status, offset=(page - 1) * limit, limit=limit)
    return {
        "payouts": [p.public_dict() for p in result.items],
        "pagination": page_meta(page, limit, result.total or 0, len(result.items)),
        "summary": [
            {"status": r["status"], "count": r["count"], "total_amount": str(r["total_usd"])} for r in summary
        ],
    }


@router.get("/config/info")
async def payouts_config_info(account: Account = Depends(get_current_account), services: Services = Depends(get_services)):
    return await services.payouts.config_info(account)


# Admin


@router.get("/admin/all")
async def admin_payouts_list(
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    status: Status | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    min_amount: Decimal | None = Query(None, ge=0),
    max_amount: Decimal | None = Query(None, ge=0),
):
    query = PayoutQuery(
        statuses=(status,) if status else None,
        start=start_date,
        end=end_date,
        min_amount_usd=min_amount,
        max_amount_usd=max_amount,
    )
    result = await services.payouts.list_all(query, offset=(page - 1) * limit, limit=limit)
    stats = await services.payouts.stats()
    return {
        "payouts": [p.model_dump(mode="json") for p in result.items],
        "pagination": page_meta(page, limit, result.total or 0, len(result.items)),
        "stats": [{"status": r["status"], "count": r["count"], "total_amount": str(r["total_usd"])} for r in stats],
    }


@router.post("/admin/{payout_id}/process")
async def admin_payout_process(
    payout_id: str,
    body: ProcessRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Admin: send through the gateway. 502 marks the payout failed; 504 leaves it processing."""
    payout = await services.payouts.process(payout_id, admin_notes=body.admin_notes, actor_id=admin.id)
    return {"payout": payout.model_dump(mode="json")}


@router.post("/admin/{payout_id}/reject")
async def admin_payout_reject(
    payout_id: str,
    body: RejectRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    payout = await services.payouts.reject(payout_id, body.reason, actor_id=admin.id)
    return {"payout": payout.model_dump(mode="json"), "coins_returned": payout.coins_deducted}


@router.post("/admin/{payout_id}/refresh")
async def admin_payout_refresh(
    payout_id: str, admin: Account = Depends(require_admin), services: Services = Depends(get_services)
):
    payout = await services.payouts.refresh_status(payout_id)
    return {"payout": payout.model_dump(mode="json")}


@router.post("/admin/{payout_id}/complete")
async def admin_payout_complete(
    payout_id: str,
    body: CompleteRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    payout = await services.payouts.resolve_manually(
        payout_id, True, actor_id=admin.id, gateway_transaction_ref=body.gateway_transaction_ref
    )
    return {"payout": payout.model_dump(mode="json")}


@router.post("/admin/{payout_id}/fail")
async def admin_payout_fail(
    payout_id: str,
    body: FailRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Admin: mark failed without refunding; reject afterwards returns the coins."""
    payout = await services.payouts.resolve_manually(payout_id, False, actor_id=admin.id, reason=body.reason)
    return {"payout": payout.model_dump(mode="json")}


@router.put("/admin/{payout_id}/notes")
async def admin_payout_notes(
    payout_id: str,
    body: NotesRequest,
    admin: Account = Depends(require_admin),
    services: Services = Depends(get_services),
):
    payout = await services.payouts.set_admin_notes(payout_id, body.admin_notes)
    return {"payout": payout.model_dump(mode="json")}


# Per-payout user routes last so /config/info and /admin/... match first.


@router.get("/{payout_id}")
async def payouts_detail(
    payout_id: str, account: Account = Depends(get_current_account), services: Services = Depends(get_services)
):
    payout = await services.payouts.get_payout(payout_id, account_id=account.id)
    return {"payout": payout.public_dict()}


@router.post("/{payout_id}/cancel")
async def payouts_cancel(
    payout_id: str, account: Account = Depends(get_current_account), services: Services = Depends(get_services)
):
    payout = await services.payouts.cancel(payout_id, account_id=account.id)
    balance = await services.balances.get_balance(account.id)
    return {"payout": payout.public_dict(), "coins_returned": payout.coins_deducted, "balance": balance}
