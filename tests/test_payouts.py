"""Payout lifecycle: request, cancel, reject, gateway processing."""

import asyncio
from decimal import Decimal

import pytest

from app.core.exceptions import (
    AmountTooSmallError,
    BadRequestError,
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    InsufficientBalanceError,
    IntegrityError,
    InvalidAddressError,
    InvalidStateError,
    NotFoundError,
    OutOfRangeError,
    ValidationError,
)
from app.services.gateway import GatewayStatus
from app.services.payouts import refund_key
from app.storage.base import Changeset, LedgerQuery, PayoutQuery

DEST = "winner@example.com"


async def entries_of(services, account_id):
    return (await services.ledger.list_by_account(account_id, limit=500)).items


async def assert_conserved(services, account_id):
    balance = await services.balances.get_balance(account_id)
    assert balance == await services.storage.sum_entries(LedgerQuery(account_id=account_id))


async def test_request_without_enough_coins_creates_nothing(services, make_account):
    account = await make_account()
    await services.balances.credit(account.id, 50, "earned", "rewarded_video")
    with pytest.raises(InsufficientBalanceError) as exc_info:
        await services.payouts.request_payout(account.id, Decimal("1.00"), DEST)
    assert exc_info.value.details["required"] == 1000
    assert exc_info.value.details["shortfall"] == 950
    _, total = await services.storage.list_payouts(PayoutQuery(account_id=account.id))
    assert total == 0
    assert await services.balances.get_balance(account.id) == 50


async def test_request_debits_and_opens_pending_payout(services, make_account):
    account = await make_account()
    await services.balances.credit(account.id, 50, "earned", "rewarded_video")
    await services.balances.credit(account.id, 950, "earned", "rewarded_video")

    payout = await services.payouts.request_payout(account.id, Decimal("1.00"), DEST)
    assert payout.status == "pending"
    assert payout.coins_deducted == 1000
    assert payout.net_amount_usd == Decimal("0.70")
    assert payout.fees.gateway_fee == Decimal("0.25")
    assert payout.fees.platform_fee == Decimal("0.05")
    assert payout.conversion_rate_at_request == Decimal("0.001")
    assert await services.balances.get_balance(account.id) == 0

    debit = (await entries_of(services, account.id))[-1]
    assert debit.id == payout.ledger_entry_id
    assert debit.amount == -1000
    assert debit.kind == "spent"
    assert debit.source == "payout"
    assert debit.payout_id == payout.id
    await assert_conserved(services, account.id)


async def test_gateway_failure_then_reject_refunds(services, make_account, gateway):
    account = await make_account(balance=1000)
    payout = await services.payouts.request_payout(account.id, "1.00", DEST)

    gateway.error = GatewayError("Receiver account is restricted")
    with pytest.raises(GatewayError):
        await services.payouts.process(payout.id)
    failed = await services.payouts.get_payout(payout.id)
    assert failed.status == "failed"
    assert failed.failure_reason == "Receiver account is restricted"
    assert await services.balances.get_balance(account.id) == 0

    rejected = await services.payouts.reject(payout.id, "Gateway refused", actor_id="admin-1")
    assert rejected.status == "failed"
    assert rejected.refund_entry_id is not None
    assert await services.balances.get_balance(account.id) == 1000
    refund = (await entries_of(services, account.id))[-1]
    assert refund.source == "payout_rejected"
    assert refund.amount == 1000
    assert refund.idempotency_key == refund_key(payout.id)
    await assert_conserved(services, account.id)

    with pytest.raises(InvalidStateError):
        await services.payouts.reject(payout.id, "again", actor_id="admin-1")
    assert await services.balances.get_balance(account.id) == 1000


async def test_gateway_error_surfaces_when_rejected_during_send(services, make_account, gateway):
    account = await make_account(balance=1000)
    payout = await services.payouts.request_payout(account.id, "1.00", DEST)

    async def refuse_after_reject(destination, amount_usd, memo, reference):
        await services.payouts.reject(payout.id, "fraud review", actor_id="admin-1")
        raise GatewayError("Receiver account is restricted")

    gateway.send_payout = refuse_after_reject
    with pytest.raises(GatewayError) as exc:
        await services.payouts.process(payout.id)
    assert exc.value.reason == "Receiver account is restricted"

    stored = await services.payouts.get_payout(payout.id)
    assert stored.status == "failed"
    assert stored.failure_reason == "fraud review"
    assert await services.balances.get_balance(account.id) == 1000
    await assert_conserved(services, account.id)


async def test_only_one_open_payout(services, make_account):
    account = await make_account(balance=5000)
    first = await services.payouts.request_payout(account.id, "1.00", DEST)
    with pytest.raises(ConflictError) as exc_info:
        await services.payouts.request_payout(account.id, "1.00", DEST)
    assert exc_info.value.details["payout_id"] == first.id
    assert await services.balances.get_balance(account.id) == 4000

    await services.payouts.cancel(first.id, account.id)
    second = await services.payouts.request_payout(account.id, "2.00", DEST)
    assert second.status == "pending"


async def test_concurrent_requests_open_a_single_payout(services, make_account):
    account = await make_account(balance=10000)
    results = await asyncio.gather(
        *(services.payouts.request_payout(account.id, "1.00", DEST) for _ in range(5)),
        return_exceptions=True,
    )
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))
    _, total = await services.storage.list_payouts(PayoutQuery(account_id=account.id))
    assert total == 1
    assert await services.balances.get_balance(account.id) == 9000


async def test_cancel_refunds_once(services, make_account):
    account = await make_account(balance=3000)
    payout = await services.payouts.request_payout(account.id, "2.50", DEST)
    assert await services.balances.get_balance(account.id) == 500

    cancelled = await services.payouts.cancel(payout.id, account.id)
    assert cancelled.status == "cancelled"
    assert cancelled.completed_at is not None
    assert await services.balances.get_balance(account.id) == 3000

    with pytest.raises(InvalidStateError):
        await services.payouts.cancel(payout.id, account.id)
    assert await services.balances.get_balance(account.id) == 3000
    refunds = [e for e in await entries_of(services, account.id) if e.source == "payout_cancelled"]
    assert len(refunds) == 1
    await assert_conserved(services, account.id)


async def test_concurrent_cancel_and_reject_refund_once(services, make_account):
    account = await make_account(balance=1000)
    payout = await services.payouts.request_payout(account.id, "1.00", DEST)
    results = await asyncio.gather(
        services.payouts.cancel(payout.id, account.id),
        services.payouts.reject(payout.id, "duplicate account", actor_id="admin-1"),
        return_exceptions=True,
    )
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert await services.balances.get_balance(account.id) == 1000
    await assert_conserved(services, account.id)


async def test_cancel_requires_owner_and_pending(services, make_account):
    owner = await make_account(balance=1000)
    other = await make_account()
    payout = await services.payouts.request_payout(owner.id, "1.00", DEST)
    with pytest.raises(NotFoundError):
        await services.payouts.cancel(payout.id, other.id)
    await services.payouts.process(payout.id)
    with pytest.raises(InvalidStateError):
        await services.payouts.cancel(payout.id, owner.id)


async def test_process_completes_through_gateway(services, make_account, gateway):
    account = await make_account(balance=20000)
    payout = await services.payouts.request_payout(account.id, "10.00", DEST, metadata={"ip": "10.0.0.1"})
    done = await services.payouts.process(payout.id, admin_notes="looks fine", actor_id="admin-1")
    assert done.status == "completed"
    assert done.gateway_transaction_ref.startswith("BATCH-")
    assert done.processed_at is not None
    assert done.completed_at is not None
    assert done.admin_notes == "looks fine"
    assert gateway.sent == [{"destination": DEST, "amount_usd": Decimal("9.25"), "reference": payout.id}]
    assert await services.balances.get_balance(account.id) == 10000

    # completing again with the same reference is a no-op
    again = await services.payouts.mark_completed(payout.id, done.gateway_transaction_ref)
    assert again.completed_at == done.completed_at
    with pytest.raises(InvalidStateError):
        await services.payouts.mark_completed(payout.id, "OTHER-REF")
    with pytest.raises(InvalidStateError):
        await services.payouts.reject(payout.id, "too late")


async def test_gateway_timeout_leaves_payout_processing(services, make_account, gateway):
    account = await make_account(balance=1000)
    payout = await services.payouts.request_payout(account.id, "1.00", DEST)
    gateway.error = GatewayTimeoutError()
    with pytest.raises(GatewayTimeoutError):
        await services.payouts.process(payout.id)

    pending = await services.payouts.get_payout(payout.id)
    assert pending.status == "processing"
    assert "gateway_timeout_at" in pending.metadata
    assert await services.balances.get_balance(account.id) == 0

    with pytest.raises(InvalidStateError):
        await services.payouts.refresh_status(payout.id)
    resolved = await services.payouts.resolve_manually(
        payout.id, completed=True, actor_id="admin-1", gateway_transaction_ref="MANUAL-1"
    )
    assert resolved.status == "completed"
    assert resolved.gateway_transaction_ref == "MANUAL-1"
    events, _ = await services.storage.list_audit()
    assert events[0].event_type == "payout_resolved"


async def test_accepted_payout_settles_on_refresh(services, make_account, gateway, clock):
    account = await make_account(balance=2000)
    payout = await services.payouts.request_payout(account.id, "2.00", DEST)
    gateway.receipt_status = "processing"
    accepted = await services.payouts.process(payout.id)
    assert accepted.status == "processing"
    assert accepted.gateway_transaction_ref

    gateway.remote_status = GatewayStatus(status="processing", raw_status="PENDING")
    assert (await services.payouts.refresh_status(payout.id)).status == "processing"

    gateway.remote_status = GatewayStatus(status="failed", reason="Receiver unclaimed", raw_status="RETURNED")
    counts = await services.payouts.refresh_processing()
    assert counts == {"checked": 1, "resolved": 1, "stuck": 0, "errors": 0}
    failed = await services.payouts.get_payout(payout.id)
    assert failed.status == "failed"
    assert failed.failure_reason == "Receiver unclaimed"
    # failure does not refund by itself
    assert await services.balances.get_balance(account.id) == 0
    await services.payouts.reject(payout.id, "Returned by PayPal", actor_id="admin-1")
    assert await services.balances.get_balance(account.id) == 2000


async def test_refresh_processing_reports_stuck_payouts(services, make_account, gateway, clock):
    account = await make_account(balance=1000)
    payout = await services.payouts.request_payout(account.id, "1.00", DEST)
    gateway.error = GatewayTimeoutError()
    with pytest.raises(GatewayTimeoutError):
        await services.payouts.process(payout.id)
    clock.advance(hours=1)
    counts = await services.payouts.refresh_processing()
    assert counts["stuck"] == 1
    assert counts["checked"] == 0
    assert gateway.status_checks == []


async def test_amount_bounds_and_destination(services, make_account):
    account = await make_account(balance=100000)
    with pytest.raises(OutOfRangeError) as exc_info:
        await services.payouts.request_payout(account.id, "0.99", DEST)
    assert exc_info.value.details == {"min": "1.00", "max": "10000.00"}
    with pytest.raises(OutOfRangeError):
        await services.payouts.request_payout(account.id, "10000.01", DEST)
    with pytest.raises(InvalidAddressError):
        await services.payouts.request_payout(account.id, "1.00", "not-an-email")
    with pytest.raises(ValidationError):
        await services.payouts.request_payout(account.id, "one dollar", DEST)
    assert await services.balances.get_balance(account.id) == 100000


async def test_amount_too_small_after_fees(services, make_account):
    await services.payouts.update_policy({"min_payout_usd": Decimal("0.10")}, actor_id="admin-1")
    account = await make_account(balance=1000)
    with pytest.raises(AmountTooSmallError):
        await services.payouts.request_payout(account.id, "0.25", DEST)
    assert await services.balances.get_balance(account.id) == 1000


async def test_policy_changes_apply_to_new_requests_only(services, make_account):
    account = await make_account(balance=10000)
    old = await services.payouts.request_payout(account.id, "1.00", DEST)
    await services.payouts.update_policy({"conversion_rate": Decimal("0.002")}, actor_id="admin-1")
    await services.payouts.cancel(old.id, account.id)
    new = await services.payouts.request_payout(account.id, "1.00", DEST)
    assert new.coins_deducted == 500
    assert (await services.payouts.get_payout(old.id)).conversion_rate_at_request == Decimal("0.001")

    with pytest.raises(ValidationError):
        await services.payouts.update_policy({"min_payout_usd": Decimal("50000")}, actor_id="admin-1")


async def test_disabled_payouts(services, make_account):
    await services.payouts.update_policy({"payouts_enabled": False}, actor_id="admin-1")
    account = await make_account(balance=1000)
    with pytest.raises(BadRequestError) as exc_info:
        await services.payouts.request_payout(account.id, "1.00", DEST)
    assert exc_info.value.code == "PAYOUTS_DISABLED"


async def test_frozen_account_cannot_request(services, make_account):
    account = await make_account(balance=1000)
    current = await services.storage.get_account(account.id)
    await services.storage.commit(
        Changeset(
            account_id=account.id,
            expected_version=current.version,
            balance=current.balance,
            total_earned=current.total_earned,
            frozen=True,
            frozen_reason="manual hold",
        )
    )
    with pytest.raises(IntegrityError):
        await services.payouts.request_payout(account.id, "1.00", DEST)
    _, total = await services.storage.list_payouts(PayoutQuery(account_id=account.id))
    assert total == 0


async def test_admin_notes_any_state_and_history(services, make_account):
    account = await make_account(balance=3000)
    payout = await services.payouts.request_payout(account.id, "1.00", DEST)
    await services.payouts.cancel(payout.id, account.id)
    noted = await services.payouts.set_admin_notes(payout.id, "user changed their mind")
    assert noted.admin_notes == "user changed their mind"
    await services.payouts.request_payout(account.id, "2.00", DEST)

    page, summary = await services.payouts.history(account.id)
    assert page.total == 2
    assert {r["status"]: r["count"] for r in summary} == {"cancelled": 1, "pending": 1}
    pending_only, _ = await services.payouts.history(account.id, status="pending")
    assert pending_only.total == 1
    with pytest.raises(ValidationError):
        await services.payouts.history(account.id, status="lost")
