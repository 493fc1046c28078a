"""Background jobs run against in-memory services."""

from decimal import Decimal

import pytest

from app.storage.base import Changeset
from app.worker.tasks import poll_processing_payouts, reconcile_accounts, shutdown, startup


async def test_reconcile_job_reports_and_freezes(services, make_account):
    await make_account(balance=10)
    drifted = await make_account(balance=10)
    current = await services.storage.get_account(drifted.id)
    await services.storage.commit(
        Changeset(account_id=drifted.id, expected_version=current.version, balance=11, total_earned=current.total_earned)
    )

    result = await reconcile_accounts({"services": services})
    assert result == {"mismatches": [drifted.id]}
    assert (await services.accounts.get(drifted.id)).frozen


async def test_poll_job_settles_accepted_payouts(services, make_account, gateway):
    account = await make_account(balance=1000)
    payout = await services.payouts.request_payout(account.id, Decimal("1.00"), account.paypal_email)
    gateway.receipt_status = "processing"
    await services.payouts.process(payout.id)

    counts = await poll_processing_payouts({"services": services})
    assert counts["resolved"] == 1
    assert (await services.payouts.get_payout(payout.id)).status == "completed"


async def test_failed_job_is_audited_and_reraised(services, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("gateway client misconfigured")

    monkeypatch.setattr(services.payouts, "refresh_processing", broken)
    with pytest.raises(RuntimeError):
        await poll_processing_payouts({"services": services, "job_id": "job-7"})

    events, _ = await services.storage.list_audit()
    assert events[0].event_type == "job_failed"
    assert events[0].entity_id == "job-7"
    assert events[0].metadata == {"job": "poll_processing_payouts", "reason": "gateway client misconfigured"}


async def test_startup_and_shutdown_manage_services():
    ctx: dict = {}
    await startup(ctx)
    assert ctx["services"].settings.storage_backend == "memory"
    await shutdown(ctx)
    assert "services" not in ctx
