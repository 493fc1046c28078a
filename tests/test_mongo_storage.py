"""MongoStorage against a live server; set MONGODB_TEST_URI to run.

Transactions need a replica set. Set MONGODB_TEST_TRANSACTIONS=false for a
standalone server.
"""

import asyncio
import os
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio

from app.core.config import Settings
from app.core.exceptions import InsufficientBalanceError
from app.models.ad_reward import AdRewardConfig
from app.services.container import build_services
from app.storage.base import LedgerQuery

MONGODB_TEST_URI = os.environ.get("MONGODB_TEST_URI")

pytestmark = pytest.mark.skipif(not MONGODB_TEST_URI, reason="MONGODB_TEST_URI not set")


@pytest_asyncio.fixture
async def mongo_services(gateway, clock):
    from app.storage.mongo import MongoStorage

    settings = Settings(
        _env_file=None,
        storage_backend="mongo",
        mongodb_uri=MONGODB_TEST_URI,
        mongodb_db_name=f"dropstrike_test_{uuid.uuid4().hex[:8]}",
        mongodb_transactions=os.environ.get("MONGODB_TEST_TRANSACTIONS", "true").lower() == "true",
        bcrypt_rounds=4,
    )
    storage = MongoStorage(settings)
    await storage.init()
    services = build_services(settings, storage=storage, gateway=gateway, clock=clock)
    yield services
    await storage._client.drop_database(settings.mongodb_db_name)
    await storage.close()


async def test_ping(mongo_services):
    assert await mongo_services.storage.ping()


async def test_credit_debit_and_ledger_agree(mongo_services):
    account = await mongo_services.accounts.register("Mo", "mo@example.com", "secret1", paypal_email="mo@example.com")
    await mongo_services.balances.credit(account.id, 300)
    await mongo_services.balances.debit(account.id, 120, kind="penalty", source="admin_adjustment")
    with pytest.raises(InsufficientBalanceError):
        await mongo_services.balances.debit(account.id, 500)

    assert await mongo_services.balances.get_balance(account.id) == 180
    assert await mongo_services.storage.sum_entries(LedgerQuery(account_id=account.id)) == 180
    entries = (await mongo_services.ledger.list_by_account(account.id)).items
    assert [e.balance_after for e in entries] == [300, 180]
    assert (await mongo_services.balances.reconcile(account.id)).ok


async def test_concurrent_debits_on_one_account(mongo_services):
    account = await mongo_services.accounts.register("Cy", "cy@example.com", "secret1")
    await mongo_services.balances.credit(account.id, 500)
    results = await asyncio.gather(
        *(mongo_services.balances.debit(account.id, 251) for _ in range(5)),
        return_exceptions=True,
    )
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert await mongo_services.balances.get_balance(account.id) == 249


async def test_payout_request_and_cancel_round_trip_decimals(mongo_services):
    account = await mongo_services.accounts.register("Di", "di@example.com", "secret1", paypal_email="di@example.com")
    await mongo_services.balances.credit(account.id, 2000)
    payout = await mongo_services.payouts.request_payout(account.id, Decimal("1.50"), "di@example.com")
    stored = await mongo_services.payouts.get_payout(payout.id)
    assert stored.requested_amount_usd == Decimal("1.50")
    assert stored.coins_deducted == 1500

    await mongo_services.payouts.cancel(payout.id, account_id=account.id)
    assert await mongo_services.balances.get_balance(account.id) == 2000
    assert (await mongo_services.payouts.get_payout(payout.id)).status == "cancelled"


async def test_session_coins_and_views_move_with_the_ledger(mongo_services):
    account = await mongo_services.accounts.register("Gi", "gi@example.com", "secret1")
    await mongo_services.ad_rewards.create(
        AdRewardConfig(ad_type="banner", ad_unit_id="bn-mongo", ad_unit_name="Banner", coin_reward=5), actor_id=None
    )
    session = await mongo_services.game.start(account)

    await asyncio.gather(
        mongo_services.game.update(account.id, session.id, coins_earned=50),
        mongo_services.game.update(account.id, session.id, coins_earned=60),
    )
    await asyncio.gather(
        *(
            mongo_services.game.record_ad_view(account.id, session.id, "banner", "bn-mongo", True, f"v{i}")
            for i in range(3)
        ),
        mongo_services.game.record_ad_view(account.id, session.id, "banner", "bn-mongo", False, "skipped"),
    )
    stored = await mongo_services.storage.get_session(session.id)
    assert stored.coins_earned == 75
    assert len(stored.ads_watched) == 4
    assert await mongo_services.balances.get_balance(account.id) == 75

    ended = await mongo_services.game.end(account.id, session.id)
    assert ended.is_completed
    assert await mongo_services.storage.end_session(session.id, ended.end_time) is None


async def test_leaderboard_pages_through_aggregation(mongo_services):
    ids = []
    for i, amount in enumerate((40, 90, 90, 10)):
        account = await mongo_services.accounts.register(f"P{i}", f"p{i}@example.com", "secret1", country="GB")
        await mongo_services.balances.credit(account.id, amount)
        ids.append((-amount, account.id))
    expected = [account_id for _, account_id in sorted(ids)]

    page = await mongo_services.reporting.leaderboard("daily", country="GB", offset=1, limit=2, account_id=expected[3])
    assert page["total"] == 4
    assert [r["account_id"] for r in page["leaderboard"]] == expected[1:3]
    assert page["current_user"] == {"rank": 4, "total_coins_earned": 10}

    all_time = await mongo_services.reporting.leaderboard("all-time", country="GB", limit=1, account_id=expected[1])
    assert [r["account_id"] for r in all_time["leaderboard"]] == expected[:1]
    assert all_time["current_user"]["rank"] == 2
