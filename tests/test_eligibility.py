"""Ad reward eligibility and grants."""

import asyncio
from datetime import datetime

from app.services.eligibility import COOLDOWN_ACTIVE, DAILY_LIMIT_REACHED, LEVEL_TOO_LOW, NOT_FOUND
from conftest import NOW


async def test_daily_limit_on_same_utc_day(services, make_account, make_ad_unit, clock):
    account = await make_account()
    await make_ad_unit("rv-daily", coin_reward=25, daily_limit=1)

    first = await services.eligibility.grant_reward(account.id, "rv-daily")
    assert first.allowed
    assert first.coins_granted == 25
    assert first.balance == 25

    clock.advance(hours=11, minutes=59)  # 23:59 UTC
    second = await services.eligibility.grant_reward(account.id, "rv-daily")
    assert not second.allowed
    assert second.reason == DAILY_LIMIT_REACHED
    assert second.coins_granted == 0
    assert second.next_available_at == datetime(2024, 5, 16)

    clock.advance(minutes=1)  # next UTC day
    assert (await services.eligibility.grant_reward(account.id, "rv-daily")).allowed
    assert await services.balances.get_balance(account.id) == 50


async def test_cooldown(services, make_account, make_ad_unit, clock):
    account = await make_account()
    await make_ad_unit("rv-cool", cooldown_minutes=10)
    assert (await services.eligibility.grant_reward(account.id, "rv-cool")).allowed

    clock.advance(minutes=9)
    blocked = await services.eligibility.check_eligibility(account.id, "rv-cool", 0)
    assert not blocked.allowed
    assert blocked.reason == COOLDOWN_ACTIVE
    assert blocked.next_available_at == NOW.replace(minute=10)

    clock.advance(minutes=1)
    assert (await services.eligibility.check_eligibility(account.id, "rv-cool", 0)).allowed


async def test_level_and_unknown_units(services, make_account, make_ad_unit):
    account = await make_account()
    await make_ad_unit("rv-pro", min_level=5)
    await make_ad_unit("rv-off", is_active=False)

    low = await services.eligibility.check_eligibility(account.id, "rv-pro", 4)
    assert low.reason == LEVEL_TOO_LOW
    assert (await services.eligibility.check_eligibility(account.id, "rv-pro", 5)).allowed
    assert (await services.eligibility.check_eligibility(account.id, "nope", 9)).reason == NOT_FOUND
    assert (await services.eligibility.check_eligibility(account.id, "rv-off", 9)).reason == NOT_FOUND

    # grant_reward uses the stored level unless told otherwise
    denied = await services.eligibility.grant_reward(account.id, "rv-pro")
    assert denied.reason == LEVEL_TOO_LOW
    await services.accounts.add_engagement(account.id, 60, level=5)
    assert (await services.eligibility.grant_reward(account.id, "rv-pro")).allowed


async def test_check_is_read_only_and_repeatable(services, make_account, make_ad_unit):
    account = await make_account()
    await make_ad_unit("rv-det", daily_limit=2)
    await services.eligibility.grant_reward(account.id, "rv-det")
    decisions = [await services.eligibility.check_eligibility(account.id, "rv-det", 0) for _ in range(5)]
    assert {(d.allowed, d.reason) for d in decisions} == {(True, None)}
    assert await services.balances.get_balance(account.id) == 50


async def test_concurrent_grants_respect_daily_limit(services, make_account, make_ad_unit):
    account = await make_account()
    await make_ad_unit("rv-burst", coin_reward=10, daily_limit=3)
    results = await asyncio.gather(*(services.eligibility.grant_reward(account.id, "rv-burst") for _ in range(8)))
    assert sum(1 for r in results if r.allowed) == 3
    assert await services.balances.get_balance(account.id) == 30


async def test_idempotent_grant_and_analytics_counters(services, make_account, make_ad_unit):
    account = await make_account()
    unit = await make_ad_unit("int-1", coin_reward=15, ad_type="interstitial")
    first = await services.eligibility.grant_reward(account.id, "int-1", idempotency_key="view-1")
    again = await services.eligibility.grant_reward(account.id, "int-1", idempotency_key="view-1")
    assert again.duplicate
    assert again.entry_id == first.entry_id
    assert await services.balances.get_balance(account.id) == 15

    entry = (await services.ledger.list_by_account(account.id)).items[0]
    assert entry.source == "interstitial_ad"
    assert entry.ad_unit_id == "int-1"

    stored = await services.storage.get_ad_config("int-1")
    assert stored.analytics.total_rewards_given == 1
    assert stored.analytics.total_coins_distributed == 15
    report = await services.ad_rewards.analytics()
    row = next(u for u in report["ad_units"] if u["id"] == unit.id)
    assert row["consistent"]
    assert report["by_type"]["interstitial"]["total_coins_distributed"] == 15
