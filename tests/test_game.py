"""Game sessions and in-session ad views."""

import asyncio

import pytest

from app.core.exceptions import NotFoundError, StaleWriteError, ValidationError
from app.models.game_session import AdView
from app.services.container import build_services
from app.services.eligibility import DAILY_LIMIT_REACHED
from app.storage.base import Changeset, SessionWrite
from app.storage.memory import MemoryStorage


class YieldingStorage(MemoryStorage):
    """Hands control to other tasks before each session read or write, like a network round trip."""

    async def get_session(self, session_id):
        await asyncio.sleep(0)
        return await super().get_session(session_id)

    async def push_session_view(self, session_id, view):
        await asyncio.sleep(0)
        return await super().push_session_view(session_id, view)

    async def update_session_stats(self, session_id, stats):
        await asyncio.sleep(0)
        return await super().update_session_stats(session_id, stats)


@pytest.fixture
def storage() -> MemoryStorage:
    return YieldingStorage()


async def test_start_closes_previous_open_session(services, make_account, clock):
    account = await make_account()
    first = await services.game.start(account, ip_address="10.0.0.1", country="DE")
    clock.advance(minutes=3)
    second = await services.game.start(account)

    old = await services.storage.get_session(first.id)
    assert old.is_completed
    assert old.duration_seconds == 180
    assert second.country == account.country
    with pytest.raises(NotFoundError):
        await services.game.update(account.id, first.id, coins_earned=10)


async def test_reported_coins_credit_only_the_increase(services, make_account):
    account = await make_account()
    session = await services.game.start(account)

    await services.game.update(account.id, session.id, coins_earned=30)
    await services.game.update(account.id, session.id, coins_earned=30)
    await services.game.update(account.id, session.id, coins_earned=20)
    updated = await services.game.update(account.id, session.id, {"highest_score": 900}, coins_earned=45)

    assert updated.coins_earned == 45
    assert updated.game_stats.highest_score == 900
    assert await services.balances.get_balance(account.id) == 45
    entries = (await services.ledger.list_by_account(account.id)).items
    assert [e.amount for e in entries] == [30, 15]
    assert {e.source for e in entries} == {"game_completion"}
    assert {e.game_session_id for e in entries} == {session.id}

    with pytest.raises(ValidationError):
        await services.game.update(account.id, session.id, coins_earned=-1)


async def test_ad_view_is_rewarded_once_per_view_id(services, make_account, make_ad_unit):
    account = await make_account()
    await make_ad_unit("rv-game", coin_reward=40)
    session = await services.game.start(account)

    first = await services.game.record_ad_view(account.id, session.id, "rewarded_video", "rv-game", True, "v-1")
    again = await services.game.record_ad_view(account.id, session.id, "rewarded_video", "rv-game", True, "v-1")
    assert first["coins_rewarded"] == 40
    assert not first["duplicate"]
    assert again["duplicate"]
    assert again["coins_rewarded"] == 40
    assert await services.balances.get_balance(account.id) == 40

    stored = await services.storage.get_session(session.id)
    assert len(stored.ads_watched) == 1
    assert stored.coins_earned == 40


async def test_ad_view_outcomes_without_reward(services, make_account, make_ad_unit):
    account = await make_account()
    await make_ad_unit("rv-once", coin_reward=40, daily_limit=1)
    session = await services.game.start(account)

    skipped = await services.game.record_ad_view(account.id, session.id, "rewarded_video", "rv-once", False, "v-1")
    assert skipped["coins_rewarded"] == 0
    assert skipped["reason"] is None

    mismatch = await services.game.record_ad_view(account.id, session.id, "banner", "rv-once", True, "v-2")
    assert mismatch["reason"] == "ad_type_mismatch"

    await services.game.record_ad_view(account.id, session.id, "rewarded_video", "rv-once", True, "v-3")
    limited = await services.game.record_ad_view(account.id, session.id, "rewarded_video", "rv-once", True, "v-4")
    assert limited["coins_rewarded"] == 0
    assert limited["reason"] == DAILY_LIMIT_REACHED
    assert limited["next_available_at"] == "2024-05-16T00:00:00"

    with pytest.raises(ValidationError):
        await services.game.record_ad_view(account.id, session.id, "popup", "rv-once", True, "v-5")
    assert await services.balances.get_balance(account.id) == 40


async def test_end_adds_engagement_and_raises_level(services, make_account, clock):
    account = await make_account()
    session = await services.game.start(account)
    await services.game.update(account.id, session.id, {"levels_completed": 3})
    clock.advance(seconds=95)

    ended = await services.game.end(account.id, session.id)
    assert ended.is_completed
    assert ended.duration_seconds == 95

    account = await services.accounts.get(account.id)
    assert account.total_engagement_seconds == 95
    assert account.level == 3
    with pytest.raises(NotFoundError):
        await services.game.end(account.id, session.id)


async def test_sessions_are_private(services, make_account):
    owner = await make_account()
    other = await make_account()
    session = await services.game.start(owner)
    with pytest.raises(NotFoundError):
        await services.game.update(other.id, session.id, coins_earned=5)

    page = await services.game.history(owner.id)
    assert page.total == 1
    assert (await services.game.history(other.id)).total == 0


async def test_concurrent_coin_reports_credit_the_highest_total_once(services, make_account):
    account = await make_account()
    session = await services.game.start(account)

    await asyncio.gather(
        services.game.update(account.id, session.id, coins_earned=50),
        services.game.update(account.id, session.id, coins_earned=60),
    )
    assert await services.balances.get_balance(account.id) == 60
    assert (await services.storage.get_session(session.id)).coins_earned == 60
    assert (await services.balances.reconcile(account.id)).ok


async def test_coin_reports_from_two_processes_credit_once(services, settings, storage, gateway, clock, make_account):
    # A second container over the same storage has its own account locks
    other = build_services(settings, storage=storage, gateway=gateway, clock=clock)
    account = await make_account()
    session = await services.game.start(account)

    await asyncio.gather(
        services.game.update(account.id, session.id, coins_earned=50),
        other.game.update(account.id, session.id, coins_earned=60),
    )
    assert await services.balances.get_balance(account.id) == 60
    assert (await storage.get_session(session.id)).coins_earned == 60


async def test_commit_with_stale_session_total_changes_nothing(services, make_account):
    account = await make_account(balance=10)
    session = await services.game.start(account)
    await services.game.update(account.id, session.id, coins_earned=30)
    current = await services.storage.get_account(account.id)

    with pytest.raises(StaleWriteError):
        await services.storage.commit(
            Changeset(
                account_id=account.id,
                expected_version=current.version,
                balance=current.balance + 5,
                total_earned=current.total_earned + 5,
                session=SessionWrite(session_id=session.id, expected_coins=0, coins=35),
            )
        )
    assert await services.balances.get_balance(account.id) == 40
    assert (await services.storage.get_session(session.id)).coins_earned == 30


async def test_concurrent_ad_views_are_all_recorded(services, make_account, make_ad_unit):
    account = await make_account()
    await make_ad_unit("bn-1", coin_reward=5, ad_type="banner")
    session = await services.game.start(account)

    results = await asyncio.gather(
        *(services.game.record_ad_view(account.id, session.id, "banner", "bn-1", True, f"v{i}") for i in range(3))
    )
    assert [r["coins_rewarded"] for r in results] == [5, 5, 5]
    assert await services.balances.get_balance(account.id) == 15
    stored = await services.storage.get_session(session.id)
    assert sorted(v.view_id for v in stored.ads_watched) == ["v0", "v1", "v2"]
    assert stored.coins_earned == 15


async def test_concurrent_unrewarded_views_and_stats_are_kept(services, make_account):
    account = await make_account()
    session = await services.game.start(account)

    await asyncio.gather(
        *(
            services.game.record_ad_view(account.id, session.id, "interstitial", "int-1", False, f"v{i}")
            for i in range(3)
        ),
        services.game.update(account.id, session.id, {"highest_score": 700}),
        services.game.update(account.id, session.id, {"balls_dropped": 12}),
    )
    stored = await services.storage.get_session(session.id)
    assert len(stored.ads_watched) == 3
    assert stored.game_stats.highest_score == 700
    assert stored.game_stats.balls_dropped == 12


async def test_same_view_reported_twice_at_once_pays_once(services, make_account, make_ad_unit):
    account = await make_account()
    await make_ad_unit("rv-race", coin_reward=40)
    session = await services.game.start(account)

    results = await asyncio.gather(
        services.game.record_ad_view(account.id, session.id, "rewarded_video", "rv-race", True, "v-1"),
        services.game.record_ad_view(account.id, session.id, "rewarded_video", "rv-race", True, "v-1"),
    )
    assert sorted(r["duplicate"] for r in results) == [False, True]
    assert await services.balances.get_balance(account.id) == 40
    stored = await services.storage.get_session(session.id)
    assert len(stored.ads_watched) == 1
    assert stored.coins_earned == 40


async def test_closed_session_takes_no_views(services, make_account):
    account = await make_account()
    session = await services.game.start(account)
    await services.game.end(account.id, session.id)

    view = AdView(ad_type="banner", ad_unit_id="bn-1", view_id="late")
    assert await services.storage.push_session_view(session.id, view) is None
    assert await services.storage.update_session_stats(session.id, {"highest_score": 1}) is None
    assert await services.storage.end_session(session.id, session.start_time) is None
