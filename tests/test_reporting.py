"""Leaderboards: ranking order, paging and the caller's own rank."""


async def seed(services, make_account) -> dict[str, int]:
    totals = {}
    for amount in (50, 300, 120, 300, 10):
        account = await make_account(country="GB")
        await services.balances.credit(account.id, amount)
        totals[account.id] = amount
    outsider = await make_account(country="FR")
    await services.balances.credit(outsider.id, 999)
    retired = await make_account(country="GB", is_active=False)
    await services.balances.credit(retired.id, 999)
    return totals


def ranked(totals: dict[str, int]) -> list[str]:
    return sorted(totals, key=lambda account_id: (-totals[account_id], account_id))


async def test_all_time_leaderboard_pages_in_rank_order(services, make_account):
    totals = await seed(services, make_account)
    expected = ranked(totals)

    first = await services.reporting.leaderboard("all-time", country="gb", offset=0, limit=2, account_id=expected[3])
    second = await services.reporting.leaderboard("all-time", country="gb", offset=2, limit=2)
    assert first["total"] == second["total"] == 5
    assert first["country"] == "GB"
    assert [r["account_id"] for r in first["leaderboard"] + second["leaderboard"]] == expected[:4]
    assert [r["rank"] for r in second["leaderboard"]] == [3, 4]
    assert first["current_user"] == {"rank": 4, "total_coins_earned": totals[expected[3]]}
    assert second["current_user"] is None


async def test_window_leaderboard_ranks_caller_outside_the_page(services, make_account):
    totals = await seed(services, make_account)
    expected = ranked(totals)

    board = await services.reporting.leaderboard("daily", country="GB", offset=1, limit=1, account_id=expected[-1])
    assert board["total"] == 5
    assert [(r["account_id"], r["rank"]) for r in board["leaderboard"]] == [(expected[1], 2)]
    assert board["leaderboard"][0]["transaction_count"] == 1
    assert board["current_user"] == {"rank": 5, "total_coins_earned": 10}

    everywhere = await services.reporting.leaderboard("weekly", limit=1)
    assert everywhere["total"] == 6
    assert everywhere["leaderboard"][0]["total_coins_earned"] == 999


async def test_caller_filtered_out_has_no_rank(services, make_account):
    await seed(services, make_account)
    french = await make_account(country="FR")
    await services.balances.credit(french.id, 5)

    board = await services.reporting.leaderboard("all-time", country="GB", account_id=french.id)
    assert board["current_user"] is None
    window = await services.reporting.leaderboard("monthly", country="GB", account_id=french.id)
    assert window["current_user"] is None
