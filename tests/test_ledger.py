"""Ledger entry validation and reads."""

import pytest
from pydantic import ValidationError as SchemaError

from app.core.exceptions import ValidationError
from app.services.ledger import new_entry


def test_new_entry_rejects_zero_amount():
    with pytest.raises(ValidationError):
        new_entry("acct", 0, "earned", "rewarded_video", 0)


def test_new_entry_rejects_unknown_kind_and_source():
    with pytest.raises(ValidationError):
        new_entry("acct", 5, "gift", "rewarded_video", 5)
    with pytest.raises(ValidationError):
        new_entry("acct", 5, "earned", "lottery", 5)


def test_new_entry_is_immutable():
    entry = new_entry("acct", 5, "earned", "rewarded_video", 5, description=None)
    assert entry.description is None
    with pytest.raises(SchemaError):
        entry.amount = 10


async def test_list_pages_in_creation_order(services, make_account, clock):
    account = await make_account()
    for amount in (10, 20, 30, 40, 50):
        await services.balances.credit(account.id, amount)
        clock.advance(seconds=1)

    first = await services.ledger.list_by_account(account.id, limit=2)
    assert [e.amount for e in first.items] == [10, 20]
    assert first.total == 5
    assert first.next_offset == 2

    last = await services.ledger.list_by_account(account.id, offset=4, limit=2)
    assert [e.amount for e in last.items] == [50]
    assert last.next_offset is None

    newest = await services.ledger.list_by_account(account.id, limit=1, newest_first=True)
    assert newest.items[0].amount == 50


async def test_iter_resumes_from_offset(services, make_account):
    account = await make_account()
    for amount in range(1, 8):
        await services.balances.credit(account.id, amount)
    walked = [e.amount async for e in services.ledger.iter_by_account(account.id, start_offset=3, page_size=2)]
    assert walked == [4, 5, 6, 7]


async def test_filters_by_window_and_kind(services, make_account, clock):
    account = await make_account()
    await services.balances.credit(account.id, 100)
    clock.advance(days=1)
    start = clock()
    await services.balances.credit(account.id, 7, kind="bonus", source="achievement")
    await services.balances.debit(account.id, 3, kind="penalty", source="admin_adjustment")

    page = await services.ledger.list_by_account(account.id, start=start)
    assert [e.amount for e in page.items] == [7, -3]
    assert await services.ledger.sum_by_account(account.id, start=start) == 4
    bonuses = await services.ledger.list_by_account(account.id, kind="bonus")
    assert [e.source for e in bonuses.items] == ["achievement"]
    with pytest.raises(ValidationError):
        await services.ledger.list_by_account(account.id, kind="gift")
