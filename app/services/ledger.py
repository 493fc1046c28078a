"""Ledger entry store: entry validation, paged reads and sums.

Entries are appended only by the balance manager, as part of the same
storage commit that moves the account balance.
"""

from datetime import datetime
from typing import AsyncIterator

from app.core.exceptions import ValidationError
from app.core.pagination import Page, paginate
from app.models.ledger_entry import KINDS, SOURCES, LedgerEntry
from app.storage.base import LedgerQuery, LedgerStorage


def new_entry(
    account_id: str,
    amount: int,
    kind: str,
    source: str,
    balance_after: int,
    **fields,
) -> LedgerEntry:
    """Build an entry ready to append; raise ValidationError on bad input."""
    if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
        raise ValidationError("Ledger amount must be a non-zero integer", details={"amount": amount})
    if kind not in KINDS:
        raise ValidationError(f"Invalid kind: {kind}", details={"allowed": list(KINDS)})
    if source not in SOURCES:
        raise ValidationError(f"Invalid source: {source}", details={"allowed": list(SOURCES)})
    if balance_after < 0:
        raise ValidationError("Balance cannot go negative")
    fields = {k: v for k, v in fields.items() if v is not None}
    return LedgerEntry(
        account_id=account_id,
        amount=amount,
        kind=kind,
        source=source,
        balance_after=balance_after,
        **fields,
    )


class LedgerStore:
    def __init__(self, storage: LedgerStorage):
        self._storage = storage

    @staticmethod
    def query(
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        kind: str | None = None,
        source: str | None = None,
    ) -> LedgerQuery:
        if kind is not None and kind not in KINDS:
            raise ValidationError(f"Invalid kind: {kind}")
        if source is not None and source not in SOURCES:
            raise ValidationError(f"Invalid source: {source}")
        return LedgerQuery(
            account_id=account_id,
            start=start,
            end=end,
            kinds=(kind,) if kind else None,
            sources=(source,) if source else None,
        )

    async def list_by_account(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        kind: str | None = None,
        source: str | None = None,
        offset: int = 0,
        limit: int = 50,
        newest_first: bool = False,
    ) -> Page[LedgerEntry]:
        """One page of the account's entries; resume from `page.next_offset`."""
        limit, offset = paginate(limit, offset, max_limit=500)
        q = self.query(account_id, start, end, kind, source)
        items = await self._storage.list_entries(q, offset=offset, limit=limit, newest_first=newest_first)
        total = await self._storage.count_entries(q)
        return Page[LedgerEntry](items=items, limit=limit, offset=offset, total=total)

    async def iter_by_account(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        kind: str | None = None,
        source: str | None = None,
        start_offset: int = 0,
        page_size: int = 200,
    ) -> AsyncIterator[LedgerEntry]:
        """Lazily walk entries in creation order, starting at `start_offset`."""
        q = self.query(account_id, start, end, kind, source)
        offset = max(0, start_offset)
        while True:
            batch = await self._storage.list_entries(q, offset=offset, limit=page_size)
            for entry in batch:
                yield entry
            if len(batch) < page_size:
                return
            offset += len(batch)

    async def sum_by_account(
        self, account_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> int:
        return await self._storage.sum_entries(LedgerQuery(account_id=account_id, start=start, end=end))
