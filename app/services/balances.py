"""Account balance manager: the only writer of Account.balance/total_earned.

Every mutation is planned against a fresh account snapshot and committed
as one changeset (balance + ledger entries + any payout or game session
write) guarded by the account version. Mutations of one account are serialized by an
in-process lock; the version check covers other processes, and a lost
race is re-planned from scratch.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from app.core.audit import log_event
from app.core.clock import Clock, utcnow
from app.core.exceptions import (
    AppError,
    ConflictError,
    InsufficientBalanceError,
    IntegrityError,
    NotFoundError,
    StaleWriteError,
    ValidationError,
)
from app.core.logging import get_logger
from app.models.account import Account
from app.models.ledger_entry import CREDIT_KINDS, DEBIT_KINDS, LedgerEntry
from app.services.ledger import LedgerStore, new_entry
from app.storage.base import Changeset, LedgerQuery, LedgerStorage, PayoutWrite, SessionWrite

log = get_logger(__name__)


@dataclass
class Posting:
    """A signed amount to append to the ledger."""

    amount: int
    kind: str
    source: str
    description: str | None = None
    ad_unit_id: str | None = None
    game_session_id: str | None = None
    payout_id: str | None = None
    idempotency_key: str | None = None
    entry_id: str | None = None


@dataclass
class Plan:
    postings: list[Posting] = field(default_factory=list)
    payout: PayoutWrite | None = None
    ad_unit_id: str | None = None
    ad_coins: int = 0
    session: SessionWrite | None = None
    result: Any = None  # handed back to the caller untouched

    @property
    def is_empty(self) -> bool:
        return not self.postings and self.payout is None and self.session is None


@dataclass
class Applied:
    account: Account  # state after the commit
    entries: list[LedgerEntry]
    plan: Plan


@dataclass
class Reconciliation:
    account_id: str
    balance: int
    ledger_sum: int
    entries_checked: int
    first_bad_entry_id: str | None = None  # first entry whose balance_after disagrees with the running sum

    @property
    def ok(self) -> bool:
        return self.balance == self.ledger_sum

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "balance": self.balance,
            "ledger_sum": self.ledger_sum,
            "entries_checked": self.entries_checked,
            "first_bad_entry_id": self.first_bad_entry_id,
            "ok": self.ok,
        }


# Called under the account lock with a fresh snapshot; may run more than once.
Planner = Callable[[Account], Awaitable[Plan]]


class AccountLocks:
    """One asyncio.Lock per account, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        self._refs[account_id] = self._refs.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[account_id] -= 1
            if self._refs[account_id] == 0:
                del self._refs[account_id]
                del self._locks[account_id]


class BalanceManager:
    def __init__(self, storage: LedgerStorage, max_retries: int = 8, clock: Clock = utcnow):
        self._storage = storage
        self._ledger = LedgerStore(storage)
        self._locks = AccountLocks()
        self._max_retries = max_retries
        self._clock = clock

    async def get_balance(self, account_id: str) -> int:
        account = await self._storage.get_account(account_id)
        if account is None:
            raise NotFoundError("Account not found")
        return account.balance

    async def credit(
        self,
        account_id: str,
        amount: int,
        kind: str = "earned",
        source: str = "rewarded_video",
        **metadata,
    ) -> tuple[int, str]:
        """Add coins; returns (new_balance, entry_id)."""
        if kind not in CREDIT_KINDS:
            raise ValidationError(f"Credit kind must be one of {', '.join(CREDIT_KINDS)}")
        return await self._single(account_id, Posting(amount=_positive(amount), kind=kind, source=source, **metadata))

    async def debit(
        self,
        account_id: str,
        amount: int,
        kind: str = "spent",
        source: str = "payout",
        **metadata,
    ) -> tuple[int, str]:
        """Remove coins; raises InsufficientBalanceError rather than going negative."""
        if kind not in DEBIT_KINDS:
            raise ValidationError(f"Debit kind must be one of {', '.join(DEBIT_KINDS)}")
        return await self._single(account_id, Posting(amount=-_positive(amount), kind=kind, source=source, **metadata))

    async def _single(self, account_id: str, posting: Posting) -> tuple[int, str]:
        key = posting.idempotency_key

        async def planner(account: Account) -> Plan:
            if key:
                existing = await self._storage.get_entry_by_key(account_id, key)
                if existing:
                    return Plan(result=existing)
            return Plan(postings=[posting])

        applied = await self.apply(account_id, planner)
        if applied.entries:
            entry = applied.entries[0]
        else:
            entry = applied.plan.result
        return applied.account.balance, entry.id

    async def apply(self, account_id: str, planner: Planner) -> Applied:
        """Plan and commit one atomic mutation of the account."""
        async with self._locks.hold(account_id):
            for attempt in range(1, self._max_retries + 1):
                account = await self._storage.get_account(account_id)
                if account is None:
                    raise NotFoundError("Account not found")
                plan = await planner(account)
                if plan.is_empty:
                    return Applied(account=account, entries=[], plan=plan)
                changeset, entries = self._stage(account, plan)
                try:
                    await self._storage.commit(changeset)
                except StaleWriteError as exc:
                    log.info("ledger_commit_retry", account_id=account_id, attempt=attempt, reason=str(exc))
                    continue
                for entry in entries:
                    log.info(
                        "ledger_credit" if entry.amount > 0 else "ledger_debit",
                        account_id=account_id,
                        entry_id=entry.id,
                        amount=entry.amount,
                        kind=entry.kind,
                        source=entry.source,
                        balance_after=entry.balance_after,
                    )
                after = account.model_copy(
                    update={
                        "balance": changeset.balance,
                        "total_earned": changeset.total_earned,
                        "version": account.version + 1,
                    }
                )
                return Applied(account=after, entries=entries, plan=plan)
        log.warning("ledger_commit_exhausted", account_id=account_id, retries=self._max_retries)
        raise ConflictError("Account busy, please retry")

    def _stage(self, account: Account, plan: Plan) -> tuple[Changeset, list[LedgerEntry]]:
        balance = account.balance
        total_earned = account.total_earned
        entries: list[LedgerEntry] = []
        now = self._clock()
        for p in plan.postings:
            if p.amount < 0:
                if account.frozen:
                    raise IntegrityError(details={"account_id": account.id, "reason": account.frozen_reason})
                if balance + p.amount < 0:
                    raise InsufficientBalanceError(required=-p.amount, current=balance)
            balance += p.amount
            if p.kind in CREDIT_KINDS and p.amount > 0:
                total_earned += p.amount
            extra = {"id": p.entry_id} if p.entry_id else {}
            entries.append(
                new_entry(
                    account.id,
                    p.amount,
                    p.kind,
                    p.source,
                    balance,
                    description=p.description,
                    ad_unit_id=p.ad_unit_id,
                    game_session_id=p.game_session_id,
                    payout_id=p.payout_id,
                    idempotency_key=p.idempotency_key,
                    created_at=now,
                    **extra,
                )
            )
        changeset = Changeset(
            account_id=account.id,
            expected_version=account.version,
            balance=balance,
            total_earned=total_earned,
            entries=entries,
            payout=plan.payout,
            ad_unit_id=plan.ad_unit_id,
            ad_coins=plan.ad_coins,
            session=plan.session,
        )
        return changeset, entries

    # Reconciliation overrides

    async def adjust_balance(self, account_id: str, target_balance: int, note: str | None, actor_id: str | None) -> Applied:
        """Set the balance to `target_balance` with one compensating entry."""
        if target_balance < 0:
            raise ValidationError("Target balance cannot be negative")

        async def planner(account: Account) -> Plan:
            if account.frozen:
                raise IntegrityError(details={"account_id": account.id, "reason": account.frozen_reason})
            diff = target_balance - account.balance
            if diff == 0:
                return Plan()
            return Plan(
                postings=[
                    Posting(
                        amount=diff,
                        kind="bonus" if diff > 0 else "penalty",
                        source="admin_adjustment",
                        description=note or "Admin adjustment",
                    )
                ]
            )

        applied = await self.apply(account_id, planner)
        if applied.entries:
            await log_event(
                self._storage,
                actor_id,
                "balance_adjusted",
                "account",
                account_id,
                {"target_balance": target_balance, "amount": applied.entries[0].amount, "note": note},
            )
        return applied

    async def bulk_adjust(
        self, account_ids: Sequence[str], delta: int, note: str | None, actor_id: str | None
    ) -> list[dict[str, Any]]:
        """Add `delta` coins to each account, clamping debits at a zero balance."""
        if delta == 0:
            raise ValidationError("Coin adjustment must be non-zero")
        results = []
        for account_id in account_ids:

            async def planner(account: Account) -> Plan:
                amount = delta if delta > 0 else -min(account.balance, -delta)
                if amount == 0:
                    return Plan()
                return Plan(
                    postings=[
                        Posting(
                            amount=amount,
                            kind="bonus" if amount > 0 else "penalty",
                            source="admin_adjustment",
                            description=note or "Bulk adjustment",
                        )
                    ]
                )

            try:
                applied = await self.apply(account_id, planner)
            except AppError as exc:
                results.append({"account_id": account_id, "applied": 0, "error": exc.code})
                continue
            amount = applied.entries[0].amount if applied.entries else 0
            results.append({"account_id": account_id, "applied": amount, "balance": applied.account.balance})
        await log_event(
            self._storage,
            actor_id,
            "bulk_adjustment",
            "account",
            None,
            {"delta": delta, "note": note, "accounts": len(account_ids)},
        )
        return results

    async def reconcile(self, account_id: str, freeze: bool = True) -> Reconciliation:
        """Replay the ledger against the cached balance; freeze the account on mismatch."""
        async with self._locks.hold(account_id):
            for _ in range(self._max_retries):
                account = await self._storage.get_account(account_id)
                if account is None:
                    raise NotFoundError("Account not found")
                report = await self._replay(account)
                again = await self._storage.get_account(account_id)
                if again is not None and again.version == account.version:
                    break
            else:
                raise ConflictError("Account busy, please retry")
            if report.ok or not freeze or account.frozen:
                return report
            reason = f"balance {report.balance} != ledger {report.ledger_sum}"
            try:
                await self._storage.commit(
                    Changeset(
                        account_id=account.id,
                        expected_version=account.version,
                        balance=account.balance,
                        total_earned=account.total_earned,
                        frozen=True,
                        frozen_reason=reason,
                    )
                )
            except StaleWriteError:
                # A writer got in after the replay; the next run re-checks.
                log.info("reconciliation_raced", account_id=account_id)
                return report
        log.error(
            "reconciliation_mismatch",
            account_id=account_id,
            balance=report.balance,
            ledger_sum=report.ledger_sum,
            first_bad_entry_id=report.first_bad_entry_id,
        )
        await log_event(self._storage, None, "account_frozen", "account", account_id, {"reason": reason})
        return report

    async def reconcile_all(self) -> list[Reconciliation]:
        """Reconcile every account; returns the mismatches found."""
        mismatches = []
        async for account_id in self._storage.iter_account_ids():
            report = await self.reconcile(account_id)
            if not report.ok:
                mismatches.append(report)
        log.info("reconciliation_finished", mismatches=len(mismatches))
        return mismatches

    async def _replay(self, account: Account) -> Reconciliation:
        running = 0
        checked = 0
        first_bad = None
        async for entry in self._ledger.iter_by_account(account.id):
            running += entry.amount
            checked += 1
            if first_bad is None and entry.balance_after != running:
                first_bad = entry.id
        return Reconciliation(
            account_id=account.id,
            balance=account.balance,
            ledger_sum=running,
            entries_checked=checked,
            first_bad_entry_id=first_bad,
        )

    async def repair(self, account_id: str, actor_id: str | None) -> Account:
        """Reset a frozen account's cached balance to its ledger sum and unfreeze it."""
        async with self._locks.hold(account_id):
            account = await self._storage.get_account(account_id)
            if account is None:
                raise NotFoundError("Account not found")
            ledger_sum = await self._storage.sum_entries(LedgerQuery(account_id=account_id))
            if ledger_sum < 0:
                raise IntegrityError("Ledger sum is negative; manual correction required", {"ledger_sum": ledger_sum})
            try:
                await self._storage.commit(
                    Changeset(
                        account_id=account.id,
                        expected_version=account.version,
                        balance=ledger_sum,
                        total_earned=account.total_earned,
                        frozen=False,
                        frozen_reason=None,
                    )
                )
            except StaleWriteError:
                raise ConflictError("Account busy, please retry")
        log.warning("account_repaired", account_id=account_id, old_balance=account.balance, balance=ledger_sum)
        await log_event(
            self._storage,
            actor_id,
            "account_repaired",
            "account",
            account_id,
            {"old_balance": account.balance, "balance": ledger_sum},
        )
        return account.model_copy(update={"balance": ledger_sum, "frozen": False, "frozen_reason": None})


def _positive(amount: Any) -> int:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("Amount must be a positive integer", details={"amount": amount})
    return amount
