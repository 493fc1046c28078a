"""Persistence port for accounts, the ledger, payouts and their read models.

Backends: `memory` (process-local) and `mongo` (Beanie over PyMongo async). The balance
manager is the only caller of `commit`; everything else is either a
read or a write to data the ledger does not own (profiles, ad configs,
game session views and stats, audit events, policy).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Sequence

from app.core.config import Settings, get_settings
from app.models.account import Account
from app.models.ad_reward import AdRewardConfig
from app.models.audit_log import AuditEvent
from app.models.game_session import AdView, GameSession
from app.models.ledger_entry import LedgerEntry
from app.models.payout import Payout
from app.models.policy import PayoutPolicy


@dataclass
class LedgerQuery:
    account_id: str | None = None
    start: datetime | None = None  # inclusive
    end: datetime | None = None  # exclusive
    kinds: Sequence[str] | None = None
    sources: Sequence[str] | None = None
    ad_unit_id: str | None = None
    min_amount: int | None = None  # inclusive; 1 selects credits only


@dataclass
class PayoutQuery:
    account_id: str | None = None
    statuses: Sequence[str] | None = None
    start: datetime | None = None
    end: datetime | None = None
    min_amount_usd: Decimal | None = None
    max_amount_usd: Decimal | None = None


@dataclass
class AccountQuery:
    active: bool | None = None
    country: str | None = None
    role: str | None = None
    search: str | None = None  # substring of name or email
    created_start: datetime | None = None
    created_end: datetime | None = None
    # (total_earned, id): accounts ranked ahead of this one in list_accounts(sort="-total_earned")
    ranked_above: tuple[int, str] | None = None


@dataclass
class PayoutWrite:
    """Insert (expected_statuses is None) or compare-and-set of a payout."""

    payout: Payout
    expected_statuses: Sequence[str] | None = None


@dataclass
class SessionWrite:
    """Coin movement on an open game session, made with the ledger entries.

    Either sets `coins_earned` to `coins` when it still equals
    `expected_coins`, or appends `view` and adds its `coins_rewarded`
    when no view with the same view_id is recorded yet.
    """

    session_id: str
    expected_coins: int | None = None
    coins: int | None = None
    view: AdView | None = None


@dataclass
class Changeset:
    """All writes of one account mutation, committed all-or-nothing.

    The account row is written only if its version still equals
    `expected_version`; the payout only if its status is still one of
    `expected_statuses`; the session only if it is open and matches the
    SessionWrite. Any mismatch raises StaleWriteError and nothing is
    persisted.
    """

    account_id: str
    expected_version: int
    balance: int
    total_earned: int
    entries: list[LedgerEntry] = field(default_factory=list)
    payout: PayoutWrite | None = None
    ad_unit_id: str | None = None
    ad_coins: int = 0
    frozen: bool | None = None
    frozen_reason: str | None = None
    session: SessionWrite | None = None


# Grouping keys accepted by the group_* methods: a field name, or
# "period:daily" / "period:weekly" / "period:monthly" (reported as "period").
GroupBy = Sequence[str]


class LedgerStorage(ABC):
    # Lifecycle

    async def init(self) -> None:
        """Open connections and create indexes."""

    async def close(self) -> None:
        """Release connections."""

    async def ping(self) -> bool:
        """True when the backend answers."""
        return True

    # Atomic account mutation

    @abstractmethod
    async def commit(self, changeset: Changeset) -> None:
        """Apply a changeset atomically; raise StaleWriteError on a lost race."""
        ...

    # Accounts

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        """Insert; raise ConflictError if the email is taken."""
        ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Account | None:
        ...

    @abstractmethod
    async def get_account_by_email(self, email: str) -> Account | None:
        ...

    @abstractmethod
    async def get_accounts(self, account_ids: Sequence[str]) -> dict[str, Account]:
        ...

    @abstractmethod
    async def update_profile(self, account_id: str, fields: dict[str, Any]) -> Account | None:
        """Set non-ledger fields; ledger-owned fields are rejected."""
        ...

    @abstractmethod
    async def list_accounts(
        self, query: AccountQuery, offset: int = 0, limit: int = 50, sort: str = "-created_at"
    ) -> tuple[list[Account], int]:
        """Ties on the sort field are ordered by id."""
        ...

    @abstractmethod
    async def count_accounts(self, query: AccountQuery) -> int:
        ...

    @abstractmethod
    async def group_accounts(self, query: AccountQuery, by: GroupBy) -> list[dict[str, Any]]:
        """Buckets with `count`, `active`, `unique_countries`, `total_balance`,
        `total_earned` and `total_engagement`, ordered by key."""
        ...

    @abstractmethod
    def iter_account_ids(self) -> AsyncIterator[str]:
        ...

    # Ledger

    @abstractmethod
    async def get_entry_by_key(self, account_id: str, idempotency_key: str) -> LedgerEntry | None:
        ...

    @abstractmethod
    async def list_entries(
        self, query: LedgerQuery, offset: int = 0, limit: int = 50, newest_first: bool = False
    ) -> list[LedgerEntry]:
        """Entries in creation order (ascending unless newest_first)."""
        ...

    @abstractmethod
    async def count_entries(self, query: LedgerQuery) -> int:
        ...

    @abstractmethod
    async def sum_entries(self, query: LedgerQuery) -> int:
        ...

    @abstractmethod
    async def latest_entry(self, query: LedgerQuery) -> LedgerEntry | None:
        ...

    @abstractmethod
    async def group_entries(self, query: LedgerQuery, by: GroupBy) -> list[dict[str, Any]]:
        """Buckets with `total` (sum of amount) and `count`, ordered by key."""
        ...

    @abstractmethod
    async def rank_earners(
        self, entries: LedgerQuery, accounts: AccountQuery, offset: int = 0, limit: int = 50
    ) -> tuple[list[dict[str, Any]], int]:
        """Accounts matching `accounts` ranked by the sum of their matching entries.

        Highest total first, ties by account id. Rows carry `account_id`,
        `total` and `count`; the int is the number of ranked accounts.
        """
        ...

    @abstractmethod
    async def earner_position(
        self, entries: LedgerQuery, accounts: AccountQuery, account_id: str
    ) -> tuple[int, int] | None:
        """(rank, total) of one account in rank_earners order, or None if it is not ranked."""
        ...

    # Ad reward configs

    @abstractmethod
    async def insert_ad_config(self, config: AdRewardConfig) -> AdRewardConfig:
        """Insert; raise ConflictError if ad_unit_id is taken."""
        ...

    @abstractmethod
    async def get_ad_config(self, ad_unit_id: str) -> AdRewardConfig | None:
        ...

    @abstractmethod
    async def get_ad_config_by_id(self, config_id: str) -> AdRewardConfig | None:
        ...

    @abstractmethod
    async def update_ad_config(self, config_id: str, fields: dict[str, Any]) -> AdRewardConfig | None:
        """Set admin-editable fields; analytics counters are not editable."""
        ...

    @abstractmethod
    async def list_ad_configs(self, ad_type: str | None = None, active: bool | None = None) -> list[AdRewardConfig]:
        ...

    # Payouts

    @abstractmethod
    async def get_payout(self, payout_id: str) -> Payout | None:
        ...

    @abstractmethod
    async def find_open_payout(self, account_id: str) -> Payout | None:
        """The account's pending or processing payout, if any."""
        ...

    @abstractmethod
    async def list_payouts(self, query: PayoutQuery, offset: int = 0, limit: int = 20) -> tuple[list[Payout], int]:
        """Newest first."""
        ...

    @abstractmethod
    async def group_payouts(self, query: PayoutQuery, by: GroupBy) -> list[dict[str, Any]]:
        """Buckets with `count`, `total_usd` and `total_coins`."""
        ...

    @abstractmethod
    async def transition_payout(
        self, payout_id: str, expected_statuses: Sequence[str], fields: dict[str, Any]
    ) -> Payout | None:
        """Set fields only if status is still expected; None if it was not."""
        ...

    @abstractmethod
    async def set_payout_notes(self, payout_id: str, admin_notes: str) -> Payout | None:
        ...

    # Game sessions

    @abstractmethod
    async def insert_session(self, session: GameSession) -> GameSession:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> GameSession | None:
        ...

    @abstractmethod
    async def push_session_view(self, session_id: str, view: AdView) -> GameSession | None:
        """Append a view and add its coins to an open session.

        Returns None when the session is closed or already has the view_id.
        """
        ...

    @abstractmethod
    async def update_session_stats(self, session_id: str, stats: dict[str, int]) -> GameSession | None:
        """Set the named game_stats fields of an open session."""
        ...

    @abstractmethod
    async def end_session(self, session_id: str, now: datetime) -> GameSession | None:
        """Close an open session; None if it was already closed."""
        ...

    @abstractmethod
    async def close_open_sessions(self, account_id: str, now: datetime) -> int:
        ...

    @abstractmethod
    async def list_sessions(
        self, account_id: str | None, offset: int = 0, limit: int = 20, completed: bool | None = None
    ) -> tuple[list[GameSession], int]:
        """Newest first."""
        ...

    @abstractmethod
    async def group_sessions(
        self, account_id: str | None, start: datetime | None, by: GroupBy
    ) -> list[dict[str, Any]]:
        """Buckets with `count`, `total_duration`, `total_coins`, `total_ads`, `max_coins` and `max_score`."""
        ...

    # Policy and audit

    @abstractmethod
    async def load_policy(self) -> PayoutPolicy | None:
        ...

    @abstractmethod
    async def save_policy(self, policy: PayoutPolicy) -> PayoutPolicy:
        ...

    @abstractmethod
    async def append_audit(self, event: AuditEvent) -> None:
        ...

    @abstractmethod
    async def list_audit(self, offset: int = 0, limit: int = 50) -> tuple[list[AuditEvent], int]:
        ...


def get_storage(settings: Settings | None = None) -> LedgerStorage:
    settings = settings or get_settings()
    if settings.storage_backend == "mongo":
        from app.storage.mongo import MongoStorage
        return MongoStorage(settings)
    from app.storage.memory import MemoryStorage
    return MemoryStorage()
