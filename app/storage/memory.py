"""Process-local backend for development and tests.

Every method body runs without awaiting, so each call (and in particular
`commit`) is atomic with respect to other tasks on the event loop.
"""

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from app.core.clock import period_key
from app.core.exceptions import ConflictError, StaleWriteError, ValidationError
from app.models.account import LEDGER_FIELDS, Account
from app.models.ad_reward import AdRewardConfig
from app.models.audit_log import AuditEvent
from app.models.game_session import AdView, GameSession
from app.models.ledger_entry import LedgerEntry
from app.models.payout import OPEN_STATUSES, Payout
from app.models.policy import PayoutPolicy
from app.storage.base import AccountQuery, Changeset, GroupBy, LedgerQuery, LedgerStorage, PayoutQuery


def _group(
    records: Iterable[Any],
    by: GroupBy,
    date_of: Callable[[Any], datetime],
    aggregate: Callable[[dict[str, Any], Any], None],
    initial: Callable[[], dict[str, Any]],
) -> list[dict[str, Any]]:
    buckets: dict[tuple, dict[str, Any]] = {}
    for record in records:
        key: dict[str, Any] = {}
        for name in by:
            if name.startswith("period:"):
                key["period"] = period_key(date_of(record), name.split(":", 1)[1])
            else:
                key[name] = getattr(record, name)
        ident = tuple(key.items())
        if ident not in buckets:
            buckets[ident] = {**key, **initial()}
        aggregate(buckets[ident], record)
    return [buckets[k] for k in sorted(buckets, key=lambda t: tuple("" if v is None else str(v) for _, v in t))]


def _add_entry(bucket: dict[str, Any], e: LedgerEntry) -> None:
    bucket["total"] += e.amount
    bucket["count"] += 1


class MemoryStorage(LedgerStorage):
    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._emails: dict[str, str] = {}
        self._entries: list[LedgerEntry] = []
        self._entries_by_account: dict[str, list[LedgerEntry]] = defaultdict(list)
        self._keys: dict[tuple[str, str], LedgerEntry] = {}
        self._ad_configs: dict[str, AdRewardConfig] = {}
        self._payouts: dict[str, Payout] = {}
        self._sessions: dict[str, GameSession] = {}
        self._policy: PayoutPolicy | None = None
        self._audit: list[AuditEvent] = []

    # Atomic account mutation

    async def commit(self, changeset: Changeset) -> None:
        account = self._accounts.get(changeset.account_id)
        if account is None:
            raise StaleWriteError(f"account {changeset.account_id} vanished")
        if account.version != changeset.expected_version:
            raise StaleWriteError("account version changed")
        for entry in changeset.entries:
            if entry.idempotency_key and (entry.account_id, entry.idempotency_key) in self._keys:
                raise StaleWriteError("idempotency key already applied")
        write = changeset.payout
        if write is not None:
            current = self._payouts.get(write.payout.id)
            if write.expected_statuses is None:
                if current is not None:
                    raise StaleWriteError("payout already exists")
            elif current is None or current.status not in write.expected_statuses:
                raise StaleWriteError("payout status changed")
        target = changeset.session
        if target is not None:
            session = self._sessions.get(target.session_id)
            if session is None or session.is_completed:
                raise StaleWriteError("game session closed")
            if target.expected_coins is not None and session.coins_earned != target.expected_coins:
                raise StaleWriteError("session coins changed")
            if target.view is not None and self._has_view(session, target.view.view_id):
                raise StaleWriteError("ad view already recorded")

        # Validation done; nothing below can fail.
        updates: dict[str, Any] = {
            "balance": changeset.balance,
            "total_earned": changeset.total_earned,
            "version": account.version + 1,
        }
        if changeset.frozen is not None:
            updates["frozen"] = changeset.frozen
            updates["frozen_reason"] = changeset.frozen_reason
        self._accounts[account.id] = account.model_copy(update=updates)
        for entry in changeset.entries:
            self._entries.append(entry)
            self._entries_by_account[entry.account_id].append(entry)
            if entry.idempotency_key:
                self._keys[(entry.account_id, entry.idempotency_key)] = entry
        if write is not None:
            self._payouts[write.payout.id] = write.payout.model_copy(deep=True)
        if changeset.ad_unit_id:
            config = self._ad_configs.get(changeset.ad_unit_id)
            if config is not None:
                analytics = config.analytics.model_copy(
                    update={
                        "total_views": config.analytics.total_views + 1,
                        "total_rewards_given": config.analytics.total_rewards_given + 1,
                        "total_coins_distributed": config.analytics.total_coins_distributed + changeset.ad_coins,
                    }
                )
                self._ad_configs[config.ad_unit_id] = config.model_copy(update={"analytics": analytics})
        if target is not None:
            if target.view is not None:
                self._append_view(session, target.view)
            elif target.coins is not None:
                self._sessions[target.session_id] = session.model_copy(update={"coins_earned": target.coins})

    @staticmethod
    def _has_view(session: GameSession, view_id: str | None) -> bool:
        return view_id is not None and any(v.view_id == view_id for v in session.ads_watched)

    def _append_view(self, session: GameSession, view: AdView) -> GameSession:
        updated = session.model_copy(
            update={
                "ads_watched": [*session.ads_watched, view.model_copy()],
                "coins_earned": session.coins_earned + view.coins_rewarded,
            }
        )
        self._sessions[session.id] = updated
        return updated

    # Accounts

    async def create_account(self, account: Account) -> Account:
        email = account.email.lower()
        if email in self._emails:
            raise ConflictError("User with this email already exists")
        stored = account.model_copy(update={"email": email}, deep=True)
        self._accounts[stored.id] = stored
        self._emails[email] = stored.id
        return stored.model_copy(deep=True)

    async def get_account(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def get_account_by_email(self, email: str) -> Account | None:
        account_id = self._emails.get(email.lower())
        return await self.get_account(account_id) if account_id else None

    async def get_accounts(self, account_ids: Sequence[str]) -> dict[str, Account]:
        return {i: self._accounts[i].model_copy(deep=True) for i in account_ids if i in self._accounts}

    async def update_profile(self, account_id: str, fields: dict[str, Any]) -> Account | None:
        forbidden = LEDGER_FIELDS.intersection(fields) | ({"id", "email"} & set(fields))
        if forbidden:
            raise ValidationError(f"Cannot update {', '.join(sorted(forbidden))} through the profile")
        account = self._accounts.get(account_id)
        if account is None:
            return None
        updated = Account.model_validate({**account.model_dump(), **fields})
        self._accounts[account_id] = updated
        return updated.model_copy(deep=True)

    def _match_account(self, a: Account, q: AccountQuery) -> bool:
        if q.active is not None and a.is_active != q.active:
            return False
        if q.country and a.country != q.country:
            return False
        if q.role and a.role != q.role:
            return False
        if q.search:
            needle = q.search.lower()
            if needle not in a.name.lower() and needle not in a.email.lower():
                return False
        if q.created_start and a.created_at < q.created_start:
            return False
        if q.created_end and a.created_at >= q.created_end:
            return False
        if q.ranked_above is not None:
            earned, account_id = q.ranked_above
            if (-a.total_earned, a.id) >= (-earned, account_id):
                return False
        return True

    async def list_accounts(
        self, query: AccountQuery, offset: int = 0, limit: int = 50, sort: str = "-created_at"
    ) -> tuple[list[Account], int]:
        matched = [a for a in self._accounts.values() if self._match_account(a, query)]
        field_name = sort.lstrip("-")
        matched.sort(key=lambda a: a.id)
        matched.sort(key=lambda a: getattr(a, field_name), reverse=sort.startswith("-"))
        return [a.model_copy(deep=True) for a in matched[offset : offset + limit]], len(matched)

    async def count_accounts(self, query: AccountQuery) -> int:
        return sum(1 for a in self._accounts.values() if self._match_account(a, query))

    async def group_accounts(self, query: AccountQuery, by: GroupBy) -> list[dict[str, Any]]:
        def add(bucket: dict[str, Any], a: Account) -> None:
            bucket["count"] += 1
            bucket["countries"].add(a.country)
            bucket["active"] += int(a.is_active)
            bucket["total_balance"] += a.balance
            bucket["total_earned"] += a.total_earned
            bucket["total_engagement"] += a.total_engagement_seconds

        out = _group(
            (a for a in self._accounts.values() if self._match_account(a, query)),
            by,
            lambda a: a.created_at,
            add,
            lambda: {
                "count": 0,
                "countries": set(),
                "active": 0,
                "total_balance": 0,
                "total_earned": 0,
                "total_engagement": 0,
            },
        )
        for bucket in out:
            bucket["unique_countries"] = len(bucket.pop("countries"))
        return out

    async def iter_account_ids(self) -> AsyncIterator[str]:
        for account_id in list(self._accounts):
            yield account_id

    # Ledger

    def _scan(self, q: LedgerQuery) -> Iterable[LedgerEntry]:
        source = self._entries_by_account.get(q.account_id, []) if q.account_id else self._entries
        for e in source:
            if q.start and e.created_at < q.start:
                continue
            if q.end and e.created_at >= q.end:
                continue
            if q.kinds is not None and e.kind not in q.kinds:
                continue
            if q.sources is not None and e.source not in q.sources:
                continue
            if q.ad_unit_id and e.ad_unit_id != q.ad_unit_id:
                continue
            if q.min_amount is not None and e.amount < q.min_amount:
                continue
            yield e

    async def get_entry_by_key(self, account_id: str, idempotency_key: str) -> LedgerEntry | None:
        return self._keys.get((account_id, idempotency_key))

    async def list_entries(
        self, query: LedgerQuery, offset: int = 0, limit: int = 50, newest_first: bool = False
    ) -> list[LedgerEntry]:
        matched = list(self._scan(query))
        if newest_first:
            matched.reverse()
        return matched[offset : offset + limit]

    async def count_entries(self, query: LedgerQuery) -> int:
        return sum(1 for _ in self._scan(query))

    async def sum_entries(self, query: LedgerQuery) -> int:
        return sum(e.amount for e in self._scan(query))

    async def latest_entry(self, query: LedgerQuery) -> LedgerEntry | None:
        latest = None
        for e in self._scan(query):
            latest = e
        return latest

    async def group_entries(self, query: LedgerQuery, by: GroupBy) -> list[dict[str, Any]]:
        return _group(self._scan(query), by, lambda e: e.created_at, _add_entry, lambda: {"total": 0, "count": 0})

    def _ranked(self, entries: LedgerQuery, accounts: AccountQuery) -> list[dict[str, Any]]:
        buckets = _group(
            self._scan(entries), ["account_id"], lambda e: e.created_at, _add_entry, lambda: {"total": 0, "count": 0}
        )
        rows = [
            b
            for b in buckets
            if b["account_id"] in self._accounts and self._match_account(self._accounts[b["account_id"]], accounts)
        ]
        rows.sort(key=lambda r: (-r["total"], r["account_id"]))
        return rows

    async def rank_earners(
        self, entries: LedgerQuery, accounts: AccountQuery, offset: int = 0, limit: int = 50
    ) -> tuple[list[dict[str, Any]], int]:
        rows = self._ranked(entries, accounts)
        return rows[offset : offset + limit], len(rows)

    async def earner_position(
        self, entries: LedgerQuery, accounts: AccountQuery, account_id: str
    ) -> tuple[int, int] | None:
        for rank, row in enumerate(self._ranked(entries, accounts), start=1):
            if row["account_id"] == account_id:
                return rank, row["total"]
        return None

    # Ad reward configs

    async def insert_ad_config(self, config: AdRewardConfig) -> AdRewardConfig:
        if config.ad_unit_id in self._ad_configs:
            raise ConflictError("Ad unit ID already exists")
        self._ad_configs[config.ad_unit_id] = config.model_copy(deep=True)
        return config

    async def get_ad_config(self, ad_unit_id: str) -> AdRewardConfig | None:
        config = self._ad_configs.get(ad_unit_id)
        return config.model_copy(deep=True) if config else None

    async def get_ad_config_by_id(self, config_id: str) -> AdRewardConfig | None:
        for config in self._ad_configs.values():
            if config.id == config_id:
                return config.model_copy(deep=True)
        return None

    async def update_ad_config(self, config_id: str, fields: dict[str, Any]) -> AdRewardConfig | None:
        if "analytics" in fields or "ad_unit_id" in fields:
            raise ValidationError("Cannot update ad_unit_id or analytics")
        current = await self.get_ad_config_by_id(config_id)
        if current is None:
            return None
        updated = AdRewardConfig.model_validate({**current.model_dump(), **fields})
        self._ad_configs[updated.ad_unit_id] = updated
        return updated.model_copy(deep=True)

    async def list_ad_configs(self, ad_type: str | None = None, active: bool | None = None) -> list[AdRewardConfig]:
        out = [
            c.model_copy(deep=True)
            for c in self._ad_configs.values()
            if (ad_type is None or c.ad_type == ad_type) and (active is None or c.is_active == active)
        ]
        out.sort(key=lambda c: (c.ad_type, -c.coin_reward))
        return out

    # Payouts

    def _match_payout(self, p: Payout, q: PayoutQuery) -> bool:
        if q.account_id and p.account_id != q.account_id:
            return False
        if q.statuses is not None and p.status not in q.statuses:
            return False
        if q.start and p.requested_at < q.start:
            return False
        if q.end and p.requested_at >= q.end:
            return False
        if q.min_amount_usd is not None and p.requested_amount_usd < q.min_amount_usd:
            return False
        if q.max_amount_usd is not None and p.requested_amount_usd > q.max_amount_usd:
            return False
        return True

    async def get_payout(self, payout_id: str) -> Payout | None:
        payout = self._payouts.get(payout_id)
        return payout.model_copy(deep=True) if payout else None

    async def find_open_payout(self, account_id: str) -> Payout | None:
        for payout in self._payouts.values():
            if payout.account_id == account_id and payout.status in OPEN_STATUSES:
                return payout.model_copy(deep=True)
        return None

    async def list_payouts(self, query: PayoutQuery, offset: int = 0, limit: int = 20) -> tuple[list[Payout], int]:
        matched = [p for p in self._payouts.values() if self._match_payout(p, query)]
        matched.sort(key=lambda p: p.requested_at, reverse=True)
        return [p.model_copy(deep=True) for p in matched[offset : offset + limit]], len(matched)

    async def group_payouts(self, query: PayoutQuery, by: GroupBy) -> list[dict[str, Any]]:
        def add(bucket: dict[str, Any], p: Payout) -> None:
            bucket["count"] += 1
            bucket["total_usd"] += p.requested_amount_usd
            bucket["total_coins"] += p.coins_deducted

        return _group(
            (p for p in self._payouts.values() if self._match_payout(p, query)),
            by,
            lambda p: p.requested_at,
            add,
            lambda: {"count": 0, "total_usd": Decimal("0"), "total_coins": 0},
        )

    async def transition_payout(
        self, payout_id: str, expected_statuses: Sequence[str], fields: dict[str, Any]
    ) -> Payout | None:
        current = self._payouts.get(payout_id)
        if current is None or current.status not in expected_statuses:
            return None
        updated = Payout.model_validate({**current.model_dump(), **fields})
        self._payouts[payout_id] = updated
        return updated.model_copy(deep=True)

    async def set_payout_notes(self, payout_id: str, admin_notes: str) -> Payout | None:
        current = self._payouts.get(payout_id)
        if current is None:
            return None
        self._payouts[payout_id] = current.model_copy(update={"admin_notes": admin_notes})
        return self._payouts[payout_id].model_copy(deep=True)

    # Game sessions

    async def insert_session(self, session: GameSession) -> GameSession:
        self._sessions[session.id] = session.model_copy(deep=True)
        return session

    async def get_session(self, session_id: str) -> GameSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def push_session_view(self, session_id: str, view: AdView) -> GameSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.is_completed or self._has_view(session, view.view_id):
            return None
        return self._append_view(session, view).model_copy(deep=True)

    async def update_session_stats(self, session_id: str, stats: dict[str, int]) -> GameSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.is_completed:
            return None
        game_stats = session.game_stats.model_copy(update=stats)
        self._sessions[session_id] = session.model_copy(update={"game_stats": game_stats})
        return self._sessions[session_id].model_copy(deep=True)

    async def end_session(self, session_id: str, now: datetime) -> GameSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.is_completed:
            return None
        duration = max(0, int((now - session.start_time).total_seconds()))
        self._sessions[session_id] = session.model_copy(
            update={"end_time": now, "is_completed": True, "duration_seconds": duration}
        )
        return self._sessions[session_id].model_copy(deep=True)

    async def close_open_sessions(self, account_id: str, now: datetime) -> int:
        closed = 0
        for session_id, s in list(self._sessions.items()):
            if s.account_id == account_id and not s.is_completed:
                duration = max(0, int((now - s.start_time).total_seconds()))
                self._sessions[session_id] = s.model_copy(
                    update={"end_time": now, "is_completed": True, "duration_seconds": duration}
                )
                closed += 1
        return closed

    async def list_sessions(
        self, account_id: str | None, offset: int = 0, limit: int = 20, completed: bool | None = None
    ) -> tuple[list[GameSession], int]:
        matched = [
            s
            for s in self._sessions.values()
            if (account_id is None or s.account_id == account_id) and (completed is None or s.is_completed == completed)
        ]
        matched.sort(key=lambda s: s.start_time, reverse=True)
        return [s.model_copy(deep=True) for s in matched[offset : offset + limit]], len(matched)

    async def group_sessions(
        self, account_id: str | None, start: datetime | None, by: GroupBy
    ) -> list[dict[str, Any]]:
        def add(bucket: dict[str, Any], s: GameSession) -> None:
            bucket["count"] += 1
            bucket["total_duration"] += s.duration_seconds
            bucket["total_coins"] += s.coins_earned
            bucket["total_ads"] += len(s.ads_watched)
            bucket["max_coins"] = max(bucket["max_coins"], s.coins_earned)
            bucket["max_score"] = max(bucket["max_score"], s.game_stats.highest_score)

        return _group(
            (
                s
                for s in self._sessions.values()
                if (account_id is None or s.account_id == account_id) and (start is None or s.start_time >= start)
            ),
            by,
            lambda s: s.start_time,
            add,
            lambda: {"count": 0, "total_duration": 0, "total_coins": 0, "total_ads": 0, "max_coins": 0, "max_score": 0},
        )

    # Policy and audit

    async def load_policy(self) -> PayoutPolicy | None:
        return self._policy.model_copy() if self._policy else None

    async def save_policy(self, policy: PayoutPolicy) -> PayoutPolicy:
        self._policy = policy.model_copy()
        return policy

    async def append_audit(self, event: AuditEvent) -> None:
        self._audit.append(event)

    async def list_audit(self, offset: int = 0, limit: int = 50) -> tuple[list[AuditEvent], int]:
        newest = list(reversed(self._audit))
        return newest[offset : offset + limit], len(newest)
