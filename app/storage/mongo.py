"""MongoDB backend: Beanie documents over PyMongo's async client.

Reads and aggregations go through Beanie. Account commits are raw
conditional writes so they can share one session: inside a transaction
when MONGODB_TRANSACTIONS is on (replica set), otherwise ordered so that
a lost race is undone before StaleWriteError is raised. A crash in the
middle of an unordered commit leaves a balance/ledger mismatch that
reconciliation detects and freezes.
"""

import re
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Sequence

from bson import Decimal128
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.asynchronous.client_session import AsyncClientSession
from pymongo.errors import BulkWriteError, DuplicateKeyError, OperationFailure, PyMongoError

from app.core.config import Settings
from app.core.exceptions import ConflictError, StaleWriteError, ValidationError
from app.core.logging import get_logger
from app.db.documents import (
    AccountDocument,
    AdRewardDocument,
    AuditEventDocument,
    GameSessionDocument,
    LedgerEntryDocument,
    PayoutDocument,
    PayoutPolicyDocument,
)
from app.db.init import create_client, init_db
from app.models.account import LEDGER_FIELDS, Account
from app.models.ad_reward import AdRewardConfig
from app.models.audit_log import AuditEvent
from app.models.game_session import AdView, GameSession
from app.models.ledger_entry import LedgerEntry
from app.models.payout import OPEN_STATUSES, Payout
from app.models.policy import PayoutPolicy
from app.storage.base import (
    AccountQuery,
    Changeset,
    GroupBy,
    LedgerQuery,
    LedgerStorage,
    PayoutQuery,
    SessionWrite,
)

log = get_logger(__name__)

POLICY_ID = "payout_policy"

# $dateToString formats matching app.core.clock.period_key
_PERIOD_FORMATS = {"daily": "%Y-%m-%d", "weekly": "%G-W%V", "monthly": "%Y-%m"}


def _bson(value: Any) -> Any:
    if isinstance(value, Decimal):
        return Decimal128(str(value))
    if isinstance(value, BaseModel):
        return _bson(value.model_dump())
    if isinstance(value, dict):
        return {k: _bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_bson(v) for v in value]
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return value


def _to_mongo(model: BaseModel) -> dict[str, Any]:
    data = model.model_dump()
    data["_id"] = data.pop("id")
    return _bson(data)


def _range(start: datetime | None, end: datetime | None) -> dict[str, Any] | None:
    cond = {}
    if start is not None:
        cond["$gte"] = start
    if end is not None:
        cond["$lt"] = end
    return cond or None


def _ledger_filter(q: LedgerQuery) -> dict[str, Any]:
    f: dict[str, Any] = {}
    if q.account_id:
        f["account_id"] = q.account_id
    if created := _range(q.start, q.end):
        f["created_at"] = created
    if q.kinds is not None:
        f["kind"] = {"$in": list(q.kinds)}
    if q.sources is not None:
        f["source"] = {"$in": list(q.sources)}
    if q.ad_unit_id:
        f["ad_unit_id"] = q.ad_unit_id
    if q.min_amount is not None:
        f["amount"] = {"$gte": q.min_amount}
    return f


def _payout_filter(q: PayoutQuery) -> dict[str, Any]:
    f: dict[str, Any] = {}
    if q.account_id:
        f["account_id"] = q.account_id
    if q.statuses is not None:
        f["status"] = {"$in": list(q.statuses)}
    if requested := _range(q.start, q.end):
        f["requested_at"] = requested
    amount = {}
    if q.min_amount_usd is not None:
        amount["$gte"] = Decimal128(str(q.min_amount_usd))
    if q.max_amount_usd is not None:
        amount["$lte"] = Decimal128(str(q.max_amount_usd))
    if amount:
        f["requested_amount_usd"] = amount
    return f


def _account_filter(q: AccountQuery) -> dict[str, Any]:
    f: dict[str, Any] = {}
    if q.active is not None:
        f["is_active"] = q.active
    if q.country:
        f["country"] = q.country
    if q.role:
        f["role"] = q.role
    if q.search:
        pattern = {"$regex": re.escape(q.search), "$options": "i"}
        f["$or"] = [{"name": pattern}, {"email": pattern}]
    if created := _range(q.created_start, q.created_end):
        f["created_at"] = created
    if q.ranked_above is not None:
        earned, account_id = q.ranked_above
        ahead = {"$or": [{"total_earned": {"$gt": earned}}, {"total_earned": earned, "_id": {"$lt": account_id}}]}
        f.setdefault("$and", []).append(ahead)
    return f


def _prefixed(f: dict[str, Any], prefix: str) -> dict[str, Any]:
    """Rewrite a filter to match an embedded document, e.g. a $lookup result."""
    out: dict[str, Any] = {}
    for key, value in f.items():
        if key in ("$or", "$and"):
            out[key] = [_prefixed(sub, prefix) for sub in value]
        else:
            out[prefix + key] = value
    return out


def _session_write(target: SessionWrite) -> tuple[dict[str, Any], dict[str, Any]]:
    f: dict[str, Any] = {"_id": target.session_id, "is_completed": False}
    if target.expected_coins is not None:
        f["coins_earned"] = target.expected_coins
    if target.view is None:
        return f, {"$set": {"coins_earned": target.coins}}
    if target.view.view_id is not None:
        f["ads_watched.view_id"] = {"$ne": target.view.view_id}
    return f, {"$push": {"ads_watched": _bson(target.view)}, "$inc": {"coins_earned": target.view.coins_rewarded}}


def _pipeline(match: dict[str, Any], by: GroupBy, date_field: str, accumulators: dict[str, Any]) -> list[dict]:
    key = {}
    for name in by:
        if name.startswith("period:"):
            fmt = _PERIOD_FORMATS[name.split(":", 1)[1]]
            key["period"] = {"$dateToString": {"format": fmt, "date": f"${date_field}"}}
        else:
            key[name] = f"${name}"
    return [{"$match": match}, {"$group": {"_id": key or None, **accumulators}}]


def _rows(raw: list[dict[str, Any]], by: GroupBy) -> list[dict[str, Any]]:
    names = ["period" if n.startswith("period:") else n for n in by]
    out = []
    for row in raw:
        ident = row.pop("_id") or {}
        out.append({**{n: ident.get(n) for n in names}, **{k: _plain(v) for k, v in row.items()}})
    out.sort(key=lambda r: tuple("" if r[n] is None else str(r[n]) for n in names))
    return out


class MongoStorage(LedgerStorage):
    def __init__(self, settings: Settings):
        self._settings = settings
        self._transactions = settings.mongodb_transactions
        self._client = None

    async def init(self) -> None:
        self._client = create_client(self._settings)
        await init_db(self._client, self._settings.mongodb_db_name)
        log.info("mongo_ready", db=self._settings.mongodb_db_name, transactions=self._transactions)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def ping(self) -> bool:
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            log.warning("mongo_ping_failed", error=str(e))
            return False
        return True

    # Atomic account mutation

    async def commit(self, changeset: Changeset) -> None:
        try:
            if self._transactions:
                async with self._client.start_session() as session:
                    async with await session.start_transaction():
                        await self._write(changeset, session)
            else:
                await self._write(changeset, None)
        except (DuplicateKeyError, BulkWriteError) as e:
            raise StaleWriteError("duplicate key") from e
        except OperationFailure as e:
            if e.has_error_label("TransientTransactionError"):
                raise StaleWriteError("transaction write conflict") from e
            raise

    async def _write(self, cs: Changeset, session: AsyncClientSession | None) -> None:
        accounts = AccountDocument.get_pymongo_collection()
        entries = LedgerEntryDocument.get_pymongo_collection()
        payouts = PayoutDocument.get_pymongo_collection()

        keys = [e.idempotency_key for e in cs.entries if e.idempotency_key]
        if keys:
            seen = await entries.find_one(
                {"account_id": cs.account_id, "idempotency_key": {"$in": keys}}, session=session
            )
            if seen is not None:
                raise StaleWriteError("idempotency key already applied")

        # Payout status moves outside commits too, so it is claimed first.
        write = cs.payout
        previous_payout = None
        if write is not None and write.expected_statuses is not None:
            previous_payout = await payouts.find_one_and_replace(
                {"_id": write.payout.id, "status": {"$in": list(write.expected_statuses)}},
                _to_mongo(write.payout),
                session=session,
            )
            if previous_payout is None:
                raise StaleWriteError("payout status changed")

        target = cs.session
        if target is not None:
            claimed = await GameSessionDocument.get_pymongo_collection().find_one_and_update(
                *_session_write(target), session=session
            )
            if claimed is None:
                if session is None:
                    await self._undo_claims(previous_payout, None)
                raise StaleWriteError("game session changed")

        fields: dict[str, Any] = {"balance": cs.balance, "total_earned": cs.total_earned}
        if cs.frozen is not None:
            fields["frozen"] = cs.frozen
            fields["frozen_reason"] = cs.frozen_reason
        previous_account = await accounts.find_one_and_update(
            {"_id": cs.account_id, "version": cs.expected_version},
            {"$set": fields, "$inc": {"version": 1}},
            return_document=ReturnDocument.BEFORE,
            session=session,
        )
        if previous_account is None:
            if session is None:
                await self._undo_claims(previous_payout, target)
            raise StaleWriteError("account version changed")

        try:
            if cs.entries:
                base = (cs.expected_version + 1) * 1000
                docs = []
                for i, entry in enumerate(cs.entries):
                    doc = _to_mongo(entry)
                    doc["seq"] = base + i
                    docs.append(doc)
                await entries.insert_many(docs, ordered=True, session=session)
            if write is not None and write.expected_statuses is None:
                await payouts.insert_one(_to_mongo(write.payout), session=session)
        except (DuplicateKeyError, BulkWriteError):
            if session is None:
                await self._undo(cs, previous_account, previous_payout)
            raise

        if cs.ad_unit_id:
            await AdRewardDocument.get_pymongo_collection().update_one(
                {"ad_unit_id": cs.ad_unit_id},
                {
                    "$inc": {
                        "analytics.total_views": 1,
                        "analytics.total_rewards_given": 1,
                        "analytics.total_coins_distributed": cs.ad_coins,
                    }
                },
                session=session,
            )

    async def _undo(self, cs: Changeset, previous_account: dict[str, Any], previous_payout: dict[str, Any] | None) -> None:
        """Roll back a half-written commit when running without transactions."""
        restore = {k: previous_account.get(k) for k in ("balance", "total_earned", "frozen", "frozen_reason")}
        await AccountDocument.get_pymongo_collection().update_one(
            {"_id": cs.account_id, "version": cs.expected_version + 1},
            {"$set": restore, "$inc": {"version": 1}},
        )
        entry_ids = [e.id for e in cs.entries]
        if entry_ids:
            await LedgerEntryDocument.get_pymongo_collection().delete_many({"_id": {"$in": entry_ids}})
        await self._undo_claims(previous_payout, cs.session)
        log.warning("ledger_commit_undone", account_id=cs.account_id, entries=len(entry_ids))

    async def _undo_claims(self, previous_payout: dict[str, Any] | None, target: SessionWrite | None) -> None:
        if previous_payout is not None:
            await PayoutDocument.get_pymongo_collection().replace_one({"_id": previous_payout["_id"]}, previous_payout)
        if target is None:
            return
        sessions = GameSessionDocument.get_pymongo_collection()
        if target.view is not None:
            await sessions.update_one(
                {"_id": target.session_id},
                {
                    "$pull": {"ads_watched": {"view_id": target.view.view_id}},
                    "$inc": {"coins_earned": -target.view.coins_rewarded},
                },
            )
        elif target.expected_coins is not None:
            await sessions.update_one(
                {"_id": target.session_id, "coins_earned": target.coins},
                {"$set": {"coins_earned": target.expected_coins}},
            )

    # Accounts

    async def create_account(self, account: Account) -> Account:
        stored = account.model_copy(update={"email": account.email.lower()})
        try:
            await AccountDocument.get_pymongo_collection().insert_one(_to_mongo(stored))
        except DuplicateKeyError as e:
            raise ConflictError("User with this email already exists") from e
        return stored

    async def get_account(self, account_id: str) -> Account | None:
        doc = await AccountDocument.get(account_id)
        return Account.model_validate(doc.model_dump()) if doc else None

    async def get_account_by_email(self, email: str) -> Account | None:
        doc = await AccountDocument.find_one({"email": email.lower()})
        return Account.model_validate(doc.model_dump()) if doc else None

    async def get_accounts(self, account_ids: Sequence[str]) -> dict[str, Account]:
        docs = await AccountDocument.find({"_id": {"$in": list(account_ids)}}).to_list()
        return {d.id: Account.model_validate(d.model_dump()) for d in docs}

    async def update_profile(self, account_id: str, fields: dict[str, Any]) -> Account | None:
        forbidden = LEDGER_FIELDS.intersection(fields) | ({"id", "email"} & set(fields))
        if forbidden:
            raise ValidationError(f"Cannot update {', '.join(sorted(forbidden))} through the profile")
        current = await self.get_account(account_id)
        if current is None:
            return None
        merged = Account.model_validate({**current.model_dump(), **fields})
        changes = {k: getattr(merged, k) for k in fields}
        result = await AccountDocument.get_pymongo_collection().update_one({"_id": account_id}, {"$set": _bson(changes)})
        return await self.get_account(account_id) if result.matched_count else None

    async def list_accounts(
        self, query: AccountQuery, offset: int = 0, limit: int = 50, sort: str = "-created_at"
    ) -> tuple[list[Account], int]:
        f = _account_filter(query)
        total = await AccountDocument.find(f).count()
        order = [(sort.lstrip("-"), -1 if sort.startswith("-") else 1), ("_id", 1)]
        docs = await AccountDocument.find(f).sort(order).skip(offset).limit(limit).to_list()
        return [Account.model_validate(d.model_dump()) for d in docs], total

    async def count_accounts(self, query: AccountQuery) -> int:
        return await AccountDocument.find(_account_filter(query)).count()

    async def group_accounts(self, query: AccountQuery, by: GroupBy) -> list[dict[str, Any]]:
        pipeline = _pipeline(
            _account_filter(query),
            by,
            "created_at",
            {
                "count": {"$sum": 1},
                "countries": {"$addToSet": "$country"},
                "active": {"$sum": {"$cond": ["$is_active", 1, 0]}},
                "total_balance": {"$sum": "$balance"},
                "total_earned": {"$sum": "$total_earned"},
                "total_engagement": {"$sum": "$total_engagement_seconds"},
            },
        )
        rows = _rows(await AccountDocument.aggregate(pipeline).to_list(), by)
        for row in rows:
            row["unique_countries"] = len(row.pop("countries"))
        return rows

    async def iter_account_ids(self) -> AsyncIterator[str]:
        async for row in AccountDocument.get_pymongo_collection().find({}, {"_id": 1}).sort("_id", 1):
            yield row["_id"]

    # Ledger

    def _entries(self, q: LedgerQuery, newest_first: bool = False):
        direction = -1 if newest_first else 1
        order = [("seq", direction)] if q.account_id else [("created_at", direction), ("seq", direction)]
        return LedgerEntryDocument.find(_ledger_filter(q)).sort(order)

    async def get_entry_by_key(self, account_id: str, idempotency_key: str) -> LedgerEntry | None:
        doc = await LedgerEntryDocument.find_one({"account_id": account_id, "idempotency_key": idempotency_key})
        return LedgerEntry.model_validate(doc.model_dump()) if doc else None

    async def list_entries(
        self, query: LedgerQuery, offset: int = 0, limit: int = 50, newest_first: bool = False
    ) -> list[LedgerEntry]:
        docs = await self._entries(query, newest_first).skip(offset).limit(limit).to_list()
        return [LedgerEntry.model_validate(d.model_dump()) for d in docs]

    async def count_entries(self, query: LedgerQuery) -> int:
        return await LedgerEntryDocument.find(_ledger_filter(query)).count()

    async def sum_entries(self, query: LedgerQuery) -> int:
        rows = await self.group_entries(query, [])
        return rows[0]["total"] if rows else 0

    async def latest_entry(self, query: LedgerQuery) -> LedgerEntry | None:
        docs = await self._entries(query, newest_first=True).limit(1).to_list()
        return LedgerEntry.model_validate(docs[0].model_dump()) if docs else None

    async def group_entries(self, query: LedgerQuery, by: GroupBy) -> list[dict[str, Any]]:
        pipeline = _pipeline(
            _ledger_filter(query), by, "created_at", {"total": {"$sum": "$amount"}, "count": {"$sum": 1}}
        )
        return _rows(await LedgerEntryDocument.aggregate(pipeline).to_list(), by)

    def _earners(self, entries: LedgerQuery, accounts: AccountQuery) -> list[dict[str, Any]]:
        return [
            {"$match": _ledger_filter(entries)},
            {"$group": {"_id": "$account_id", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
            {
                "$lookup": {
                    "from": AccountDocument.get_pymongo_collection().name,
                    "localField": "_id",
                    "foreignField": "_id",
                    "as": "account",
                }
            },
            {"$unwind": "$account"},
            {"$match": _prefixed(_account_filter(accounts), "account.")},
        ]

    async def rank_earners(
        self, entries: LedgerQuery, accounts: AccountQuery, offset: int = 0, limit: int = 50
    ) -> tuple[list[dict[str, Any]], int]:
        pipeline = self._earners(entries, accounts) + [
            {
                "$facet": {
                    "rows": [{"$sort": {"total": -1, "_id": 1}}, {"$skip": offset}, {"$limit": limit}],
                    "total": [{"$count": "n"}],
                }
            }
        ]
        facet = (await LedgerEntryDocument.aggregate(pipeline).to_list())[0]
        rows = [{"account_id": r["_id"], "total": r["total"], "count": r["count"]} for r in facet["rows"]]
        return rows, facet["total"][0]["n"] if facet["total"] else 0

    async def earner_position(
        self, entries: LedgerQuery, accounts: AccountQuery, account_id: str
    ) -> tuple[int, int] | None:
        own = self._earners(replace(entries, account_id=account_id), accounts)
        mine = await LedgerEntryDocument.aggregate(own).to_list()
        if not mine:
            return None
        total = mine[0]["total"]
        pipeline = self._earners(entries, accounts) + [
            {"$match": {"$or": [{"total": {"$gt": total}}, {"total": total, "_id": {"$lt": account_id}}]}},
            {"$count": "n"},
        ]
        ahead = await LedgerEntryDocument.aggregate(pipeline).to_list()
        return (ahead[0]["n"] if ahead else 0) + 1, total

    # Ad reward configs

    async def insert_ad_config(self, config: AdRewardConfig) -> AdRewardConfig:
        try:
            await AdRewardDocument.get_pymongo_collection().insert_one(_to_mongo(config))
        except DuplicateKeyError as e:
            raise ConflictError("Ad unit ID already exists") from e
        return config

    async def get_ad_config(self, ad_unit_id: str) -> AdRewardConfig | None:
        doc = await AdRewardDocument.find_one({"ad_unit_id": ad_unit_id})
        return AdRewardConfig.model_validate(doc.model_dump()) if doc else None

    async def get_ad_config_by_id(self, config_id: str) -> AdRewardConfig | None:
        doc = await AdRewardDocument.get(config_id)
        return AdRewardConfig.model_validate(doc.model_dump()) if doc else None

    async def update_ad_config(self, config_id: str, fields: dict[str, Any]) -> AdRewardConfig | None:
        if "analytics" in fields or "ad_unit_id" in fields:
            raise ValidationError("Cannot update ad_unit_id or analytics")
        current = await self.get_ad_config_by_id(config_id)
        if current is None:
            return None
        merged = AdRewardConfig.model_validate({**current.model_dump(), **fields})
        # Only the named fields are written, so concurrent analytics $inc survive.
        result = await AdRewardDocument.get_pymongo_collection().update_one(
            {"_id": config_id}, {"$set": _bson({k: getattr(merged, k) for k in fields})}
        )
        return await self.get_ad_config_by_id(config_id) if result.matched_count else None

    async def list_ad_configs(self, ad_type: str | None = None, active: bool | None = None) -> list[AdRewardConfig]:
        f: dict[str, Any] = {}
        if ad_type is not None:
            f["ad_type"] = ad_type
        if active is not None:
            f["is_active"] = active
        docs = await AdRewardDocument.find(f).sort([("ad_type", 1), ("coin_reward", -1)]).to_list()
        return [AdRewardConfig.model_validate(d.model_dump()) for d in docs]

    # Payouts

    async def get_payout(self, payout_id: str) -> Payout | None:
        doc = await PayoutDocument.get(payout_id)
        return Payout.model_validate(doc.model_dump()) if doc else None

    async def find_open_payout(self, account_id: str) -> Payout | None:
        doc = await PayoutDocument.find_one({"account_id": account_id, "status": {"$in": list(OPEN_STATUSES)}})
        return Payout.model_validate(doc.model_dump()) if doc else None

    async def list_payouts(self, query: PayoutQuery, offset: int = 0, limit: int = 20) -> tuple[list[Payout], int]:
        f = _payout_filter(query)
        total = await PayoutDocument.find(f).count()
        docs = await PayoutDocument.find(f).sort("-requested_at").skip(offset).limit(limit).to_list()
        return [Payout.model_validate(d.model_dump()) for d in docs], total

    async def group_payouts(self, query: PayoutQuery, by: GroupBy) -> list[dict[str, Any]]:
        pipeline = _pipeline(
            _payout_filter(query),
            by,
            "requested_at",
            {
                "count": {"$sum": 1},
                "total_usd": {"$sum": "$requested_amount_usd"},
                "total_coins": {"$sum": "$coins_deducted"},
            },
        )
        return _rows(await PayoutDocument.aggregate(pipeline).to_list(), by)

    async def transition_payout(
        self, payout_id: str, expected_statuses: Sequence[str], fields: dict[str, Any]
    ) -> Payout | None:
        current = await self.get_payout(payout_id)
        if current is None or current.status not in expected_statuses:
            return None
        merged = Payout.model_validate({**current.model_dump(), **fields})
        raw = await PayoutDocument.get_pymongo_collection().find_one_and_update(
            {"_id": payout_id, "status": {"$in": list(expected_statuses)}},
            {"$set": _bson({k: getattr(merged, k) for k in fields})},
            return_document=ReturnDocument.AFTER,
        )
        return await self.get_payout(payout_id) if raw else None

    async def set_payout_notes(self, payout_id: str, admin_notes: str) -> Payout | None:
        result = await PayoutDocument.get_pymongo_collection().update_one(
            {"_id": payout_id}, {"$set": {"admin_notes": admin_notes}}
        )
        return await self.get_payout(payout_id) if result.matched_count else None

    # Game sessions

    async def insert_session(self, session: GameSession) -> GameSession:
        await GameSessionDocument.get_pymongo_collection().insert_one(_to_mongo(session))
        return session

    async def get_session(self, session_id: str) -> GameSession | None:
        doc = await GameSessionDocument.get(session_id)
        return GameSession.model_validate(doc.model_dump()) if doc else None

    async def push_session_view(self, session_id: str, view: AdView) -> GameSession | None:
        f: dict[str, Any] = {"_id": session_id, "is_completed": False}
        if view.view_id is not None:
            f["ads_watched.view_id"] = {"$ne": view.view_id}
        result = await GameSessionDocument.get_pymongo_collection().update_one(
            f, {"$push": {"ads_watched": _bson(view)}, "$inc": {"coins_earned": view.coins_rewarded}}
        )
        return await self.get_session(session_id) if result.modified_count else None

    async def update_session_stats(self, session_id: str, stats: dict[str, int]) -> GameSession | None:
        result = await GameSessionDocument.get_pymongo_collection().update_one(
            {"_id": session_id, "is_completed": False},
            {"$set": {f"game_stats.{name}": value for name, value in stats.items()}},
        )
        return await self.get_session(session_id) if result.matched_count else None

    async def end_session(self, session_id: str, now: datetime) -> GameSession | None:
        current = await self.get_session(session_id)
        if current is None or current.is_completed:
            return None
        duration = max(0, int((now - current.start_time).total_seconds()))
        result = await GameSessionDocument.get_pymongo_collection().update_one(
            {"_id": session_id, "is_completed": False},
            {"$set": {"end_time": now, "is_completed": True, "duration_seconds": duration}},
        )
        return await self.get_session(session_id) if result.modified_count else None

    async def close_open_sessions(self, account_id: str, now: datetime) -> int:
        collection = GameSessionDocument.get_pymongo_collection()
        closed = 0
        async for row in collection.find({"account_id": account_id, "is_completed": False}):
            duration = max(0, int((now - row["start_time"]).total_seconds()))
            result = await collection.update_one(
                {"_id": row["_id"], "is_completed": False},
                {"$set": {"end_time": now, "is_completed": True, "duration_seconds": duration}},
            )
            closed += result.modified_count
        return closed

    async def list_sessions(
        self, account_id: str | None, offset: int = 0, limit: int = 20, completed: bool | None = None
    ) -> tuple[list[GameSession], int]:
        f: dict[str, Any] = {}
        if account_id is not None:
            f["account_id"] = account_id
        if completed is not None:
            f["is_completed"] = completed
        total = await GameSessionDocument.find(f).count()
        docs = await GameSessionDocument.find(f).sort("-start_time").skip(offset).limit(limit).to_list()
        return [GameSession.model_validate(d.model_dump()) for d in docs], total

    async def group_sessions(
        self, account_id: str | None, start: datetime | None, by: GroupBy
    ) -> list[dict[str, Any]]:
        f: dict[str, Any] = {}
        if account_id is not None:
            f["account_id"] = account_id
        if start is not None:
            f["start_time"] = {"$gte": start}
        pipeline = _pipeline(
            f,
            by,
            "start_time",
            {
                "count": {"$sum": 1},
                "total_duration": {"$sum": "$duration_seconds"},
                "total_coins": {"$sum": "$coins_earned"},
                "total_ads": {"$sum": {"$size": "$ads_watched"}},
                "max_coins": {"$max": "$coins_earned"},
                "max_score": {"$max": "$game_stats.highest_score"},
            },
        )
        return _rows(await GameSessionDocument.aggregate(pipeline).to_list(), by)

    # Policy and audit

    async def load_policy(self) -> PayoutPolicy | None:
        doc = await PayoutPolicyDocument.get(POLICY_ID)
        return PayoutPolicy.model_validate(doc.model_dump()) if doc else None

    async def save_policy(self, policy: PayoutPolicy) -> PayoutPolicy:
        data = _bson(policy.model_dump())
        data["_id"] = POLICY_ID
        await PayoutPolicyDocument.get_pymongo_collection().replace_one({"_id": POLICY_ID}, data, upsert=True)
        return policy

    async def append_audit(self, event: AuditEvent) -> None:
        await AuditEventDocument.get_pymongo_collection().insert_one(_to_mongo(event))

    async def list_audit(self, offset: int = 0, limit: int = 50) -> tuple[list[AuditEvent], int]:
        total = await AuditEventDocument.find({}).count()
        docs = await AuditEventDocument.find({}).sort("-created_at").skip(offset).limit(limit).to_list()
        return [AuditEvent.model_validate(d.model_dump()) for d in docs], total
