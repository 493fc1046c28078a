"""Read-only views over the ledger, payouts, accounts and game sessions.

Everything here is computed at query time from storage aggregates; no
derived state is kept.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from app.core.clock import PERIODS, Clock, series_start, start_of_day, start_of_month, timeframe_start, utcnow
from app.core.exceptions import ValidationError
from app.core.pagination import paginate
from app.models.account import Account
from app.models.ledger_entry import AD_SOURCES
from app.services.fees import usd_for
from app.services.payouts import PayoutManager
from app.storage.base import AccountQuery, LedgerQuery, LedgerStorage, PayoutQuery

LEADERBOARD_TIMEFRAMES = ("daily", "weekly", "monthly", "all-time")
ANALYTICS_METRICS = ("users", "coins", "sessions", "payouts")
EXPORT_TYPES = ("users", "payouts", "transactions", "sessions", "analytics")

EARNED = ("earned",)


def _nest(rows: list[dict[str, Any]], into: str, totals: tuple[str, ...]) -> list[dict[str, Any]]:
    """Fold per-(period, x) buckets into one row per period listing them under `into`."""
    out: dict[str, dict[str, Any]] = {}
    for row in rows:
        period = row["period"]
        slot = out.setdefault(period, {"period": period, into: [], **{t: 0 for t in totals}})
        slot[into].append({k: v for k, v in row.items() if k != "period"})
        for t in totals:
            slot[t] += row[t]
    return [out[p] for p in sorted(out)]


def _avg(total: int | Decimal, count: int) -> float:
    return round(float(total) / count, 2) if count else 0.0


class ReportingService:
    def __init__(self, storage: LedgerStorage, payouts: PayoutManager, clock: Clock = utcnow):
        self._storage = storage
        self._payouts = payouts
        self._clock = clock

    # User-facing

    async def user_dashboard(self, account: Account) -> dict[str, Any]:
        now = self._clock()
        policy = await self._payouts.policy()
        today = await self._storage.group_entries(
            LedgerQuery(account_id=account.id, kinds=EARNED, start=start_of_day(now)), []
        )
        weekly = await self._storage.group_entries(
            LedgerQuery(account_id=account.id, kinds=EARNED, start=timeframe_start(now, "weekly")), ["source"]
        )
        recent = await self._storage.list_entries(LedgerQuery(account_id=account.id), limit=10, newest_first=True)
        return {
            "user": {
                "name": account.name,
                "email": account.email,
                "coins": account.balance,
                "money_equivalent": str(usd_for(account.balance, policy)),
                "total_coins_earned": account.total_earned,
                "total_engagement_time": account.total_engagement_seconds,
                "registration_date": account.created_at.isoformat(),
                "country": account.country,
            },
            "today_earnings": {
                "total_coins": today[0]["total"] if today else 0,
                "transaction_count": today[0]["count"] if today else 0,
            },
            "weekly_stats": [{"source": b["source"], "total_coins": b["total"], "count": b["count"]} for b in weekly],
            "engagement_stats": await self.engagement(account.id, "weekly"),
            "recent_transactions": [e.model_dump(mode="json") for e in recent],
            "conversion_rate": str(policy.conversion_rate),
        }

    async def entry_summary(self, account_id: str) -> list[dict[str, Any]]:
        rows = await self._storage.group_entries(LedgerQuery(account_id=account_id), ["kind"])
        return [{"kind": r["kind"], "total_amount": r["total"], "count": r["count"]} for r in rows]

    async def earnings(self, account_id: str, timeframe: str = "monthly") -> dict[str, Any]:
        if timeframe not in PERIODS:
            raise ValidationError(f"Invalid timeframe: {timeframe}")
        q = LedgerQuery(account_id=account_id, kinds=EARNED, start=series_start(self._clock(), timeframe))
        rows = await self._storage.group_entries(q, [f"period:{timeframe}", "source"])
        series = _nest(
            [{"period": r["period"], "source": r["source"], "total_coins": r["total"], "count": r["count"]} for r in rows],
            "sources",
            ("total_coins",),
        )
        by_source = await self._storage.group_entries(q, ["source"])
        top = sorted(
            (
                {
                    "source": r["source"],
                    "total_coins": r["total"],
                    "count": r["count"],
                    "avg_coins_per_transaction": _avg(r["total"], r["count"]),
                }
                for r in by_source
            ),
            key=lambda r: -r["total_coins"],
        )
        return {"earnings_data": series, "top_sources": top, "timeframe": timeframe}

    async def engagement(self, account_id: str | None, timeframe: str = "all") -> dict[str, Any]:
        try:
            start = timeframe_start(self._clock(), timeframe)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        rows = await self._storage.group_sessions(account_id, start, [])
        row = rows[0] if rows else {"count": 0, "total_duration": 0, "total_coins": 0, "total_ads": 0}
        return {
            "total_sessions": row["count"],
            "total_duration": row["total_duration"],
            "total_coins_earned": row["total_coins"],
            "total_ads_watched": row["total_ads"],
            "avg_session_duration": _avg(row["total_duration"], row["count"]),
        }

    async def user_stats(self, account: Account) -> dict[str, Any]:
        now = self._clock()
        policy = await self._payouts.policy()
        sessions = await self._storage.group_sessions(account.id, None, [])
        best = sessions[0] if sessions else {"count": 0, "total_duration": 0, "max_coins": 0, "max_score": 0}
        by_source = await self._storage.group_entries(LedgerQuery(account_id=account.id, kinds=EARNED), ["source"])
        days = await self._storage.group_entries(
            LedgerQuery(account_id=account.id, start=start_of_day(now) - timedelta(days=29)), ["period:daily"]
        )
        return {
            "user": {
                "coins": account.balance,
                "money_equivalent": str(usd_for(account.balance, policy)),
                "total_coins_earned": account.total_earned,
                "total_engagement_time": account.total_engagement_seconds,
            },
            "gaming": {
                "total_sessions": best["count"],
                "average_session_duration": round(_avg(best["total_duration"], best["count"])),
                "best_performance": {"max_coins_in_session": best["max_coins"], "max_score": best["max_score"]},
            },
            "earnings": {
                "by_source": sorted(
                    ({"source": r["source"], "total_coins": r["total"], "count": r["count"]} for r in by_source),
                    key=lambda r: -r["total_coins"],
                ),
                "total_sources": len(by_source),
            },
            "activity": {
                "active_days_last_30": len(days),
                "active_days": sorted((d["period"] for d in days), reverse=True),
            },
            "conversion_rate": str(policy.conversion_rate),
        }

    async def ad_analytics(self, account_id: str, timeframe: str = "all") -> dict[str, Any]:
        try:
            start = timeframe_start(self._clock(), timeframe)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        q = LedgerQuery(account_id=account_id, sources=AD_SOURCES, start=start, min_amount=1)
        by_type = await self._storage.group_entries(q, ["source"])
        by_unit = await self._storage.group_entries(q, ["ad_unit_id", "source"])
        units = []
        for r in by_unit:
            config = await self._storage.get_ad_config(r["ad_unit_id"]) if r["ad_unit_id"] else None
            units.append(
                {
                    "ad_unit_id": r["ad_unit_id"],
                    "ad_type": r["source"],
                    "ad_unit_name": config.ad_unit_name if config else None,
                    "coin_reward_per_watch": config.coin_reward if config else None,
                    "total_watches": r["count"],
                    "total_coins_earned": r["total"],
                }
            )
        return {
            "by_ad_type": [
                {"ad_type": r["source"], "total_watches": r["count"], "total_coins_earned": r["total"]} for r in by_type
            ],
            "by_ad_unit": units,
            "timeframe": timeframe,
        }

    # Leaderboards

    async def leaderboard(
        self,
        timeframe: str,
        country: str | None = None,
        offset: int = 0,
        limit: int = 50,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        """Rank active accounts by lifetime earnings or by credits earned in the window.

        Ties are broken by account id; only the requested page is loaded.
        """
        if timeframe not in LEADERBOARD_TIMEFRAMES:
            raise ValidationError("Invalid timeframe. Use: daily, weekly, monthly, or all-time")
        limit, offset = paginate(limit, offset, max_limit=100)
        country = country.upper() if country else None
        accounts = AccountQuery(active=True, country=country)
        if timeframe == "all-time":
            rows, total, current = await self._all_time_ranking(accounts, offset, limit, account_id)
        else:
            earned = LedgerQuery(kinds=EARNED, start=timeframe_start(self._clock(), timeframe))
            rows, total, current = await self._window_ranking(earned, accounts, offset, limit, account_id)
        return {
            "leaderboard": [{**row, "rank": offset + i + 1} for i, row in enumerate(rows)],
            "current_user": current,
            "total": total,
            "timeframe": timeframe,
            "country": country or "global",
        }

    async def _all_time_ranking(
        self, accounts: AccountQuery, offset: int, limit: int, account_id: str | None
    ) -> tuple[list[dict[str, Any]], int, dict[str, int] | None]:
        page, total = await self._storage.list_accounts(accounts, offset=offset, limit=limit, sort="-total_earned")
        rows = [
            {
                "account_id": a.id,
                "name": a.name,
                "country": a.country,
                "total_coins_earned": a.total_earned,
                "registration_date": a.created_at.isoformat(),
            }
            for a in page
        ]
        current = None
        me = await self._storage.get_account(account_id) if account_id else None
        if me is not None and me.is_active and (accounts.country is None or me.country == accounts.country):
            ahead = await self._storage.count_accounts(replace(accounts, ranked_above=(me.total_earned, me.id)))
            current = {"rank": ahead + 1, "total_coins_earned": me.total_earned}
        return rows, total, current

    async def _window_ranking(
        self, earned: LedgerQuery, accounts: AccountQuery, offset: int, limit: int, account_id: str | None
    ) -> tuple[list[dict[str, Any]], int, dict[str, int] | None]:
        buckets, total = await self._storage.rank_earners(earned, accounts, offset=offset, limit=limit)
        profiles = await self._storage.get_accounts([b["account_id"] for b in buckets])
        rows = []
        for b in buckets:
            a = profiles[b["account_id"]]
            rows.append(
                {
                    "account_id": a.id,
                    "name": a.name,
                    "country": a.country,
                    "total_coins_earned": b["total"],
                    "transaction_count": b["count"],
                    "registration_date": a.created_at.isoformat(),
                }
            )
        current = None
        position = await self._storage.earner_position(earned, accounts, account_id) if account_id else None
        if position is not None:
            current = {"rank": position[0], "total_coins_earned": position[1]}
        return rows, total, current

    async def countries(self) -> list[dict[str, Any]]:
        rows = await self._storage.group_accounts(AccountQuery(active=True), ["country"])
        return sorted(({"country": r["country"], "user_count": r["count"]} for r in rows), key=lambda r: -r["user_count"])

    async def global_stats(self) -> dict[str, Any]:
        now = self._clock()
        active_today = await self._storage.group_entries(LedgerQuery(start=start_of_day(now)), ["account_id"])
        return {
            "total_active_users": await self._storage.count_accounts(AccountQuery(active=True)),
            "total_coins_distributed": await self._storage.sum_entries(LedgerQuery(kinds=EARNED)),
            "daily_active_users": len(active_today),
            "top_countries": (await self.countries())[:10],
        }

    # Admin

    async def admin_dashboard(self) -> dict[str, Any]:
        now = self._clock()
        today = start_of_day(now)
        yesterday = today - timedelta(days=1)
        policy = await self._payouts.policy()
        new_today = await self._storage.count_accounts(AccountQuery(created_start=today))
        new_yesterday = await self._storage.count_accounts(AccountQuery(created_start=yesterday, created_end=today))
        if new_yesterday:
            growth = round((new_today - new_yesterday) / new_yesterday * 100, 1)
        else:
            growth = 100.0 if new_today else 0.0
        payout_stats = {r["status"]: r for r in await self._payouts.stats()}
        ad_views = await self._storage.group_entries(LedgerQuery(start=today, sources=AD_SOURCES, min_amount=1), ["source"])
        recent = await self._storage.list_entries(LedgerQuery(min_amount=100), limit=10, newest_first=True)
        _, open_sessions = await self._storage.list_sessions(None, limit=1, completed=False)
        _, all_sessions = await self._storage.list_sessions(None, limit=1)
        return {
            "users": {
                "total": await self._storage.count_accounts(AccountQuery()),
                "active": await self._storage.count_accounts(AccountQuery(active=True)),
                "new_today": new_today,
                "new_yesterday": new_yesterday,
                "growth_rate": growth,
            },
            "coins": {
                "total_distributed": await self._storage.sum_entries(LedgerQuery(kinds=EARNED)),
                "distributed_today": await self._storage.sum_entries(LedgerQuery(kinds=EARNED, start=today)),
                "distributed_this_month": await self._storage.sum_entries(
                    LedgerQuery(kinds=EARNED, start=start_of_month(now))
                ),
                "conversion_rate": str(policy.conversion_rate),
            },
            "payouts": {
                "total": sum(r["count"] for r in payout_stats.values()),
                "pending": payout_stats.get("pending", {}).get("count", 0),
                "processing": payout_stats.get("processing", {}).get("count", 0),
                "completed": payout_stats.get("completed", {}).get("count", 0),
                "total_amount": str(payout_stats.get("completed", {}).get("total_usd", Decimal("0"))),
            },
            "gaming": {"active_sessions": open_sessions, "total_sessions": all_sessions},
            "top_countries": (await self.countries())[:10],
            "recent_high_value_transactions": [e.model_dump(mode="json") for e in recent],
            "system": {
                "active_ad_rewards": len(await self._storage.list_ad_configs(active=True)),
                "today_ad_views": sum(r["count"] for r in ad_views),
                "ad_views_by_type": [{"source": r["source"], "count": r["count"]} for r in ad_views],
            },
        }

    async def analytics(self, metric: str = "users", timeframe: str = "monthly") -> list[dict[str, Any]]:
        """Time series of one metric, oldest bucket first."""
        if metric not in ANALYTICS_METRICS:
            raise ValidationError("Invalid metric. Use: users, coins, sessions, or payouts")
        if timeframe not in PERIODS:
            raise ValidationError(f"Invalid timeframe: {timeframe}")
        start = series_start(self._clock(), timeframe)
        period = f"period:{timeframe}"
        if metric == "users":
            rows = await self._storage.group_accounts(AccountQuery(created_start=start), [period])
            return [
                {"period": r["period"], "new_users": r["count"], "unique_countries": r["unique_countries"]} for r in rows
            ]
        if metric == "coins":
            rows = await self._storage.group_entries(LedgerQuery(kinds=EARNED, start=start), [period, "source"])
            return _nest(
                [
                    {"period": r["period"], "source": r["source"], "total_coins": r["total"], "transactions": r["count"]}
                    for r in rows
                ],
                "sources",
                ("total_coins", "transactions"),
            )
        if metric == "sessions":
            rows = await self._storage.group_sessions(None, start, [period])
            return [
                {
                    "period": r["period"],
                    "total_sessions": r["count"],
                    "total_duration": r["total_duration"],
                    "total_coins_earned": r["total_coins"],
                    "avg_duration": _avg(r["total_duration"], r["count"]),
                }
                for r in rows
            ]
        rows = await self._storage.group_payouts(PayoutQuery(start=start), [period, "status"])
        nested = _nest(
            [{"period": r["period"], "status": r["status"], "count": r["count"], "total_amount": r["total_usd"]} for r in rows],
            "statuses",
            ("count", "total_amount"),
        )
        for row in nested:
            row["total_payouts"] = row.pop("count")
            row["total_amount"] = str(row["total_amount"])
            for s in row["statuses"]:
                s["total_amount"] = str(s["total_amount"])
        return nested

    async def export(
        self, data_type: str, start: datetime | None = None, end: datetime | None = None, limit: int = 1000
    ) -> list[dict[str, Any]]:
        """Records of one type, newest first; `end` is exclusive."""
        if data_type not in EXPORT_TYPES:
            raise ValidationError("Invalid data type. Use: users, payouts, transactions, sessions, or analytics")
        limit = max(1, min(limit, 10000))
        if data_type == "users":
            accounts, _ = await self._storage.list_accounts(AccountQuery(created_start=start, created_end=end), limit=limit)
            return [a.public_dict() for a in accounts]
        if data_type == "payouts":
            payouts, _ = await self._storage.list_payouts(PayoutQuery(start=start, end=end), limit=limit)
            return [p.model_dump(mode="json") for p in payouts]
        if data_type == "transactions":
            entries = await self._storage.list_entries(LedgerQuery(start=start, end=end), limit=limit, newest_first=True)
            return [e.model_dump(mode="json") for e in entries]
        if data_type == "sessions":
            sessions, _ = await self._storage.list_sessions(None, limit=limit)
            return [
                s.model_dump(mode="json")
                for s in sessions
                if (start is None or s.start_time >= start) and (end is None or s.start_time < end)
            ]
        return [await self.admin_dashboard()]
