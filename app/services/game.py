"""Game sessions: lifecycle, client-reported coins and in-session ad views."""

from datetime import datetime
from typing import Any

from app.core.clock import Clock, utcnow
from app.core.exceptions import NotFoundError, ValidationError
from app.core.logging import get_logger
from app.core.pagination import Page, paginate
from app.models.account import Account, DeviceInfo
from app.models.ad_reward import AD_TYPE_SOURCES
from app.models.game_session import AdView, GameSession, GameStats
from app.services.balances import BalanceManager, Plan, Posting
from app.services.eligibility import EligibilityEngine
from app.services.users import AccountService
from app.storage.base import LedgerStorage, SessionWrite

log = get_logger(__name__)


def ad_view_key(session_id: str, view_id: str) -> str:
    return f"ad:{session_id}:{view_id}"


def _recorded(session: GameSession, view_id: str) -> AdView | None:
    return next((v for v in session.ads_watched if v.view_id == view_id), None)


def _duplicate(session: GameSession, coins: int) -> dict[str, Any]:
    return {"coins_rewarded": coins, "total_session_coins": session.coins_earned, "duplicate": True}


def _outcome(coins: int, session: GameSession, reason: str | None, next_available_at: datetime | None) -> dict[str, Any]:
    return {
        "coins_rewarded": coins,
        "total_session_coins": session.coins_earned,
        "reason": reason,
        "next_available_at": next_available_at.isoformat() if next_available_at else None,
        "duplicate": False,
    }


class GameService:
    def __init__(
        self,
        storage: LedgerStorage,
        balances: BalanceManager,
        eligibility: EligibilityEngine,
        accounts: AccountService,
        clock: Clock = utcnow,
    ):
        self._storage = storage
        self._balances = balances
        self._eligibility = eligibility
        self._accounts = accounts
        self._clock = clock

    async def start(
        self,
        account: Account,
        device_info: DeviceInfo | None = None,
        ip_address: str | None = None,
        country: str | None = None,
    ) -> GameSession:
        """Open a session; any session the account left open is closed first."""
        now = self._clock()
        closed = await self._storage.close_open_sessions(account.id, now)
        session = await self._storage.insert_session(
            GameSession(
                account_id=account.id,
                start_time=now,
                device_info=device_info or DeviceInfo(),
                ip_address=ip_address,
                country=country or account.country,
            )
        )
        await self._accounts.touch(account.id)
        log.info("game_session_started", account_id=account.id, session_id=session.id, closed_previous=closed)
        return session

    async def _open_session(self, account_id: str, session_id: str) -> GameSession:
        session = await self._storage.get_session(session_id)
        if session is None or session.account_id != account_id or session.is_completed:
            raise NotFoundError("Game session not found or already completed")
        return session

    async def update(
        self,
        account_id: str,
        session_id: str,
        game_stats: dict[str, Any] | None = None,
        coins_earned: int | None = None,
    ) -> GameSession:
        """Merge stats; a rise in the session's coin total is credited as game_completion."""
        session = await self._open_session(account_id, session_id)
        if coins_earned is not None:
            if coins_earned < 0:
                raise ValidationError("coins_earned cannot be negative")
            await self._credit_session_coins(account_id, session_id, coins_earned)
        if game_stats:
            merged = GameStats.model_validate({**session.game_stats.model_dump(), **game_stats})
            changes = {name: getattr(merged, name) for name in game_stats if name in GameStats.model_fields}
            if changes and await self._storage.update_session_stats(session_id, changes) is None:
                raise NotFoundError("Game session not found or already completed")
        return await self._open_session(account_id, session_id)

    async def _credit_session_coins(self, account_id: str, session_id: str, reported: int) -> None:
        # The session total moves in the same commit as the credit; a stale total re-plans.
        async def planner(account: Account) -> Plan:
            session = await self._open_session(account_id, session_id)
            delta = reported - session.coins_earned
            if delta <= 0:
                return Plan()
            return Plan(
                postings=[
                    Posting(
                        amount=delta,
                        kind="earned",
                        source="game_completion",
                        description="Game session coins",
                        game_session_id=session_id,
                        idempotency_key=f"game:{session_id}:{reported}",
                    )
                ],
                session=SessionWrite(session_id=session_id, expected_coins=session.coins_earned, coins=reported),
                result=delta,
            )

        await self._balances.apply(account_id, planner)

    async def end(self, account_id: str, session_id: str) -> GameSession:
        await self._open_session(account_id, session_id)
        session = await self._storage.end_session(session_id, self._clock())
        if session is None:
            raise NotFoundError("Game session not found or already completed")
        await self._accounts.add_engagement(account_id, session.duration_seconds, level=session.game_stats.levels_completed)
        log.info("game_session_ended", account_id=account_id, session_id=session_id, duration=session.duration_seconds)
        return session

    async def record_ad_view(
        self,
        account_id: str,
        session_id: str,
        ad_type: str,
        ad_unit_id: str,
        completed: bool,
        view_id: str,
    ) -> dict[str, Any]:
        """Record an ad shown during the session; completed views go through grant_reward.

        The view and its coins reach the session in one atomic write, either
        with the ledger credit or on their own when nothing is granted.
        """
        if ad_type not in AD_TYPE_SOURCES:
            raise ValidationError("Invalid ad type")
        session = await self._open_session(account_id, session_id)
        recorded = _recorded(session, view_id)
        if recorded is not None:
            return _duplicate(session, recorded.coins_rewarded)

        view = AdView(ad_type=ad_type, ad_unit_id=ad_unit_id, view_id=view_id, completed=completed, watched_at=self._clock())
        next_available_at = None
        if completed:
            config = await self._storage.get_ad_config(ad_unit_id)
            if config is not None and config.ad_type != ad_type:
                view.reason = "ad_type_mismatch"
            else:
                grant = await self._eligibility.grant_reward(
                    account_id,
                    ad_unit_id,
                    idempotency_key=ad_view_key(session_id, view_id),
                    game_session_id=session_id,
                    session_view=view,
                )
                if grant.duplicate:
                    return _duplicate(await self._storage.get_session(session_id), grant.coins_granted)
                if grant.allowed:
                    session = await self._storage.get_session(session_id)
                    return _outcome(grant.coins_granted, session, None, None)
                view.reason = grant.reason
                next_available_at = grant.next_available_at

        session = await self._storage.push_session_view(session_id, view)
        if session is None:
            # Closed, or the same view_id was recorded concurrently
            session = await self._open_session(account_id, session_id)
            recorded = _recorded(session, view_id)
            return _duplicate(session, recorded.coins_rewarded if recorded else 0)
        return _outcome(0, session, view.reason, next_available_at)

    async def history(self, account_id: str, offset: int = 0, limit: int = 10) -> Page[GameSession]:
        limit, offset = paginate(limit, offset, max_limit=100)
        items, total = await self._storage.list_sessions(account_id, offset=offset, limit=limit)
        return Page[GameSession](items=items, limit=limit, offset=offset, total=total)
