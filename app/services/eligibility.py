"""Ad-reward eligibility: may this account be paid for this ad view right now?

Checks run in a fixed order and the first failure wins. Reward history
is read from the ledger (credits carrying the ad unit id), so a check is
a pure function of the ledger and the clock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.clock import Clock, start_of_day, utcnow
from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.models.account import Account
from app.models.ad_reward import AdRewardConfig
from app.models.game_session import AdView
from app.services.balances import BalanceManager, Plan, Posting
from app.storage.base import LedgerQuery, LedgerStorage, SessionWrite

log = get_logger(__name__)

NOT_FOUND = "not_found"
LEVEL_TOO_LOW = "level_too_low"
DAILY_LIMIT_REACHED = "daily_limit_reached"
COOLDOWN_ACTIVE = "cooldown_active"


@dataclass
class Eligibility:
    allowed: bool
    reason: str | None = None
    next_available_at: datetime | None = None
    config: AdRewardConfig | None = None

    def as_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "next_available_at": self.next_available_at.isoformat() if self.next_available_at else None,
        }


@dataclass
class GrantResult:
    allowed: bool
    coins_granted: int = 0
    entry_id: str | None = None
    balance: int | None = None
    reason: str | None = None
    next_available_at: datetime | None = None
    duplicate: bool = False

    def as_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "coins_granted": self.coins_granted,
            "entry_id": self.entry_id,
            "balance": self.balance,
            "reason": self.reason,
            "next_available_at": self.next_available_at.isoformat() if self.next_available_at else None,
            "duplicate": self.duplicate,
        }


class EligibilityEngine:
    def __init__(self, storage: LedgerStorage, balances: BalanceManager, clock: Clock = utcnow):
        self._storage = storage
        self._balances = balances
        self._clock = clock

    async def check_eligibility(self, account_id: str, ad_unit_id: str, account_level: int) -> Eligibility:
        """Read-only; does not reserve anything."""
        now = self._clock()
        config = await self._storage.get_ad_config(ad_unit_id)
        if config is None or not config.is_active:
            return Eligibility(allowed=False, reason=NOT_FOUND)
        if account_level < config.requirements.min_level:
            return Eligibility(allowed=False, reason=LEVEL_TOO_LOW, config=config)

        rewards = LedgerQuery(account_id=account_id, ad_unit_id=ad_unit_id, min_amount=1)
        if config.daily_limit > 0:
            today = start_of_day(now)
            rewards.start = today
            granted_today = await self._storage.count_entries(rewards)
            rewards.start = None
            if granted_today >= config.daily_limit:
                return Eligibility(
                    allowed=False,
                    reason=DAILY_LIMIT_REACHED,
                    next_available_at=today + timedelta(days=1),
                    config=config,
                )

        cooldown = config.requirements.cooldown_minutes
        if cooldown > 0:
            last = await self._storage.latest_entry(rewards)
            if last is not None:
                available_at = last.created_at + timedelta(minutes=cooldown)
                if now < available_at:
                    return Eligibility(
                        allowed=False,
                        reason=COOLDOWN_ACTIVE,
                        next_available_at=available_at,
                        config=config,
                    )

        return Eligibility(allowed=True, config=config)

    async def grant_reward(
        self,
        account_id: str,
        ad_unit_id: str,
        account_level: int | None = None,
        idempotency_key: str | None = None,
        game_session_id: str | None = None,
        session_view: AdView | None = None,
    ) -> GrantResult:
        """Re-check eligibility and credit the reward in one account commit.

        A repeated `idempotency_key` returns the original grant unchanged.
        With `session_view`, a granted view is appended to the game session
        in the same commit.
        """

        async def planner(account: Account) -> Plan:
            if idempotency_key:
                existing = await self._storage.get_entry_by_key(account_id, idempotency_key)
                if existing is not None:
                    return Plan(
                        result=GrantResult(
                            allowed=True,
                            coins_granted=existing.amount,
                            entry_id=existing.id,
                            balance=account.balance,
                            duplicate=True,
                        )
                    )
            if session_view is not None:
                session = await self._storage.get_session(game_session_id)
                if session is None or session.is_completed:
                    raise NotFoundError("Game session not found or already completed")
                recorded = next((v for v in session.ads_watched if v.view_id == session_view.view_id), None)
                if recorded is not None:
                    return Plan(
                        result=GrantResult(
                            allowed=True, coins_granted=recorded.coins_rewarded, balance=account.balance, duplicate=True
                        )
                    )
            level = account.level if account_level is None else account_level
            decision = await self.check_eligibility(account_id, ad_unit_id, level)
            if not decision.allowed:
                return Plan(
                    result=GrantResult(
                        allowed=False,
                        reason=decision.reason,
                        next_available_at=decision.next_available_at,
                        balance=account.balance,
                    )
                )
            config = decision.config
            session_write = None
            if session_view is not None:
                view = session_view.model_copy(update={"coins_rewarded": config.coin_reward})
                session_write = SessionWrite(session_id=game_session_id, view=view)
            return Plan(
                postings=[
                    Posting(
                        amount=config.coin_reward,
                        kind="earned",
                        source=config.source,
                        description=f"Reward for {config.ad_unit_name}",
                        ad_unit_id=ad_unit_id,
                        game_session_id=game_session_id,
                        idempotency_key=idempotency_key,
                    )
                ],
                ad_unit_id=ad_unit_id,
                ad_coins=config.coin_reward,
                session=session_write,
                result=GrantResult(allowed=True, coins_granted=config.coin_reward),
            )

        applied = await self._balances.apply(account_id, planner)
        result: GrantResult = applied.plan.result
        if applied.entries:
            result.entry_id = applied.entries[0].id
            result.balance = applied.account.balance
            log.info(
                "reward_granted",
                account_id=account_id,
                ad_unit_id=ad_unit_id,
                coins=result.coins_granted,
                entry_id=result.entry_id,
            )
        elif not result.allowed:
            log.info("reward_denied", account_id=account_id, ad_unit_id=ad_unit_id, reason=result.reason)
        return result
