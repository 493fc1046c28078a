"""Wires the services over one storage backend and payout gateway."""

from dataclasses import dataclass

from app.core.clock import Clock, utcnow
from app.core.config import Settings, get_settings
from app.core.security import CredentialVerifier
from app.services.ad_rewards import AdRewardService
from app.services.balances import BalanceManager
from app.services.eligibility import EligibilityEngine
from app.services.game import GameService
from app.services.gateway import PayoutGateway, get_gateway
from app.services.ledger import LedgerStore
from app.services.payouts import PayoutManager
from app.services.reporting import ReportingService
from app.services.users import AccountService
from app.storage.base import LedgerStorage, get_storage


@dataclass
class Services:
    settings: Settings
    storage: LedgerStorage
    gateway: PayoutGateway
    ledger: LedgerStore
    balances: BalanceManager
    eligibility: EligibilityEngine
    payouts: PayoutManager
    reporting: ReportingService
    accounts: AccountService
    game: GameService
    ad_rewards: AdRewardService

    async def close(self) -> None:
        await self.gateway.aclose()
        await self.storage.close()


def build_services(
    settings: Settings | None = None,
    storage: LedgerStorage | None = None,
    gateway: PayoutGateway | None = None,
    clock: Clock = utcnow,
) -> Services:
    settings = settings or get_settings()
    storage = storage or get_storage(settings)
    gateway = gateway or get_gateway(settings)
    balances = BalanceManager(storage, max_retries=settings.ledger_max_retries, clock=clock)
    eligibility = EligibilityEngine(storage, balances, clock=clock)
    payouts = PayoutManager(storage, balances, gateway, settings=settings, clock=clock)
    accounts = AccountService(storage, CredentialVerifier(rounds=settings.bcrypt_rounds), clock=clock)
    return Services(
        settings=settings,
        storage=storage,
        gateway=gateway,
        ledger=LedgerStore(storage),
        balances=balances,
        eligibility=eligibility,
        payouts=payouts,
        reporting=ReportingService(storage, payouts, clock=clock),
        accounts=accounts,
        game=GameService(storage, balances, eligibility, accounts, clock=clock),
        ad_rewards=AdRewardService(storage, clock=clock),
    )
