import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Use the in-memory backend and cheap hashing
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("PAYPAL_MODE", "disabled")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")

from app.core.config import Settings  # noqa: E402
from app.core.exceptions import GatewayError  # noqa: E402
from app.models.account import Account  # noqa: E402
from app.models.ad_reward import AdRewardConfig, AdRewardRequirements  # noqa: E402
from app.services.container import Services, build_services  # noqa: E402
from app.services.gateway import GatewayReceipt, GatewayStatus, PayoutGateway  # noqa: E402
from app.storage.memory import MemoryStorage  # noqa: E402

# A Wednesday
NOW = datetime(2024, 5, 15, 12, 0, 0)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway(PayoutGateway):
    """Records calls; set `error` to make the next calls raise, `receipt_status` to shape sends."""

    name = "fake"

    def __init__(self):
        self.sent: list[dict] = []
        self.status_checks: list[str] = []
        self.error: GatewayError | None = None
        self.receipt_status = "completed"
        self.remote_status = GatewayStatus(status="completed", raw_status="SUCCESS")

    async def send_payout(self, destination: str, amount_usd: Decimal, memo: str, reference: str) -> GatewayReceipt:
        self.sent.append({"destination": destination, "amount_usd": amount_usd, "reference": reference})
        if self.error is not None:
            raise self.error
        return GatewayReceipt(transaction_ref=f"BATCH-{reference[:8]}", batch_ref=reference, status=self.receipt_status)

    async def get_payout_status(self, transaction_ref: str) -> GatewayStatus:
        self.status_checks.append(transaction_ref)
        if self.error is not None:
            raise self.error
        return self.remote_status


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, storage_backend="memory", bcrypt_rounds=4, ledger_max_retries=8)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def services(settings, storage, gateway, clock) -> Services:
    return build_services(settings, storage=storage, gateway=gateway, clock=clock)


@pytest.fixture
def make_account(services: Services):
    """Create an account directly in storage, optionally funded through the ledger."""
    counter = {"n": 0}

    async def _make(balance: int = 0, **fields) -> Account:
        counter["n"] += 1
        fields.setdefault("email", f"player{counter['n']}@example.com")
        fields.setdefault("name", f"Player {counter['n']}")
        fields.setdefault("paypal_email", fields["email"])
        account = await services.storage.create_account(Account(**fields))
        if balance:
            await services.balances.credit(account.id, balance, kind="bonus", source="daily_bonus")
        return await services.accounts.get(account.id)

    return _make


@pytest.fixture
def make_ad_unit(services: Services):
    async def _make(ad_unit_id: str = "rv-1", coin_reward: int = 50, **fields) -> AdRewardConfig:
        requirements = AdRewardRequirements(
            min_level=fields.pop("min_level", 0),
            cooldown_minutes=fields.pop("cooldown_minutes", 0),
        )
        config = AdRewardConfig(
            ad_type=fields.pop("ad_type", "rewarded_video"),
            ad_unit_id=ad_unit_id,
            ad_unit_name=fields.pop("ad_unit_name", f"Unit {ad_unit_id}"),
            coin_reward=coin_reward,
            requirements=requirements,
            **fields,
        )
        return await services.ad_rewards.create(config, actor_id=None)

    return _make


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    app.state.services = services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.state.services = None
