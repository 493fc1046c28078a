"""Beanie documents backing the mongo storage backend.

They mirror the domain models in app.models field for field; money is
stored as Decimal128.
"""

from datetime import datetime
from typing import Any

from beanie import DecimalAnnotation, Document, Indexed
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from app.models.account import DeviceInfo
from app.models.ad_reward import AdRewardAnalytics, AdRewardRequirements
from app.models.game_session import AdView, GameStats


class AccountDocument(Document):
    id: str
    email: Indexed(str, unique=True)
    name: str = ""
    password_hash: str = ""
    role: str = "user"
    country: str = "XX"
    ip_address: str | None = None
    paypal_email: str | None = None
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    level: int = 0
    total_engagement_seconds: int = 0
    balance: int = 0
    total_earned: int = 0
    version: int = 0
    frozen: bool = False
    frozen_reason: str | None = None
    is_active: bool = True
    session_version: int = 0
    admin_notes: str | None = None
    last_active_at: datetime
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "accounts"
        indexes = [
            [("is_active", 1), ("country", 1), ("total_earned", -1)],
            [("created_at", -1)],
        ]


class LedgerEntryDocument(Document):
    id: str
    account_id: str
    amount: int
    kind: str
    source: str
    balance_after: int
    description: str | None = None
    ad_unit_id: str | None = None
    game_session_id: str | None = None
    payout_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime
    # Order within the account: committing version * 1000 + position in the commit
    seq: int = 0

    class Settings:
        name = "ledger_entries"
        indexes = [
            [("account_id", 1), ("seq", 1)],
            [("account_id", 1), ("ad_unit_id", 1), ("created_at", -1)],
            [("created_at", -1)],
            IndexModel(
                [("account_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
        ]


class PayoutFeesDocument(BaseModel):
    gateway_fee: DecimalAnnotation
    platform_fee: DecimalAnnotation


class PayoutDocument(Document):
    id: str
    account_id: str
    requested_amount_usd: DecimalAnnotation
    coins_deducted: int
    destination_address: str
    conversion_rate_at_request: DecimalAnnotation
    fees: PayoutFeesDocument
    net_amount_usd: DecimalAnnotation
    status: str
    ledger_entry_id: str | None = None
    refund_entry_id: str | None = None
    gateway_transaction_ref: str | None = None
    gateway_batch_ref: str | None = None
    failure_reason: str | None = None
    admin_notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime
    processed_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime

    class Settings:
        name = "payouts"
        indexes = [
            [("account_id", 1), ("requested_at", -1)],
            IndexModel([("status", ASCENDING), ("requested_at", DESCENDING)]),
        ]


class AdRewardDocument(Document):
    id: str
    ad_type: str
    ad_unit_id: Indexed(str, unique=True)
    ad_unit_name: str
    coin_reward: int
    is_active: bool = True
    description: str | None = None
    minimum_watch_time: int = 0
    daily_limit: int = 0
    requirements: AdRewardRequirements = Field(default_factory=AdRewardRequirements)
    analytics: AdRewardAnalytics = Field(default_factory=AdRewardAnalytics)
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "ad_rewards"
        indexes = [[("ad_type", 1), ("is_active", 1)]]


class GameSessionDocument(Document):
    id: str
    account_id: str
    start_time: datetime
    end_time: datetime | None = None
    duration_seconds: int = 0
    coins_earned: int = 0
    game_stats: GameStats = Field(default_factory=GameStats)
    ads_watched: list[AdView] = Field(default_factory=list)
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    ip_address: str | None = None
    country: str | None = None
    is_completed: bool = False

    class Settings:
        name = "game_sessions"
        indexes = [
            [("account_id", 1), ("start_time", -1)],
            [("account_id", 1), ("is_completed", 1)],
        ]


class PayoutPolicyDocument(Document):
    """Single document with id "payout_policy"."""

    id: str
    conversion_rate: DecimalAnnotation
    platform_fee_rate: DecimalAnnotation
    gateway_fee_rate: DecimalAnnotation
    gateway_fee_min: DecimalAnnotation
    gateway_fee_max: DecimalAnnotation
    min_payout_usd: DecimalAnnotation
    max_payout_usd: DecimalAnnotation
    payouts_enabled: bool = True
    updated_by: str | None = None
    updated_at: datetime

    class Settings:
        name = "settings"


class AuditEventDocument(Document):
    id: str
    actor_id: str | None = None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    class Settings:
        name = "audit_logs"
        indexes = [[("created_at", -1)], [("entity_type", 1), ("entity_id", 1)]]


DOCUMENT_MODELS = [
    AccountDocument,
    LedgerEntryDocument,
    PayoutDocument,
    AdRewardDocument,
    GameSessionDocument,
    PayoutPolicyDocument,
    AuditEventDocument,
]
