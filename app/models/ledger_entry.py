import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.core.clock import utcnow

KINDS = ("earned", "spent", "bonus", "penalty")
CREDIT_KINDS = ("earned", "bonus")
DEBIT_KINDS = ("spent", "penalty")

SOURCES = (
    "rewarded_video",
    "interstitial_ad",
    "banner_ad",
    "game_completion",
    "daily_bonus",
    "achievement",
    "referral",
    "payout",
    "payout_cancelled",
    "payout_rejected",
    "admin_adjustment",
)
AD_SOURCES = ("rewarded_video", "interstitial_ad", "banner_ad")


class LedgerEntry(BaseModel):
    """One balance-affecting event. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    account_id: str
    amount: int  # positive = credit, negative = debit
    kind: str
    source: str
    balance_after: int
    description: str | None = None
    ad_unit_id: str | None = None
    game_session_id: str | None = None
    payout_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
