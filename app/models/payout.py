import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.core.clock import utcnow

PAYOUT_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
OPEN_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

PayoutStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]


class PayoutFees(BaseModel):
    gateway_fee: Decimal = Decimal("0.00")
    platform_fee: Decimal = Decimal("0.00")


class Payout(BaseModel):
    """A redemption of coins for cash. Money fields are fixed at request time."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    account_id: str
    requested_amount_usd: Decimal
    coins_deducted: int
    destination_address: str
    conversion_rate_at_request: Decimal
    fees: PayoutFees
    net_amount_usd: Decimal
    status: PayoutStatus = "pending"
    ledger_entry_id: str | None = None
    refund_entry_id: str | None = None  # set once coins are returned
    gateway_transaction_ref: str | None = None
    gateway_batch_ref: str | None = None
    failure_reason: str | None = Field(default=None, max_length=500)
    admin_notes: str | None = Field(default=None, max_length=1000)
    metadata: dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def public_dict(self) -> dict:
        return self.model_dump(mode="json", exclude={"metadata", "admin_notes"})
