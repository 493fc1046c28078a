from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from app.core.clock import utcnow
from app.core.config import Settings


class PayoutPolicy(BaseModel):
    """Coin economy settings applied to new payout requests only."""

    conversion_rate: Decimal = Field(default=Decimal("0.001"), gt=0)  # USD per coin
    platform_fee_rate: Decimal = Field(default=Decimal("0.05"), ge=0, lt=1)
    gateway_fee_rate: Decimal = Field(default=Decimal("0.02"), ge=0, lt=1)
    gateway_fee_min: Decimal = Field(default=Decimal("0.25"), ge=0)
    gateway_fee_max: Decimal = Field(default=Decimal("20.00"), ge=0)
    min_payout_usd: Decimal = Field(default=Decimal("1.00"), gt=0)
    max_payout_usd: Decimal = Field(default=Decimal("10000.00"), gt=0)
    payouts_enabled: bool = True
    updated_by: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_bounds(self) -> "PayoutPolicy":
        if self.min_payout_usd > self.max_payout_usd:
            raise ValueError("min_payout_usd must not exceed max_payout_usd")
        if self.gateway_fee_min > self.gateway_fee_max:
            raise ValueError("gateway_fee_min must not exceed gateway_fee_max")
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayoutPolicy":
        return cls(
            conversion_rate=settings.base_coin_to_usd_rate,
            platform_fee_rate=settings.platform_fee_rate,
            gateway_fee_rate=settings.gateway_fee_rate,
            gateway_fee_min=settings.gateway_fee_min,
            gateway_fee_max=settings.gateway_fee_max,
            min_payout_usd=settings.min_payout_amount,
            max_payout_usd=settings.max_payout_amount,
            payouts_enabled=settings.payouts_enabled,
        )
