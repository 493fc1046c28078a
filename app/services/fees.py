"""Payout pricing. Pure functions over a PayoutPolicy; amounts in USD."""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from app.models.payout import PayoutFees
from app.models.policy import PayoutPolicy

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def platform_fee(amount_usd: Decimal, policy: PayoutPolicy) -> Decimal:
    return to_cents(amount_usd * policy.platform_fee_rate)


def gateway_fee(amount_usd: Decimal, policy: PayoutPolicy) -> Decimal:
    fee = amount_usd * policy.gateway_fee_rate
    return to_cents(min(max(fee, policy.gateway_fee_min), policy.gateway_fee_max))


def coins_for(amount_usd: Decimal, policy: PayoutPolicy) -> int:
    """Coins needed to cover `amount_usd`, rounded up."""
    return int((amount_usd / policy.conversion_rate).to_integral_value(rounding=ROUND_CEILING))


def usd_for(coins: int, policy: PayoutPolicy) -> Decimal:
    return to_cents(Decimal(coins) * policy.conversion_rate)


@dataclass(frozen=True)
class Quote:
    amount_usd: Decimal
    coins: int
    fees: PayoutFees
    net_amount_usd: Decimal
    conversion_rate: Decimal


def quote(amount_usd: Decimal, policy: PayoutPolicy) -> Quote:
    amount_usd = to_cents(amount_usd)
    fees = PayoutFees(gateway_fee=gateway_fee(amount_usd, policy), platform_fee=platform_fee(amount_usd, policy))
    return Quote(
        amount_usd=amount_usd,
        coins=coins_for(amount_usd, policy),
        fees=fees,
        net_amount_usd=amount_usd - fees.gateway_fee - fees.platform_fee,
        conversion_rate=policy.conversion_rate,
    )
