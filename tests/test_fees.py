"""Payout pricing."""

from decimal import Decimal

from app.models.policy import PayoutPolicy
from app.services.fees import coins_for, gateway_fee, platform_fee, quote, usd_for

POLICY = PayoutPolicy()


def test_minimum_payout_quote():
    q = quote(Decimal("1.00"), POLICY)
    assert q.coins == 1000
    assert q.fees.gateway_fee == Decimal("0.25")
    assert q.fees.platform_fee == Decimal("0.05")
    assert q.net_amount_usd == Decimal("0.70")
    assert q.conversion_rate == Decimal("0.001")


def test_gateway_fee_floor_and_cap():
    assert gateway_fee(Decimal("10.00"), POLICY) == Decimal("0.25")
    assert gateway_fee(Decimal("50.00"), POLICY) == Decimal("1.00")
    assert gateway_fee(Decimal("2000.00"), POLICY) == Decimal("20.00")


def test_platform_fee_rounds_half_up_to_cents():
    assert platform_fee(Decimal("1.10"), POLICY) == Decimal("0.06")
    assert platform_fee(Decimal("1.30"), POLICY) == Decimal("0.07")


def test_coins_round_up():
    assert coins_for(Decimal("0.0015"), POLICY) == 2
    assert coins_for(Decimal("2.50"), POLICY) == 2500
    odd = PayoutPolicy(conversion_rate=Decimal("0.003"))
    assert coins_for(Decimal("1.00"), odd) == 334


def test_large_payout_quote():
    q = quote(Decimal("2000"), POLICY)
    assert q.amount_usd == Decimal("2000.00")
    assert q.net_amount_usd == Decimal("1880.00")


def test_usd_for_balance():
    assert usd_for(1234, POLICY) == Decimal("1.23")
    assert usd_for(0, POLICY) == Decimal("0.00")
