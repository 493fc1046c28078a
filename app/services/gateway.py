"""Payout gateway: moves money to a payout's destination.

PayPalGateway talks to the PayPal Payouts REST API. A transport error
after the request may have reached PayPal is reported as
GatewayTimeoutError, since the payout may have gone through.
"""

import base64
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

import httpx

from app.core.config import Settings, get_settings
from app.core.exceptions import GatewayError, GatewayTimeoutError
from app.core.logging import get_logger

log = get_logger(__name__)

PAYPAL_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

# PayPal item/batch status -> our view of it
_PAYPAL_STATUS = {
    "SUCCESS": "completed",
    "FAILED": "failed",
    "RETURNED": "failed",
    "BLOCKED": "failed",
    "REFUNDED": "failed",
    "REVERSED": "failed",
    "DENIED": "failed",
    "CANCELED": "failed",
}


@dataclass
class GatewayReceipt:
    transaction_ref: str
    batch_ref: str | None = None
    status: str = "processing"  # completed | failed | processing


@dataclass
class GatewayStatus:
    status: str  # completed | failed | processing
    reason: str | None = None
    raw_status: str | None = None


class PayoutGateway(ABC):
    name = "gateway"

    @abstractmethod
    async def send_payout(self, destination: str, amount_usd: Decimal, memo: str, reference: str) -> GatewayReceipt:
        """Disburse `amount_usd`; `reference` makes retries of one payout idempotent."""
        ...

    @abstractmethod
    async def get_payout_status(self, transaction_ref: str) -> GatewayStatus:
        ...

    async def aclose(self) -> None:
        pass


class DisabledGateway(PayoutGateway):
    name = "disabled"

    async def send_payout(self, destination: str, amount_usd: Decimal, memo: str, reference: str) -> GatewayReceipt:
        raise GatewayError("Payout gateway not configured")

    async def get_payout_status(self, transaction_ref: str) -> GatewayStatus:
        raise GatewayError("Payout gateway not configured")


class PayPalGateway(PayoutGateway):
    name = "paypal"

    def __init__(self, client_id: str, client_secret: str, mode: str = "sandbox", timeout: float = 30.0):
        if mode not in PAYPAL_URLS:
            raise ValueError(f"Unknown PayPal mode: {mode}")
        self._client_id = client_id
        self._client_secret = client_secret
        self._client = httpx.AsyncClient(base_url=PAYPAL_URLS[mode], timeout=timeout)
        self._token: str | None = None
        self._token_expires = 0.0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        basic = base64.b64encode(f"{self._client_id}:{self._client_secret}".encode()).decode()
        try:
            resp = await self._client.post(
                "/v1/oauth2/token",
                headers={"Authorization": f"Basic {basic}"},
                data={"grant_type": "client_credentials"},
            )
        except httpx.TransportError as e:
            raise GatewayError(f"PayPal auth failed: {e}") from e
        if resp.status_code != 200:
            raise GatewayError(f"PayPal auth failed: HTTP {resp.status_code}")
        data = resp.json()
        self._token = data["access_token"]
        # refresh a minute early
        self._token_expires = time.monotonic() + max(0, int(data.get("expires_in", 0)) - 60)
        return self._token

    async def send_payout(self, destination: str, amount_usd: Decimal, memo: str, reference: str) -> GatewayReceipt:
        token = await self._access_token()
        body = {
            "sender_batch_header": {
                "sender_batch_id": reference,
                "email_subject": "You have a payout!",
                "email_message": memo,
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "amount": {"value": f"{amount_usd:.2f}", "currency": "USD"},
                    "receiver": destination,
                    "note": memo,
                    "sender_item_id": reference,
                }
            ],
        }
        try:
            resp = await self._client.post(
                "/v1/payments/payouts",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # never reached PayPal
            raise GatewayError(f"PayPal unreachable: {e}") from e
        except httpx.TransportError as e:
            log.warning("paypal_send_ambiguous", reference=reference, error=str(e))
            raise GatewayTimeoutError(details={"reference": reference}) from e
        if resp.status_code >= 400:
            raise GatewayError(_error_reason(resp), details={"status_code": resp.status_code})
        header = resp.json().get("batch_header", {})
        batch_id = header.get("payout_batch_id")
        if not batch_id:
            raise GatewayError("PayPal response missing payout_batch_id")
        log.info("paypal_payout_created", reference=reference, payout_batch_id=batch_id)
        return GatewayReceipt(
            transaction_ref=batch_id,
            batch_ref=header.get("sender_batch_header", {}).get("sender_batch_id", reference),
            status=_PAYPAL_STATUS.get(header.get("batch_status", ""), "processing"),
        )

    async def get_payout_status(self, transaction_ref: str) -> GatewayStatus:
        token = await self._access_token()
        try:
            resp = await self._client.get(
                f"/v1/payments/payouts/{transaction_ref}",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(details={"transaction_ref": transaction_ref}) from e
        except httpx.TransportError as e:
            raise GatewayError(f"PayPal unreachable: {e}") from e
        if resp.status_code >= 400:
            raise GatewayError(_error_reason(resp), details={"status_code": resp.status_code})
        data = resp.json()
        items = data.get("items") or []
        if items:
            raw = items[0].get("transaction_status", "")
            errors = items[0].get("errors") or {}
            reason = errors.get("message") if isinstance(errors, dict) else None
        else:
            raw = data.get("batch_header", {}).get("batch_status", "")
            reason = None
        status = _PAYPAL_STATUS.get(raw, "processing")
        return GatewayStatus(status=status, reason=reason or (f"PayPal status {raw}" if status == "failed" else None), raw_status=raw)


def _error_reason(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"PayPal error: HTTP {resp.status_code}"
    return data.get("message") or data.get("name") or f"PayPal error: HTTP {resp.status_code}"


def get_gateway(settings: Settings | None = None) -> PayoutGateway:
    settings = settings or get_settings()
    if settings.paypal_mode in PAYPAL_URLS and settings.paypal_client_id and settings.paypal_client_secret:
        return PayPalGateway(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            mode=settings.paypal_mode,
            timeout=settings.paypal_timeout_seconds,
        )
    return DisabledGateway()
