"""Payout lifecycle: request, state machine, refunds, gateway processing.

    pending -> processing -> completed
    pending -> processing -> failed
    pending -> cancelled            (self-service, refunds)
    pending|processing -> failed    (admin reject, refunds)

Coins move only through the balance manager; a payout write that has a
coin effect (creation, cancel, reject) rides in the same account commit.
"""

import re
import uuid
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from app.core.audit import log_event
from app.core.clock import Clock, utcnow
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    AmountTooSmallError,
    BadRequestError,
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    InvalidAddressError,
    InvalidStateError,
    NotFoundError,
    OutOfRangeError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.pagination import Page, paginate
from app.models.account import Account
from app.models.payout import PAYOUT_STATUSES, Payout
from app.models.policy import PayoutPolicy
from app.services.balances import BalanceManager, Plan, Posting
from app.services.fees import quote, usd_for
from app.services.gateway import PayoutGateway
from app.storage.base import LedgerStorage, PayoutQuery, PayoutWrite

log = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PAYOUT_MEMO = "You have received a payout from Drop Strike! Thanks for playing!"


def refund_key(payout_id: str) -> str:
    return f"refund:{payout_id}"


def to_amount(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError("Invalid payout amount", details={"amount": str(value)}) from e
    if not amount.is_finite():
        raise ValidationError("Invalid payout amount", details={"amount": str(value)})
    return amount


class PayoutManager:
    def __init__(
        self,
        storage: LedgerStorage,
        balances: BalanceManager,
        gateway: PayoutGateway,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ):
        self._storage = storage
        self._balances = balances
        self._gateway = gateway
        self._settings = settings or get_settings()
        self._clock = clock

    # Policy (admin configuration store)

    async def policy(self) -> PayoutPolicy:
        stored = await self._storage.load_policy()
        return stored or PayoutPolicy.from_settings(self._settings)

    async def update_policy(self, fields: dict[str, Any], actor_id: str | None) -> PayoutPolicy:
        """Applies to requests made after this call; existing payouts keep their figures."""
        current = await self.policy()
        try:
            policy = PayoutPolicy.model_validate(
                {**current.model_dump(), **fields, "updated_by": actor_id, "updated_at": self._clock()}
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e
        await self._storage.save_policy(policy)
        log.info("payout_policy_updated", actor_id=actor_id, fields=sorted(fields))
        await log_event(self._storage, actor_id, "config_updated", "payout_policy", None, {"fields": sorted(fields)})
        return policy

    # Request

    async def request_payout(
        self,
        account_id: str,
        amount_usd: Any,
        destination_address: str,
        metadata: dict[str, Any] | None = None,
    ) -> Payout:
        policy = await self.policy()
        if not policy.payouts_enabled:
            raise BadRequestError("Payouts are currently disabled", code="PAYOUTS_DISABLED")
        amount = to_amount(amount_usd)
        if amount < policy.min_payout_usd or amount > policy.max_payout_usd:
            raise OutOfRangeError(
                f"Payout amount must be between ${policy.min_payout_usd} and ${policy.max_payout_usd}",
                policy.min_payout_usd,
                policy.max_payout_usd,
            )
        destination = (destination_address or "").strip()
        if not EMAIL_RE.match(destination):
            raise InvalidAddressError("Invalid PayPal email address")
        q = quote(amount, policy)
        payout_id = uuid.uuid4().hex

        async def planner(account: Account) -> Plan:
            existing = await self._storage.find_open_payout(account_id)
            if existing is not None:
                raise ConflictError(
                    "You already have a pending payout request",
                    details={"payout_id": existing.id, "status": existing.status},
                )
            if q.net_amount_usd <= 0:
                raise AmountTooSmallError(
                    details={
                        "amount_usd": str(q.amount_usd),
                        "gateway_fee": str(q.fees.gateway_fee),
                        "platform_fee": str(q.fees.platform_fee),
                    }
                )
            now = self._clock()
            entry_id = uuid.uuid4().hex
            payout = Payout(
                id=payout_id,
                account_id=account_id,
                requested_amount_usd=q.amount_usd,
                coins_deducted=q.coins,
                destination_address=destination,
                conversion_rate_at_request=q.conversion_rate,
                fees=q.fees,
                net_amount_usd=q.net_amount_usd,
                ledger_entry_id=entry_id,
                metadata=metadata or {},
                requested_at=now,
                updated_at=now,
            )
            posting = Posting(
                amount=-q.coins,
                kind="spent",
                source="payout",
                description=f"Payout request ${q.amount_usd}",
                payout_id=payout_id,
                entry_id=entry_id,
            )
            return Plan(postings=[posting], payout=PayoutWrite(payout), result=payout)

        applied = await self._balances.apply(account_id, planner)
        payout: Payout = applied.plan.result
        log.info(
            "payout_requested",
            account_id=account_id,
            payout_id=payout.id,
            amount_usd=str(payout.requested_amount_usd),
            coins=payout.coins_deducted,
            net_amount_usd=str(payout.net_amount_usd),
        )
        return payout

    # State machine

    async def _get(self, payout_id: str, account_id: str | None = None) -> Payout:
        payout = await self._storage.get_payout(payout_id)
        if payout is None or (account_id is not None and payout.account_id != account_id):
            raise NotFoundError("Payout not found")
        return payout

    async def _transition(self, payout_id: str, expected: tuple[str, ...], fields: dict[str, Any]) -> Payout:
        fields = {**fields, "updated_at": self._clock()}
        updated = await self._storage.transition_payout(payout_id, expected, fields)
        if updated is None:
            current = await self._get(payout_id)
            raise InvalidStateError(
                f"Payout is {current.status}",
                details={"status": current.status, "expected": list(expected)},
            )
        return updated

    async def mark_processing(self, payout_id: str) -> Payout:
        now = self._clock()
        return await self._transition(
            payout_id,
            ("pending",),
            {"status": "processing", "processed_at": now, "gateway_batch_ref": payout_id},
        )

    async def mark_completed(self, payout_id: str, gateway_transaction_ref: str, batch_ref: str | None = None) -> Payout:
        """processing -> completed; repeating with the same ref is a no-op."""
        if not gateway_transaction_ref:
            raise ValidationError("Gateway transaction reference is required")
        current = await self._get(payout_id)
        if current.status == "completed" and current.gateway_transaction_ref == gateway_transaction_ref:
            return current
        fields: dict[str, Any] = {
            "status": "completed",
            "gateway_transaction_ref": gateway_transaction_ref,
            "completed_at": self._clock(),
        }
        if batch_ref:
            fields["gateway_batch_ref"] = batch_ref
        try:
            payout = await self._transition(payout_id, ("processing",), fields)
        except InvalidStateError:
            again = await self._get(payout_id)
            if again.status == "completed" and again.gateway_transaction_ref == gateway_transaction_ref:
                return again
            raise
        log.info(
            "payout_completed",
            payout_id=payout_id,
            account_id=payout.account_id,
            gateway_transaction_ref=gateway_transaction_ref,
            net_amount_usd=str(payout.net_amount_usd),
        )
        return payout

    async def mark_failed(self, payout_id: str, reason: str) -> Payout:
        """Record failure without refunding; `reject` returns the coins."""
        payout = await self._transition(
            payout_id,
            ("pending", "processing"),
            {"status": "failed", "failure_reason": (reason or "Unknown failure")[:500]},
        )
        log.warning("payout_failed", payout_id=payout_id, account_id=payout.account_id, reason=reason)
        return payout

    async def cancel(self, payout_id: str, account_id: str | None = None) -> Payout:
        """Self-service: pending -> cancelled, coins returned in the same commit."""
        owner = (await self._get(payout_id, account_id)).account_id

        async def planner(account: Account) -> Plan:
            payout = await self._get(payout_id)
            if payout.status != "pending":
                raise InvalidStateError(f"Cannot cancel a {payout.status} payout", details={"status": payout.status})
            entry_id = uuid.uuid4().hex
            now = self._clock()
            updated = payout.model_copy(
                update={"status": "cancelled", "refund_entry_id": entry_id, "completed_at": now, "updated_at": now}
            )
            posting = Posting(
                amount=payout.coins_deducted,
                kind="bonus",
                source="payout_cancelled",
                description="Payout cancelled",
                payout_id=payout_id,
                idempotency_key=refund_key(payout_id),
                entry_id=entry_id,
            )
            return Plan(postings=[posting], payout=PayoutWrite(updated, ("pending",)), result=updated)

        applied = await self._balances.apply(owner, planner)
        payout: Payout = applied.plan.result
        log.info("payout_cancelled", payout_id=payout_id, account_id=owner, coins_returned=payout.coins_deducted)
        return payout

    async def reject(self, payout_id: str, reason: str, actor_id: str | None = None) -> Payout:
        """Admin: fail the payout and refund its coins, atomically.

        Works on pending and processing payouts, and on failed ones whose
        coins were not yet returned.
        """
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")
        owner = (await self._get(payout_id)).account_id

        async def planner(account: Account) -> Plan:
            payout = await self._get(payout_id)
            refundable = payout.status in ("pending", "processing") or (
                payout.status == "failed" and payout.refund_entry_id is None
            )
            if not refundable:
                raise InvalidStateError(
                    f"Cannot reject a {payout.status} payout",
                    details={"status": payout.status, "refunded": payout.refund_entry_id is not None},
                )
            entry_id = uuid.uuid4().hex
            update: dict[str, Any] = {
                "status": "failed",
                "refund_entry_id": entry_id,
                "admin_notes": f"Rejected by admin: {reason}"[:1000],
                "updated_at": self._clock(),
            }
            if payout.status != "failed":
                update["failure_reason"] = reason[:500]
            updated = payout.model_copy(update=update)
            posting = Posting(
                amount=payout.coins_deducted,
                kind="bonus",
                source="payout_rejected",
                description=f"Payout rejected: {reason}"[:200],
                payout_id=payout_id,
                idempotency_key=refund_key(payout_id),
                entry_id=entry_id,
            )
            return Plan(postings=[posting], payout=PayoutWrite(updated, (payout.status,)), result=updated)

        applied = await self._balances.apply(owner, planner)
        payout: Payout = applied.plan.result
        log.info("payout_rejected", payout_id=payout_id, account_id=owner, coins_returned=payout.coins_deducted, reason=reason)
        await log_event(
            self._storage,
            actor_id,
            "payout_rejected",
            "payout",
            payout_id,
            {"reason": reason, "coins_returned": payout.coins_deducted},
        )
        return payout

    async def process(self, payout_id: str, admin_notes: str | None = None, actor_id: str | None = None) -> Payout:
        """Admin: send the money through the gateway.

        A gateway error marks the payout failed without refunding and is
        re-raised. A timeout leaves it processing for a later status check.
        """
        payout = await self.mark_processing(payout_id)
        if admin_notes:
            payout = await self.set_admin_notes(payout_id, admin_notes)
        await log_event(self._storage, actor_id, "payout_processing", "payout", payout_id, {"gateway": self._gateway.name})
        try:
            receipt = await self._gateway.send_payout(
                payout.destination_address,
                payout.net_amount_usd,
                PAYOUT_MEMO,
                reference=payout.id,
            )
        except GatewayTimeoutError:
            log.warning("payout_gateway_timeout", payout_id=payout_id, account_id=payout.account_id)
            await self._storage.transition_payout(
                payout_id,
                ("processing",),
                {"metadata": {**payout.metadata, "gateway_timeout_at": self._clock().isoformat()}},
            )
            raise GatewayTimeoutError(
                "Payout gateway timed out; payout remains processing, check status later",
                details={"payout_id": payout_id},
            )
        except GatewayError as e:
            await self._fail_sent(payout_id, e.reason)
            raise
        if receipt.status == "failed":
            await self._fail_sent(payout_id, "Rejected by payout gateway")
            raise GatewayError("Rejected by payout gateway", details={"payout_id": payout_id})
        if receipt.status == "processing":
            # Accepted but not settled; refresh_status finishes it.
            fields: dict[str, Any] = {"gateway_transaction_ref": receipt.transaction_ref}
            if receipt.batch_ref:
                fields["gateway_batch_ref"] = receipt.batch_ref
            payout = await self._transition(payout_id, ("processing",), fields)
            log.info("payout_accepted_by_gateway", payout_id=payout_id, gateway_transaction_ref=receipt.transaction_ref)
            return payout
        return await self.mark_completed(payout_id, receipt.transaction_ref, receipt.batch_ref)

    async def _fail_sent(self, payout_id: str, reason: str) -> None:
        """mark_failed after a gateway refusal; the gateway error is what the caller sees."""
        try:
            await self.mark_failed(payout_id, reason)
        except InvalidStateError as e:
            # Rejected or cancelled while the gateway call was in flight
            log.warning("payout_fail_skipped", payout_id=payout_id, reason=reason, status=e.details.get("status"))

    async def refresh_status(self, payout_id: str) -> Payout:
        """Resolve a processing payout from the gateway's view of it."""
        payout = await self._get(payout_id)
        if payout.status != "processing":
            return payout
        if not payout.gateway_transaction_ref:
            raise InvalidStateError(
                "No gateway reference recorded; resolve this payout manually",
                details={"status": payout.status},
            )
        status = await self._gateway.get_payout_status(payout.gateway_transaction_ref)
        if status.status == "completed":
            return await self.mark_completed(payout_id, payout.gateway_transaction_ref)
        if status.status == "failed":
            return await self.mark_failed(payout_id, status.reason or "Failed at payout gateway")
        return payout

    async def resolve_manually(
        self,
        payout_id: str,
        completed: bool,
        actor_id: str | None,
        gateway_transaction_ref: str | None = None,
        reason: str | None = None,
    ) -> Payout:
        """Admin: settle a processing payout the gateway cannot tell us about."""
        if completed:
            payout = await self.mark_completed(payout_id, gateway_transaction_ref or "")
        else:
            payout = await self.mark_failed(payout_id, reason or "Marked failed by admin")
        await log_event(
            self._storage,
            actor_id,
            "payout_resolved",
            "payout",
            payout_id,
            {"status": payout.status, "gateway_transaction_ref": gateway_transaction_ref, "reason": reason},
        )
        return payout

    async def refresh_processing(self, stale_after: timedelta = timedelta(minutes=30)) -> dict[str, int]:
        """Poll the gateway for every processing payout that has a reference.

        Payouts without one, stuck longer than `stale_after`, are only
        reported; they need an operator.
        """
        counts = {"checked": 0, "resolved": 0, "stuck": 0, "errors": 0}
        cutoff = self._clock() - stale_after
        offset = 0
        while True:
            batch, _ = await self._storage.list_payouts(PayoutQuery(statuses=("processing",)), offset=offset, limit=100)
            # Settled payouts leave the filter, so only skip the ones still processing
            still_processing = 0
            for payout in batch:
                if not payout.gateway_transaction_ref:
                    still_processing += 1
                    if (payout.processed_at or payout.requested_at) < cutoff:
                        counts["stuck"] += 1
                        log.warning("payout_stuck_processing", payout_id=payout.id, account_id=payout.account_id)
                    continue
                counts["checked"] += 1
                try:
                    refreshed = await self.refresh_status(payout.id)
                except GatewayError as e:
                    counts["errors"] += 1
                    still_processing += 1
                    log.warning("payout_status_check_failed", payout_id=payout.id, reason=e.reason)
                    continue
                if refreshed.status != "processing":
                    counts["resolved"] += 1
                else:
                    still_processing += 1
            if len(batch) < 100:
                break
            offset += still_processing
        return counts

    async def set_admin_notes(self, payout_id: str, admin_notes: str) -> Payout:
        """Allowed in every state, terminal ones included."""
        payout = await self._storage.set_payout_notes(payout_id, admin_notes[:1000])
        if payout is None:
            raise NotFoundError("Payout not found")
        return payout

    # Reads

    async def get_payout(self, payout_id: str, account_id: str | None = None) -> Payout:
        return await self._get(payout_id, account_id)

    async def history(
        self, account_id: str, status: str | None = None, offset: int = 0, limit: int = 10
    ) -> tuple[Page[Payout], list[dict[str, Any]]]:
        if status is not None and status not in PAYOUT_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        limit, offset = paginate(limit, offset, max_limit=100)
        q = PayoutQuery(account_id=account_id, statuses=(status,) if status else None)
        items, total = await self._storage.list_payouts(q, offset=offset, limit=limit)
        summary = await self._storage.group_payouts(PayoutQuery(account_id=account_id), ["status"])
        return Page[Payout](items=items, limit=limit, offset=offset, total=total), summary

    async def list_all(self, query: PayoutQuery, offset: int = 0, limit: int = 20) -> Page[Payout]:
        limit, offset = paginate(limit, offset, max_limit=200)
        items, total = await self._storage.list_payouts(query, offset=offset, limit=limit)
        return Page[Payout](items=items, limit=limit, offset=offset, total=total)

    async def stats(self) -> list[dict[str, Any]]:
        return await self._storage.group_payouts(PayoutQuery(), ["status"])

    async def config_info(self, account: Account) -> dict[str, Any]:
        policy = await self.policy()
        value = usd_for(account.balance, policy)
        return {
            "conversion_rate": str(policy.conversion_rate),
            "min_payout_amount": str(policy.min_payout_usd),
            "max_payout_amount": str(min(policy.max_payout_usd, value)),
            "user_coins": account.balance,
            "estimated_value": str(value),
            "payouts_enabled": policy.payouts_enabled,
            "fees": {
                "platform_fee_rate": str(policy.platform_fee_rate),
                "gateway_fee_rate": str(policy.gateway_fee_rate),
                "gateway_fee_min": str(policy.gateway_fee_min),
                "gateway_fee_max": str(policy.gateway_fee_max),
            },
            "processing_time": "2-3 business days",
        }
