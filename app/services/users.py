"""Accounts: registration, credentials, sessions, profiles and admin management.

Never touches coin fields; those belong to the balance manager.
"""

import asyncio
from typing import Any, Sequence

from app.core.audit import log_event
from app.core.clock import Clock, utcnow
from app.core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from app.core.logging import get_logger
from app.core.pagination import Page, paginate
from app.core.security import CredentialVerifier
from app.models.account import Account, DeviceInfo
from app.storage.base import AccountQuery, LedgerQuery, LedgerStorage

log = get_logger(__name__)

PROFILE_FIELDS = frozenset({"name", "paypal_email", "device_info"})
ADMIN_FIELDS = frozenset({"name", "paypal_email", "country", "is_active", "role", "level", "admin_notes"})
ACCOUNT_SORTS = frozenset({"created_at", "last_active_at", "total_earned", "balance", "name", "email"})
MIN_PASSWORD_LENGTH = 6


def session_payload_for_account(account: Account) -> dict:
    return {"account_id": account.id, "session_version": account.session_version}


class AccountService:
    def __init__(self, storage: LedgerStorage, verifier: CredentialVerifier, clock: Clock = utcnow):
        self._storage = storage
        self._verifier = verifier
        self._clock = clock

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        paypal_email: str | None = None,
        country: str | None = None,
        ip_address: str | None = None,
        device_info: DeviceInfo | None = None,
        role: str = "user",
    ) -> Account:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        password_hash = await asyncio.to_thread(self._verifier.hash, password)
        now = self._clock()
        account = await self._storage.create_account(
            Account(
                email=email.strip().lower(),
                name=name.strip(),
                password_hash=password_hash,
                role=role,
                paypal_email=paypal_email.strip().lower() if paypal_email else None,
                country=(country or "XX").upper()[:2],
                ip_address=ip_address,
                device_info=device_info or DeviceInfo(),
                last_active_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        log.info("user_created", account_id=account.id, country=account.country, role=account.role)
        await log_event(self._storage, account.id, "user_created", "account", account.id, {"role": role})
        return account

    async def authenticate(self, email: str, password: str, device_info: DeviceInfo | None = None) -> Account:
        account = await self._storage.get_account_by_email(email.strip().lower())
        if account is None or not await asyncio.to_thread(self._verifier.verify, password, account.password_hash):
            log.info("login_failed", email_domain=email.rpartition("@")[2])
            raise UnauthorizedError("Invalid credentials")
        if not account.is_active:
            raise UnauthorizedError("Account is deactivated. Please contact support.")
        fields: dict[str, Any] = {"last_active_at": self._clock()}
        if device_info is not None:
            fields["device_info"] = device_info.model_dump()
        account = await self._storage.update_profile(account.id, fields)
        log.info("user_login", account_id=account.id)
        return account

    async def resolve_session(self, payload: dict[str, Any]) -> Account:
        """Account for a decoded session token, or UnauthorizedError."""
        account_id = payload.get("account_id")
        if not account_id:
            raise UnauthorizedError("Invalid session")
        account = await self._storage.get_account(account_id)
        if account is None:
            raise UnauthorizedError("User not found")
        if payload.get("session_version") != account.session_version:
            raise UnauthorizedError("Session invalidated")
        if not account.is_active:
            raise UnauthorizedError("Account is deactivated")
        return account

    async def get(self, account_id: str) -> Account:
        account = await self._storage.get_account(account_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    async def update_profile(self, account_id: str, fields: dict[str, Any]) -> Account:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update {', '.join(sorted(unknown))}")
        return await self._update(account_id, fields)

    async def _update(self, account_id: str, fields: dict[str, Any]) -> Account:
        fields = dict(fields)
        if fields.get("paypal_email"):
            fields["paypal_email"] = fields["paypal_email"].strip().lower()
        if fields.get("country"):
            fields["country"] = fields["country"].upper()[:2]
        if isinstance(fields.get("device_info"), DeviceInfo):
            fields["device_info"] = fields["device_info"].model_dump()
        fields["updated_at"] = self._clock()
        account = await self._storage.update_profile(account_id, fields)
        if account is None:
            raise NotFoundError("User not found")
        return account

    async def change_password(self, account_id: str, current_password: str, new_password: str) -> Account:
        """Also signs out every other session."""
        account = await self.get(account_id)
        if not await asyncio.to_thread(self._verifier.verify, current_password, account.password_hash):
            raise ValidationError("Current password is incorrect")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"New password must be at least {MIN_PASSWORD_LENGTH} characters long")
        password_hash = await asyncio.to_thread(self._verifier.hash, new_password)
        account = await self._storage.update_profile(
            account_id,
            {
                "password_hash": password_hash,
                "session_version": account.session_version + 1,
                "updated_at": self._clock(),
            },
        )
        log.info("password_changed", account_id=account_id)
        await log_event(self._storage, account_id, "password_changed", "account", account_id)
        return account

    async def logout(self, account_id: str) -> None:
        account = await self.get(account_id)
        await self._storage.update_profile(account_id, {"session_version": account.session_version + 1})

    async def touch(self, account_id: str) -> None:
        await self._storage.update_profile(account_id, {"last_active_at": self._clock()})

    async def add_engagement(self, account_id: str, seconds: int, level: int | None = None) -> Account:
        account = await self.get(account_id)
        fields: dict[str, Any] = {
            "total_engagement_seconds": account.total_engagement_seconds + max(0, seconds),
            "last_active_at": self._clock(),
        }
        if level is not None and level > account.level:
            fields["level"] = level
        return await self._storage.update_profile(account_id, fields)

    # Admin

    async def admin_list(
        self, query: AccountQuery, offset: int = 0, limit: int = 20, sort_by: str = "created_at", sort_order: str = "desc"
    ) -> tuple[Page[Account], dict[str, Any]]:
        if sort_by not in ACCOUNT_SORTS:
            raise ValidationError(f"Cannot sort by {sort_by}")
        limit, offset = paginate(limit, offset, max_limit=200)
        sort = f"-{sort_by}" if sort_order == "desc" else sort_by
        items, total = await self._storage.list_accounts(query, offset=offset, limit=limit, sort=sort)
        rows = await self._storage.group_accounts(AccountQuery(), [])
        row = rows[0] if rows else {}
        count = row.get("count", 0)
        stats = {
            "total_users": count,
            "active_users": row.get("active", 0),
            "total_coins": row.get("total_balance", 0),
            "total_coins_earned": row.get("total_earned", 0),
            "avg_engagement_time": round(row.get("total_engagement", 0) / count, 2) if count else 0,
        }
        return Page[Account](items=items, limit=limit, offset=offset, total=total), stats

    async def admin_detail(self, account_id: str) -> dict[str, Any]:
        account = await self.get(account_id)
        recent = await self._storage.list_entries(LedgerQuery(account_id=account_id), limit=20, newest_first=True)
        sessions, total_sessions = await self._storage.list_sessions(account_id, limit=10)
        by_source = await self._storage.group_entries(LedgerQuery(account_id=account_id, kinds=("earned",)), ["source"])
        return {
            "user": account.public_dict(),
            "statistics": {
                "total_transactions": await self._storage.count_entries(LedgerQuery(account_id=account_id)),
                "total_sessions": total_sessions,
                "earnings_by_source": [
                    {"source": r["source"], "total_coins": r["total"], "count": r["count"]} for r in by_source
                ],
            },
            "recent_transactions": [e.model_dump(mode="json") for e in recent],
            "recent_sessions": [s.model_dump(mode="json") for s in sessions],
        }

    async def admin_update(self, account_id: str, fields: dict[str, Any], actor_id: str | None) -> Account:
        """Profile fields only; coin changes go through the balance manager."""
        unknown = set(fields) - ADMIN_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update {', '.join(sorted(unknown))}")
        account = await self._update(account_id, fields)
        log.info("user_updated_by_admin", account_id=account_id, actor_id=actor_id, fields=sorted(fields))
        await log_event(self._storage, actor_id, "user_updated", "account", account_id, {"fields": sorted(fields)})
        return account

    async def set_active(self, account_ids: Sequence[str], active: bool, actor_id: str | None) -> list[dict[str, Any]]:
        results = []
        for account_id in account_ids:
            account = await self._storage.update_profile(account_id, {"is_active": active, "updated_at": self._clock()})
            if account is None:
                results.append({"account_id": account_id, "status": "error", "message": "User not found"})
            else:
                results.append({"account_id": account_id, "status": "success"})
        await log_event(
            self._storage,
            actor_id,
            "users_activated" if active else "users_deactivated",
            "account",
            None,
            {"accounts": len(account_ids)},
        )
        return results
