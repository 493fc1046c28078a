import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.core.clock import utcnow

ROLES = ("user", "admin")

# Fields owned by the balance manager; profile updates may never touch them.
LEDGER_FIELDS = frozenset({"balance", "total_earned", "version", "frozen", "frozen_reason"})


class DeviceInfo(BaseModel):
    device_id: str | None = None
    platform: Literal["iOS", "Android", "WebGL"] | None = None
    version: str | None = None


class Account(BaseModel):
    """A user and their coin holdings (balance is the cached ledger sum)."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    email: str
    name: str = ""
    password_hash: str = ""
    role: Literal["user", "admin"] = "user"
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
    last_active_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def public_dict(self) -> dict:
        return self.model_dump(mode="json", exclude={"password_hash", "version", "session_version"})
