"""Audit log for critical actions."""

from typing import Any

from app.models.audit_log import AuditEvent
from app.storage.base import LedgerStorage


async def log_event(
    storage: LedgerStorage,
    actor_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to the audit log."""
    await storage.append_audit(
        AuditEvent(
            actor_id=actor_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        )
    )
