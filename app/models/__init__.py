from app.models.account import Account
from app.models.ad_reward import AdRewardConfig
from app.models.audit_log import AuditEvent
from app.models.game_session import GameSession
from app.models.ledger_entry import LedgerEntry
from app.models.payout import Payout
from app.models.policy import PayoutPolicy

__all__ = [
    "Account",
    "AdRewardConfig",
    "AuditEvent",
    "GameSession",
    "LedgerEntry",
    "Payout",
    "PayoutPolicy",
]
