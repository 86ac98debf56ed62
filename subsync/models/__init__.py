from subsync.models.account import Account
from subsync.models.audit_log import AuditLog
from subsync.models.dead_letter import DeadLetterEvent
from subsync.models.processed_event import ProcessedEvent
from subsync.models.subscription import SubscriptionRecord

__all__ = [
    "Account",
    "AuditLog",
    "DeadLetterEvent",
    "ProcessedEvent",
    "SubscriptionRecord",
]
