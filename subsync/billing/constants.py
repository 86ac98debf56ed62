from enum import Enum


class Provider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class AccessTier(str, Enum):
    LOCKED = "locked"
    TRIAL = "trial"
    ACTIVE = "active"

    # Downgrades are described as "inactive" by the rest of the application
    INACTIVE = "locked"


class SubscriptionStatus(str, Enum):
    PENDING_ACTIVATION = "pending_activation"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)

    @property
    def is_open(self) -> bool:
        return not self.is_terminal


OPEN_STATUSES = tuple(s.value for s in SubscriptionStatus if s.is_open)


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    DUPLICATE = "duplicate"
    UNRECOGNIZED = "unrecognized"
    UNRESOLVED = "unresolved"
    DEAD_LETTERED = "dead_lettered"
