"""
Internal billing event algebra.

Both providers' webhook vocabularies are normalized into these types before
anything touches account state. They carry only what the state machine needs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class EventEnvelope:
    """A webhook that passed signature verification."""

    provider: str
    event_id: str | None
    event_type: str
    occurred_at: datetime | None
    payload: dict = field(repr=False)
    raw: bytes = field(default=b"", repr=False)


@dataclass(frozen=True)
class BillingEvent:
    subscription_ref: str | None = None
    customer_ref: str | None = None
    plan: str | None = None

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Activated(BillingEvent):
    # Checkout metadata id, only trusted for a subscription we have never seen
    correlation_id: str | None = None
    trial: bool = False
    # Payment not yet confirmed by the provider
    pending: bool = False
    period_start: datetime | None = None
    period_end: datetime | None = None


@dataclass(frozen=True)
class Renewed(BillingEvent):
    period_start: datetime | None = None
    period_end: datetime | None = None
    # None when the event says nothing about a scheduled cancellation
    cancel_at_end: bool | None = None


@dataclass(frozen=True)
class PaymentFailed(BillingEvent):
    pass


@dataclass(frozen=True)
class Suspended(BillingEvent):
    pass


@dataclass(frozen=True)
class Canceled(BillingEvent):
    immediate: bool = True
    period_end: datetime | None = None


@dataclass(frozen=True)
class Expired(BillingEvent):
    pass


@dataclass(frozen=True)
class Unrecognized:
    """Normalizer result for anything it does not map. Not an error."""

    event_type: str
    reason: str = "unmapped event type"
    details: dict[str, Any] = field(default_factory=dict)


TERMINAL_EVENTS = (Canceled, Expired)
