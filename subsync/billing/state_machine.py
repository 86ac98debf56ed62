"""
Reconciliation state machine.

This is the ONLY place where:
- a subscription record changes lifecycle status
- an account's access tier is decided

It is pure: it reads frozen snapshots and returns a Transition describing
what should be written. Persisting the Transition is the applier's job.

Per (account, provider) subscription lifecycle:

    NONE -> PENDING_ACTIVATION -> ACTIVE <-> PAST_DUE -> CANCELED
                                  ACTIVE/PAST_DUE     -> EXPIRED

CANCELED and EXPIRED are terminal for a record. A new subscription always
gets a new record.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from subsync.billing.constants import AccessTier, SubscriptionStatus
from subsync.billing.events import (
    Activated,
    BillingEvent,
    Canceled,
    Expired,
    PaymentFailed,
    Renewed,
    Suspended,
    TERMINAL_EVENTS,
)
from subsync.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

APPLIED = "applied"
NOOP = "noop"


@dataclass(frozen=True)
class SubscriptionState:
    provider: str
    provider_subscription_id: str
    plan: str
    status: SubscriptionStatus
    is_trial: bool = False
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    past_due_since: datetime | None = None
    last_event_id: str | None = None
    last_event_at: datetime | None = None
    # Primary key of the stored row; None for a record not yet inserted
    id: int | None = None

    @classmethod
    def from_record(cls, record) -> "SubscriptionState":
        return cls(
            id=record.id,
            provider=record.provider,
            provider_subscription_id=record.provider_subscription_id,
            plan=record.plan,
            status=SubscriptionStatus(record.status),
            is_trial=bool(record.is_trial),
            current_period_start=ensure_utc(record.current_period_start),
            current_period_end=ensure_utc(record.current_period_end),
            cancel_at_period_end=bool(record.cancel_at_period_end),
            canceled_at=ensure_utc(record.canceled_at),
            past_due_since=ensure_utc(record.past_due_since),
            last_event_id=record.last_event_id,
            last_event_at=ensure_utc(record.last_event_at),
        )

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    def grants_access(self, now: datetime, past_due_grace: timedelta) -> bool:
        if self.status == SubscriptionStatus.ACTIVE:
            # A deferred cancellation whose period is over stops granting
            if self.cancel_at_period_end and self.current_period_end is not None:
                return self.current_period_end > now
            return True
        if self.status == SubscriptionStatus.PAST_DUE:
            if self.past_due_since is None:
                return True
            return now < self.past_due_since + past_due_grace
        if self.status == SubscriptionStatus.CANCELED and self.cancel_at_period_end:
            return self.current_period_end is None or self.current_period_end > now
        return False


@dataclass(frozen=True)
class AccountState:
    id: str
    access_tier: AccessTier
    plan: str | None = None
    trial_ends_at: datetime | None = None
    stripe_customer_id: str | None = None
    paypal_payer_id: str | None = None

    @classmethod
    def from_model(cls, account) -> "AccountState":
        return cls(
            id=account.id,
            access_tier=AccessTier(account.access_tier),
            plan=account.plan,
            trial_ends_at=ensure_utc(account.trial_ends_at),
            stripe_customer_id=account.stripe_customer_id,
            paypal_payer_id=account.paypal_payer_id,
        )

    def customer_ref(self, provider: str) -> str | None:
        return self.stripe_customer_id if provider == "stripe" else self.paypal_payer_id


@dataclass(frozen=True)
class Transition:
    account_id: str
    provider: str
    event: str
    outcome: str
    reason: str
    subscription_ref: str | None = None
    event_id: str | None = None
    status_before: str | None = None
    status_after: str | None = None
    tier_before: AccessTier | None = None
    tier_after: AccessTier | None = None
    plan_before: str | None = None
    plan_after: str | None = None
    record_updates: tuple = ()
    record_inserts: tuple = ()
    # {"stripe_customer_id": "cus_..."} when the event first reveals a reference
    customer_ref_update: dict = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return self.outcome == NOOP

    def summary(self) -> dict:
        return {
            "event": self.event,
            "outcome": self.outcome,
            "reason": self.reason,
            "subscription_ref": self.subscription_ref,
            "status_before": self.status_before,
            "status_after": self.status_after,
            "tier_before": self.tier_before.value if self.tier_before else None,
            "tier_after": self.tier_after.value if self.tier_after else None,
            "plan_after": self.plan_after,
            "superseded": [
                r.provider_subscription_id
                for r in self.record_updates
                if r.provider_subscription_id != self.subscription_ref
            ],
        }


def _grant_rank(record: SubscriptionState):
    # Paid beats trial, healthy beats degraded, later period end beats earlier
    return (
        not record.is_trial,
        record.status == SubscriptionStatus.ACTIVE and not record.cancel_at_period_end,
        _sort_time(record.current_period_end),
    )


def derive_access(
    records,
    now: datetime,
    past_due_grace: timedelta,
    trial_ends_at: datetime | None = None,
    current_plan: str | None = None,
):
    """
    Access tier and plan from every subscription record of an account.

    Records from both providers are considered together: the account keeps
    access while ANY record grants it, which keeps users working through a
    provider migration.

    The signup trial (trial_ends_at) only counts while the account has never
    had a subscription beyond a pending checkout.
    """
    granting = [r for r in records if r.grants_access(now, past_due_grace)]

    if granting:
        best = max(granting, key=_grant_rank)
        tier = AccessTier.TRIAL if best.is_trial else AccessTier.ACTIVE
        return tier, best.plan

    only_pending = all(r.status == SubscriptionStatus.PENDING_ACTIVATION for r in records)
    if only_pending and trial_ends_at is not None and trial_ends_at > now:
        return AccessTier.TRIAL, current_plan

    return AccessTier.LOCKED, None


def _sort_time(value: datetime | None) -> float:
    return value.timestamp() if value is not None else float("-inf")


class ReconciliationStateMachine:
    def __init__(self, default_plan: str = "practice", past_due_grace: timedelta = timedelta(days=7)):
        self.default_plan = default_plan
        self.past_due_grace = past_due_grace

    def apply(
        self,
        account: AccountState,
        records,
        event: BillingEvent,
        *,
        provider: str,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
        now: datetime | None = None,
    ) -> Transition:
        now = now or utcnow()
        at = ensure_utc(occurred_at) or now
        records = list(records)

        target = next(
            (
                r for r in records
                if r.provider == provider and r.provider_subscription_id == event.subscription_ref
            ),
            None,
        )

        if event.subscription_ref is None:
            return self._noop(account, provider, event, event_id, None, "event carries no subscription reference")

        if target is None:
            changed, reason = self._open_record(account, records, event, provider, at)
        else:
            if target.status.is_terminal:
                logger.info(
                    f"{event.name} for terminal subscription {provider}:{target.provider_subscription_id} ignored",
                    extra={"account_id": account.id, "event_id": event_id},
                )
                return self._noop(account, provider, event, event_id, target, f"subscription already {target.status.value}")

            if (
                not isinstance(event, TERMINAL_EVENTS)
                and occurred_at is not None
                and target.last_event_at is not None
                and at < target.last_event_at
            ):
                return self._noop(account, provider, event, event_id, target, "stale event")

            updated, reason = self._advance(target, event, at)
            if updated is None:
                return self._noop(account, provider, event, event_id, target, reason)
            changed = [updated]

        changed = [
            replace(r, last_event_id=event_id or r.last_event_id, last_event_at=_latest(r.last_event_at, at))
            if r.provider_subscription_id == event.subscription_ref and r.provider == provider
            else r
            for r in changed
        ]

        merged = {self._key(r): r for r in records}
        for r in changed:
            merged[self._key(r)] = r

        tier, plan = derive_access(
            merged.values(),
            now,
            self.past_due_grace,
            trial_ends_at=account.trial_ends_at,
            current_plan=account.plan,
        )

        own = next(r for r in changed if r.provider_subscription_id == event.subscription_ref)
        customer_update = {}
        column = "stripe_customer_id" if provider == "stripe" else "paypal_payer_id"
        if event.customer_ref and account.customer_ref(provider) is None:
            customer_update[column] = event.customer_ref

        return Transition(
            account_id=account.id,
            provider=provider,
            event=event.name,
            event_id=event_id,
            outcome=APPLIED,
            reason=reason,
            subscription_ref=event.subscription_ref,
            status_before=target.status.value if target else None,
            status_after=own.status.value,
            tier_before=account.access_tier,
            tier_after=tier,
            plan_before=account.plan,
            plan_after=plan,
            record_updates=tuple(r for r in changed if r.id is not None),
            record_inserts=tuple(r for r in changed if r.id is None),
            customer_ref_update=customer_update,
        )

    def rederive(self, account: AccountState, records, now: datetime | None = None) -> Transition:
        """
        Tier re-evaluation driven by the passage of time rather than an event:
        elapsed deferred cancellations, exhausted past-due grace, ended trials.
        """
        now = now or utcnow()
        tier, plan = derive_access(
            list(records),
            now,
            self.past_due_grace,
            trial_ends_at=account.trial_ends_at,
            current_plan=account.plan,
        )
        changed = tier != account.access_tier or plan != account.plan
        return Transition(
            account_id=account.id,
            provider="system",
            event="TierSweep",
            outcome=APPLIED if changed else NOOP,
            reason="tier re-derived" if changed else "tier unchanged",
            tier_before=account.access_tier,
            tier_after=tier,
            plan_before=account.plan,
            plan_after=plan,
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _key(record: SubscriptionState):
        return (record.provider, record.provider_subscription_id)

    def _noop(self, account, provider, event, event_id, target, reason) -> Transition:
        status = target.status.value if target else None
        return Transition(
            account_id=account.id,
            provider=provider,
            event=event.name,
            event_id=event_id,
            outcome=NOOP,
            reason=reason,
            subscription_ref=event.subscription_ref,
            status_before=status,
            status_after=status,
            tier_before=account.access_tier,
            tier_after=account.access_tier,
            plan_before=account.plan,
            plan_after=account.plan,
        )

    def _open_record(self, account, records, event, provider, at):
        """A subscription we have no record of."""
        plan = event.plan or account.plan or self.default_plan
        base = SubscriptionState(
            provider=provider,
            provider_subscription_id=event.subscription_ref,
            plan=plan,
            status=SubscriptionStatus.ACTIVE,
        )

        if isinstance(event, Canceled):
            # Tombstone: a late Activated for this subscription must not open it
            record = replace(
                base,
                status=SubscriptionStatus.CANCELED,
                cancel_at_period_end=not event.immediate,
                current_period_end=event.period_end,
                canceled_at=at,
            )
            return [record], "canceled before activation seen"

        if isinstance(event, Expired):
            return [replace(base, status=SubscriptionStatus.EXPIRED)], "expired before activation seen"

        if isinstance(event, Activated):
            status = SubscriptionStatus.PENDING_ACTIVATION if event.pending else SubscriptionStatus.ACTIVE
            record = replace(
                base,
                status=status,
                is_trial=event.trial,
                current_period_start=event.period_start,
                current_period_end=event.period_end,
            )
            reason = "activated"
        elif isinstance(event, Renewed):
            record = replace(
                base,
                current_period_start=event.period_start,
                current_period_end=event.period_end,
                cancel_at_period_end=bool(event.cancel_at_end),
            )
            reason = "implicit activation from renewal"
        elif isinstance(event, (PaymentFailed, Suspended)):
            record = replace(base, status=SubscriptionStatus.PAST_DUE, past_due_since=at)
            reason = "implicit activation from payment failure"
        else:
            raise TypeError(f"Unsupported billing event {event!r}")

        # At most one open record per (account, provider): the new one wins
        superseded = [
            replace(r, status=SubscriptionStatus.CANCELED, canceled_at=at, cancel_at_period_end=False)
            for r in records
            if r.provider == provider and r.is_open
        ]
        return superseded + [record], reason

    def _advance(self, record: SubscriptionState, event: BillingEvent, at: datetime):
        """Returns (new_state, reason) or (None, reason) for a no-op."""
        status = record.status

        if isinstance(event, Activated):
            if event.pending:
                return None, "activation still pending"
            updated = replace(
                record,
                status=SubscriptionStatus.ACTIVE if status == SubscriptionStatus.PENDING_ACTIVATION else status,
                is_trial=event.trial,
                plan=event.plan or record.plan,
                current_period_start=event.period_start or record.current_period_start,
                current_period_end=event.period_end or record.current_period_end,
            )
            if updated == record:
                return None, "already activated"
            return updated, "activation confirmed"

        if isinstance(event, Renewed):
            updated = replace(
                record,
                status=SubscriptionStatus.ACTIVE,
                is_trial=False,
                plan=event.plan or record.plan,
                past_due_since=None,
                current_period_start=event.period_start or record.current_period_start,
                current_period_end=event.period_end or record.current_period_end,
                cancel_at_period_end=(
                    record.cancel_at_period_end if event.cancel_at_end is None else event.cancel_at_end
                ),
            )
            if updated == record:
                return None, "renewal already reflected"
            if status == SubscriptionStatus.PAST_DUE:
                return updated, "past due cleared"
            if status == SubscriptionStatus.PENDING_ACTIVATION:
                return updated, "activation confirmed"
            return updated, "period refreshed"

        if isinstance(event, (PaymentFailed, Suspended)):
            if status == SubscriptionStatus.PAST_DUE:
                return None, "already past due"
            return replace(record, status=SubscriptionStatus.PAST_DUE, past_due_since=at), "payment failed"

        if isinstance(event, Canceled):
            return (
                replace(
                    record,
                    status=SubscriptionStatus.CANCELED,
                    cancel_at_period_end=not event.immediate,
                    canceled_at=at,
                    current_period_end=event.period_end or record.current_period_end,
                ),
                "canceled immediately" if event.immediate else "canceled at period end",
            )

        if isinstance(event, Expired):
            return replace(record, status=SubscriptionStatus.EXPIRED, cancel_at_period_end=False), "expired"

        raise TypeError(f"Unsupported billing event {event!r}")


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)
