from dataclasses import replace
from datetime import timedelta

import pytest

from subsync.billing.constants import AccessTier, SubscriptionStatus
from subsync.billing.events import Activated, Canceled, Expired, PaymentFailed, Renewed, Suspended
from subsync.billing.state_machine import (
    AccountState,
    ReconciliationStateMachine,
    SubscriptionState,
    derive_access,
)
from subsync.utils.time import utcnow

NOW = utcnow()
GRACE = timedelta(days=7)


@pytest.fixture
def machine():
    return ReconciliationStateMachine(default_plan="practice", past_due_grace=GRACE)


@pytest.fixture
def trial_account():
    return AccountState(id="u123", access_tier=AccessTier.TRIAL, trial_ends_at=NOW + timedelta(days=14))


def record(sub_id="sub_1", provider="stripe", status=SubscriptionStatus.ACTIVE, record_id=1, **kwargs):
    return SubscriptionState(
        id=record_id,
        provider=provider,
        provider_subscription_id=sub_id,
        plan=kwargs.pop("plan", "practice"),
        status=status,
        **kwargs,
    )


def apply(machine, account, records, event, provider="stripe", at=None, event_id="evt_1"):
    return machine.apply(
        account, records, event, provider=provider, event_id=event_id, occurred_at=at, now=NOW
    )


def after(transition, records):
    """Records as they would be stored once the transition is applied."""
    merged = {(r.provider, r.provider_subscription_id): r for r in records}
    for r in transition.record_updates + transition.record_inserts:
        merged[(r.provider, r.provider_subscription_id)] = r
    return list(merged.values())


def stored(transition, records):
    """Give inserted records ids so they can be fed back as existing state."""
    result = []
    next_id = 100
    for r in after(transition, records):
        if r.id is None:
            r = replace(r, id=next_id)
            next_id += 1
        result.append(r)
    return result


class TestOpeningRecords:
    def test_activated_opens_active_record(self, machine, trial_account):
        t = apply(machine, trial_account, [], Activated(subscription_ref="sub_1", plan="practice", correlation_id="u123"))

        assert t.outcome == "applied"
        assert len(t.record_inserts) == 1
        assert t.record_inserts[0].status == SubscriptionStatus.ACTIVE
        assert t.tier_after == AccessTier.ACTIVE
        assert t.plan_after == "practice"

    def test_pending_activation_keeps_signup_trial(self, machine, trial_account):
        t = apply(machine, trial_account, [], Activated(subscription_ref="sub_1", plan="starter", pending=True))

        assert t.record_inserts[0].status == SubscriptionStatus.PENDING_ACTIVATION
        assert t.tier_after == AccessTier.TRIAL

    def test_trial_hint_gives_trial_tier(self, machine, trial_account):
        t = apply(machine, trial_account, [], Activated(subscription_ref="sub_1", plan="enterprise", trial=True))

        assert t.record_inserts[0].is_trial is True
        assert t.tier_after == AccessTier.TRIAL
        assert t.plan_after == "enterprise"

    def test_renewed_for_unknown_subscription_is_implicit_activation(self, machine, trial_account):
        t = apply(machine, trial_account, [], Renewed(subscription_ref="sub_x", period_end=NOW + timedelta(days=30)))

        inserted = t.record_inserts[0]
        assert inserted.status == SubscriptionStatus.ACTIVE
        assert inserted.plan == "practice"
        assert t.tier_after == AccessTier.ACTIVE

    def test_implicit_activation_prefers_account_plan(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.LOCKED, plan="enterprise")
        t = apply(machine, account, [], Renewed(subscription_ref="sub_x"))
        assert t.record_inserts[0].plan == "enterprise"

    def test_payment_failed_for_unknown_subscription_opens_past_due(self, machine, trial_account):
        t = apply(machine, trial_account, [], PaymentFailed(subscription_ref="sub_x"))

        inserted = t.record_inserts[0]
        assert inserted.status == SubscriptionStatus.PAST_DUE
        assert inserted.past_due_since is not None
        # Still inside the grace window
        assert t.tier_after == AccessTier.ACTIVE

    def test_new_record_supersedes_open_record_of_same_provider(self, machine, trial_account):
        existing = [record("sub_old", status=SubscriptionStatus.ACTIVE)]
        t = apply(machine, trial_account, existing, Activated(subscription_ref="sub_new", plan="enterprise"))

        assert [r.provider_subscription_id for r in t.record_updates] == ["sub_old"]
        assert t.record_updates[0].status == SubscriptionStatus.CANCELED
        assert t.summary()["superseded"] == ["sub_old"]
        assert t.plan_after == "enterprise"

    def test_other_provider_record_is_not_superseded(self, machine, trial_account):
        existing = [record("I-PAYPAL1", provider="paypal")]
        t = apply(machine, trial_account, existing, Activated(subscription_ref="sub_new"))
        assert t.record_updates == ()

    def test_new_activation_after_terminal_opens_new_record(self, machine, trial_account):
        existing = [record("sub_1", status=SubscriptionStatus.CANCELED)]
        t = apply(machine, trial_account, existing, Activated(subscription_ref="sub_2"))

        assert t.record_inserts[0].provider_subscription_id == "sub_2"
        assert t.record_updates == ()

    def test_event_without_subscription_ref_is_noop(self, machine, trial_account):
        t = apply(machine, trial_account, [], Renewed())
        assert t.is_noop


class TestLifecycle:
    def test_pending_then_renewed_becomes_active(self, machine, trial_account):
        existing = [record(status=SubscriptionStatus.PENDING_ACTIVATION)]
        t = apply(machine, trial_account, existing, Renewed(subscription_ref="sub_1"))

        assert t.status_before == "pending_activation"
        assert t.status_after == "active"
        assert t.tier_after == AccessTier.ACTIVE

    def test_pending_then_confirmed_activation_becomes_active(self, machine, trial_account):
        existing = [record(status=SubscriptionStatus.PENDING_ACTIVATION)]
        t = apply(machine, trial_account, existing, Activated(subscription_ref="sub_1"))
        assert t.status_after == "active"

    def test_active_renewed_refreshes_period(self, machine, trial_account):
        end = NOW + timedelta(days=60)
        existing = [record(current_period_end=NOW + timedelta(days=30))]
        t = apply(machine, trial_account, existing, Renewed(subscription_ref="sub_1", period_end=end))

        assert t.record_updates[0].current_period_end == end
        assert t.status_after == "active"

    def test_payment_failed_moves_to_past_due_without_downgrade(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        t = apply(machine, account, [record()], PaymentFailed(subscription_ref="sub_1"))

        assert t.status_after == "past_due"
        assert t.tier_after == AccessTier.ACTIVE

    def test_suspended_moves_to_past_due(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        t = apply(machine, account, [record()], Suspended(subscription_ref="sub_1"))
        assert t.status_after == "past_due"

    def test_repeated_payment_failure_is_noop(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        existing = [record(status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=1))]
        t = apply(machine, account, existing, PaymentFailed(subscription_ref="sub_1"))
        assert t.is_noop

    def test_payment_failed_then_renewed_ends_active(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        records = [record()]

        t1 = apply(machine, account, records, PaymentFailed(subscription_ref="sub_1"), event_id="evt_1")
        records = stored(t1, records)
        t2 = apply(machine, account, records, Renewed(subscription_ref="sub_1"), event_id="evt_2")

        assert t2.status_after == "active"
        assert t2.record_updates[0].past_due_since is None
        assert t2.reason == "past due cleared"

    def test_renewal_without_cancel_flag_keeps_scheduled_cancel(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        existing = [record(cancel_at_period_end=True, current_period_end=NOW + timedelta(days=3))]

        t = apply(machine, account, existing,
                  Renewed(subscription_ref="sub_1", period_end=NOW + timedelta(days=33)))

        assert t.reason == "period refreshed"
        assert t.record_updates[0].cancel_at_period_end is True

    def test_renewal_with_cancel_flag_clears_it(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        existing = [record(cancel_at_period_end=True)]

        t = apply(machine, account, existing, Renewed(subscription_ref="sub_1", cancel_at_end=False))

        assert t.record_updates[0].cancel_at_period_end is False

    def test_immediate_cancel_downgrades_only_subscription(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        t = apply(machine, account, [record()], Canceled(subscription_ref="sub_1", immediate=True))

        assert t.status_after == "canceled"
        assert t.record_updates[0].cancel_at_period_end is False
        assert t.tier_after == AccessTier.LOCKED
        assert t.tier_after == AccessTier.INACTIVE
        assert t.plan_after is None

    def test_deferred_cancel_keeps_access_until_period_end(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        existing = [record(current_period_end=NOW + timedelta(days=10))]
        t = apply(machine, account, existing, Canceled(subscription_ref="sub_1", immediate=False))

        assert t.status_after == "canceled"
        assert t.record_updates[0].cancel_at_period_end is True
        assert t.tier_after == AccessTier.ACTIVE

    def test_expired_downgrades(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        existing = [record(status=SubscriptionStatus.PAST_DUE, past_due_since=NOW)]
        t = apply(machine, account, existing, Expired(subscription_ref="sub_1"))

        assert t.status_after == "expired"
        assert t.tier_after == AccessTier.LOCKED

    @pytest.mark.parametrize("status", [SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED])
    @pytest.mark.parametrize(
        "event",
        [
            Activated(subscription_ref="sub_1"),
            Renewed(subscription_ref="sub_1"),
            PaymentFailed(subscription_ref="sub_1"),
            Canceled(subscription_ref="sub_1"),
            Expired(subscription_ref="sub_1"),
        ],
    )
    def test_terminal_record_ignores_everything(self, machine, status, event):
        account = AccountState(id="u1", access_tier=AccessTier.LOCKED)
        t = apply(machine, account, [record(status=status)], event)

        assert t.is_noop
        assert t.record_updates == () and t.record_inserts == ()

    def test_stale_event_is_noop(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        existing = [record(last_event_at=NOW)]
        t = apply(machine, account, existing, PaymentFailed(subscription_ref="sub_1"), at=NOW - timedelta(minutes=5))

        assert t.is_noop
        assert t.reason == "stale event"

    def test_late_cancel_is_not_treated_as_stale(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        existing = [record(last_event_at=NOW)]
        t = apply(machine, account, existing, Canceled(subscription_ref="sub_1"), at=NOW - timedelta(minutes=5))
        assert t.status_after == "canceled"

    def test_sequence_marker_advances(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        t = apply(machine, account, [record()], PaymentFailed(subscription_ref="sub_1"), at=NOW, event_id="evt_9")

        assert t.record_updates[0].last_event_id == "evt_9"
        assert t.record_updates[0].last_event_at == NOW

    def test_customer_reference_is_linked_once(self, machine, trial_account):
        t = apply(machine, trial_account, [], Activated(subscription_ref="sub_1", customer_ref="cus_1"))
        assert t.customer_ref_update == {"stripe_customer_id": "cus_1"}

        linked = replace(trial_account, stripe_customer_id="cus_0")
        t = apply(machine, linked, [], Activated(subscription_ref="sub_2", customer_ref="cus_1"))
        assert t.customer_ref_update == {}


class TestReordering:
    def test_cancel_before_activation_matches_in_order_result(self, machine, trial_account):
        activated = Activated(subscription_ref="sub_1", plan="practice", correlation_id="u123")
        canceled = Canceled(subscription_ref="sub_1", immediate=True)

        in_order = []
        t = apply(machine, trial_account, in_order, activated, event_id="evt_a")
        in_order = stored(t, in_order)
        t = apply(machine, trial_account, in_order, canceled, event_id="evt_c")
        in_order = stored(t, in_order)

        reversed_order = []
        t = apply(machine, trial_account, reversed_order, canceled, event_id="evt_c")
        reversed_order = stored(t, reversed_order)
        late = apply(machine, trial_account, reversed_order, activated, event_id="evt_a")

        assert late.is_noop
        assert [r.status for r in in_order] == [r.status for r in reversed_order] == [SubscriptionStatus.CANCELED]
        assert derive_access(in_order, NOW, GRACE)[0] == derive_access(reversed_order, NOW, GRACE)[0]


class TestDeriveAccess:
    def test_no_records_and_no_trial_is_locked(self):
        assert derive_access([], NOW, GRACE) == (AccessTier.LOCKED, None)

    def test_signup_trial_counts_without_subscriptions(self):
        tier, _ = derive_access([], NOW, GRACE, trial_ends_at=NOW + timedelta(days=1))
        assert tier == AccessTier.TRIAL

    def test_signup_trial_ends(self):
        tier, _ = derive_access([], NOW, GRACE, trial_ends_at=NOW - timedelta(days=1))
        assert tier == AccessTier.LOCKED

    def test_either_provider_active_keeps_account_active(self):
        records = [
            record("sub_1", provider="stripe", status=SubscriptionStatus.ACTIVE, plan="starter"),
            record("I-1", provider="paypal", status=SubscriptionStatus.CANCELED),
        ]
        assert derive_access(records, NOW, GRACE) == (AccessTier.ACTIVE, "starter")

    def test_both_terminal_is_not_active(self):
        records = [
            record("sub_1", provider="stripe", status=SubscriptionStatus.EXPIRED),
            record("I-1", provider="paypal", status=SubscriptionStatus.CANCELED),
        ]
        assert derive_access(records, NOW, GRACE)[0] != AccessTier.ACTIVE

    def test_past_due_beyond_grace_does_not_grant(self):
        records = [record(status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=8))]
        assert derive_access(records, NOW, GRACE)[0] == AccessTier.LOCKED

    def test_past_due_within_grace_grants(self):
        records = [record(status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=2))]
        assert derive_access(records, NOW, GRACE)[0] == AccessTier.ACTIVE

    def test_elapsed_deferred_cancellation_does_not_grant(self):
        records = [
            record(
                status=SubscriptionStatus.CANCELED,
                cancel_at_period_end=True,
                current_period_end=NOW - timedelta(seconds=1),
            )
        ]
        assert derive_access(records, NOW, GRACE)[0] == AccessTier.LOCKED

    def test_active_with_elapsed_cancel_at_period_end_does_not_grant(self):
        records = [record(cancel_at_period_end=True, current_period_end=NOW - timedelta(hours=1))]
        assert derive_access(records, NOW, GRACE)[0] == AccessTier.LOCKED

    def test_paid_record_outranks_trial_record(self):
        records = [
            record("sub_t", provider="stripe", is_trial=True, plan="enterprise"),
            record("I-1", provider="paypal", plan="starter"),
        ]
        assert derive_access(records, NOW, GRACE) == (AccessTier.ACTIVE, "starter")

    def test_pending_does_not_grant(self):
        records = [record(status=SubscriptionStatus.PENDING_ACTIVATION)]
        assert derive_access(records, NOW, GRACE)[0] == AccessTier.LOCKED


class TestRederive:
    def test_rederive_downgrades_elapsed_cancellation(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        records = [
            record(
                status=SubscriptionStatus.CANCELED,
                cancel_at_period_end=True,
                current_period_end=NOW - timedelta(minutes=1),
            )
        ]
        t = machine.rederive(account, records, now=NOW)

        assert t.outcome == "applied"
        assert t.tier_after == AccessTier.LOCKED

    def test_rederive_without_change_is_noop(self, machine):
        account = AccountState(id="u1", access_tier=AccessTier.ACTIVE, plan="practice")
        assert machine.rederive(account, [record()], now=NOW).is_noop
