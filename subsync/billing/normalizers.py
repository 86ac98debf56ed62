"""
Provider vocabularies -> internal billing events.

Normalizers are pure and total: they never touch storage and never raise.
Anything they cannot map comes back as Unrecognized so that a new provider
event type can never break webhook delivery.
"""

import logging

from subsync.billing.events import (
    Activated,
    Canceled,
    EventEnvelope,
    Expired,
    PaymentFailed,
    Renewed,
    Suspended,
    Unrecognized,
)
from subsync.utils.time import from_timestamp, parse_iso

logger = logging.getLogger(__name__)

_MALFORMED = (KeyError, TypeError, ValueError, AttributeError, IndexError)


class BaseNormalizer:
    handlers: dict = {}

    def normalize(self, envelope: EventEnvelope):
        handler_name = self.handlers.get(envelope.event_type)
        if handler_name is None:
            return Unrecognized(envelope.event_type)

        try:
            return getattr(self, handler_name)(envelope.payload)
        except _MALFORMED as e:
            logger.info(
                f"Malformed {envelope.provider} payload for {envelope.event_type}: {e!r}",
                extra={"event_id": envelope.event_id},
            )
            return Unrecognized(envelope.event_type, reason="malformed payload", details={"error": repr(e)})


class StripeNormalizer(BaseNormalizer):
    handlers = {
        "checkout.session.completed": "_checkout_completed",
        "customer.subscription.created": "_subscription_changed",
        "customer.subscription.updated": "_subscription_changed",
        "customer.subscription.deleted": "_subscription_deleted",
        "invoice.payment_failed": "_invoice_failed",
        "invoice.payment_succeeded": "_invoice_paid",
        "invoice.paid": "_invoice_paid",
    }

    def __init__(self, price_plans: dict | None = None):
        self.price_plans = price_plans or {}

    # -- helpers --------------------------------------------------------

    @staticmethod
    def _object(payload: dict) -> dict:
        return payload["data"]["object"]

    @staticmethod
    def _ref(value):
        # Expanded objects carry the id inside
        if isinstance(value, dict):
            return value.get("id")
        return value

    def _plan_for(self, obj: dict) -> str | None:
        plan = (obj.get("metadata") or {}).get("plan")
        if plan:
            return plan
        items = (obj.get("items") or {}).get("data") or []
        for item in items:
            price_id = (item.get("price") or {}).get("id")
            if price_id in self.price_plans:
                return self.price_plans[price_id]
        return None

    @staticmethod
    def _period(obj: dict):
        start, end = obj.get("current_period_start"), obj.get("current_period_end")
        if start is None or end is None:
            # Newer API versions moved the period onto the subscription items
            items = (obj.get("items") or {}).get("data") or []
            if items:
                start = start or items[0].get("current_period_start")
                end = end or items[0].get("current_period_end")
        return from_timestamp(start), from_timestamp(end)

    def _invoice_subscription(self, invoice: dict):
        ref = self._ref(invoice.get("subscription"))
        if ref:
            return ref
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        return self._ref(details.get("subscription"))

    # -- handlers -------------------------------------------------------

    def _checkout_completed(self, payload):
        session = self._object(payload)
        if session.get("mode") != "subscription":
            return Unrecognized("checkout.session.completed", reason=f"mode={session.get('mode')}")

        subscription_ref = self._ref(session.get("subscription"))
        if not subscription_ref:
            return Unrecognized("checkout.session.completed", reason="no subscription on session")

        metadata = session.get("metadata") or {}
        return Activated(
            subscription_ref=subscription_ref,
            customer_ref=self._ref(session.get("customer")),
            plan=metadata.get("plan"),
            correlation_id=metadata.get("userId") or session.get("client_reference_id"),
            pending=session.get("payment_status") == "unpaid",
        )

    def _subscription_changed(self, payload):
        sub = self._object(payload)
        status = sub["status"]
        start, end = self._period(sub)
        common = {
            "subscription_ref": sub["id"],
            "customer_ref": self._ref(sub.get("customer")),
            "plan": self._plan_for(sub),
        }
        correlation_id = (sub.get("metadata") or {}).get("userId")

        if status == "active":
            return Renewed(
                period_start=start,
                period_end=end,
                cancel_at_end=bool(sub.get("cancel_at_period_end")),
                **common,
            )
        if status == "trialing":
            return Activated(
                trial=True, correlation_id=correlation_id, period_start=start, period_end=end, **common
            )
        if status == "incomplete":
            return Activated(
                pending=True, correlation_id=correlation_id, period_start=start, period_end=end, **common
            )
        if status == "past_due":
            return PaymentFailed(**common)
        if status in ("unpaid", "paused"):
            return Suspended(**common)
        if status == "canceled":
            return Canceled(immediate=True, period_end=end, **common)
        if status == "incomplete_expired":
            return Expired(**common)
        return Unrecognized(payload.get("type", ""), reason=f"subscription status {status}")

    def _subscription_deleted(self, payload):
        sub = self._object(payload)
        _, end = self._period(sub)
        return Canceled(
            subscription_ref=sub["id"],
            customer_ref=self._ref(sub.get("customer")),
            plan=self._plan_for(sub),
            immediate=True,
            period_end=end,
        )

    def _invoice_failed(self, payload):
        invoice = self._object(payload)
        subscription_ref = self._invoice_subscription(invoice)
        if not subscription_ref:
            return Unrecognized("invoice.payment_failed", reason="invoice not tied to a subscription")
        return PaymentFailed(
            subscription_ref=subscription_ref,
            customer_ref=self._ref(invoice.get("customer")),
        )

    def _invoice_paid(self, payload):
        invoice = self._object(payload)
        subscription_ref = self._invoice_subscription(invoice)
        if not subscription_ref:
            return Unrecognized(payload.get("type", ""), reason="invoice not tied to a subscription")

        start = end = None
        plan = None
        lines = (invoice.get("lines") or {}).get("data") or []
        if lines:
            period = lines[0].get("period") or {}
            start, end = from_timestamp(period.get("start")), from_timestamp(period.get("end"))
            price_id = (lines[0].get("price") or {}).get("id")
            plan = self.price_plans.get(price_id)

        return Renewed(
            subscription_ref=subscription_ref,
            customer_ref=self._ref(invoice.get("customer")),
            plan=plan,
            period_start=start,
            period_end=end,
        )


class PayPalNormalizer(BaseNormalizer):
    handlers = {
        "BILLING.SUBSCRIPTION.ACTIVATED": "_activated",
        "BILLING.SUBSCRIPTION.RE-ACTIVATED": "_reactivated",
        "BILLING.SUBSCRIPTION.CANCELLED": "_cancelled",
        "BILLING.SUBSCRIPTION.SUSPENDED": "_payment_failed",
        "BILLING.SUBSCRIPTION.PAYMENT.FAILED": "_payment_failed",
        "BILLING.SUBSCRIPTION.EXPIRED": "_expired",
        "PAYMENT.SALE.COMPLETED": "_sale_completed",
    }

    def __init__(self, plan_ids: dict | None = None, cancel_at_period_end: bool = False):
        self.plan_ids = plan_ids or {}
        self.cancel_at_period_end = cancel_at_period_end

    def _common(self, resource: dict) -> dict:
        return {
            "subscription_ref": resource["id"],
            "customer_ref": (resource.get("subscriber") or {}).get("payer_id"),
            "plan": self.plan_ids.get(resource.get("plan_id")),
        }

    @staticmethod
    def _next_billing(resource: dict):
        return parse_iso((resource.get("billing_info") or {}).get("next_billing_time"))

    def _activated(self, payload):
        resource = payload["resource"]
        last_payment = (resource.get("billing_info") or {}).get("last_payment") or {}
        return Activated(
            correlation_id=resource.get("custom_id"),
            period_start=parse_iso(last_payment.get("time") or resource.get("start_time")),
            period_end=self._next_billing(resource),
            **self._common(resource),
        )

    def _reactivated(self, payload):
        resource = payload["resource"]
        return Renewed(period_end=self._next_billing(resource), **self._common(resource))

    def _cancelled(self, payload):
        resource = payload["resource"]
        return Canceled(
            immediate=not self.cancel_at_period_end,
            period_end=self._next_billing(resource),
            **self._common(resource),
        )

    def _payment_failed(self, payload):
        # PayPal suspension is a soft fail: it can be re-activated
        return PaymentFailed(**self._common(payload["resource"]))

    def _expired(self, payload):
        return Expired(**self._common(payload["resource"]))

    def _sale_completed(self, payload):
        sale = payload["resource"]
        agreement_id = sale.get("billing_agreement_id")
        if not agreement_id:
            return Unrecognized("PAYMENT.SALE.COMPLETED", reason="sale not tied to a subscription")
        return Renewed(subscription_ref=agreement_id)
