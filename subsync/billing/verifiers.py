import json
import logging

import stripe

from subsync.billing.constants import Provider
from subsync.billing.events import EventEnvelope
from subsync.errors import InvalidSignature
from subsync.utils.time import from_timestamp, parse_iso

logger = logging.getLogger(__name__)


def _load_json(raw: bytes) -> dict:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidSignature("Webhook body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise InvalidSignature("Webhook body is not a JSON object")
    return payload


def _event_time(parser, value):
    try:
        return parser(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable event timestamp: {value!r}")
        return None


class StripeVerifier:
    """Checks the Stripe-Signature header (HMAC-SHA256 over the raw body)."""

    provider = Provider.STRIPE.value
    signature_header = "stripe-signature"

    def __init__(self, webhook_secret: str, tolerance: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def verify(self, raw: bytes, headers: dict) -> EventEnvelope:
        signature = headers.get(self.signature_header)
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                raw, signature, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(f"Stripe signature mismatch: {e}") from e
        except ValueError as e:
            raise InvalidSignature("Stripe payload could not be parsed") from e

        return self.parse(raw)

    def parse(self, raw: bytes) -> EventEnvelope:
        """Build an envelope from a body that has already been verified."""
        payload = _load_json(raw)
        return EventEnvelope(
            provider=self.provider,
            event_id=payload.get("id"),
            event_type=payload.get("type") or "",
            occurred_at=_event_time(from_timestamp, payload.get("created")),
            payload=payload,
            raw=raw,
        )


class PayPalVerifier:
    """
    PayPal signs with a certificate chain, so verification is delegated to
    PayPal's own verify-webhook-signature endpoint.
    """

    provider = Provider.PAYPAL.value

    TRANSMISSION_HEADERS = {
        "auth_algo": "paypal-auth-algo",
        "cert_url": "paypal-cert-url",
        "transmission_id": "paypal-transmission-id",
        "transmission_sig": "paypal-transmission-sig",
        "transmission_time": "paypal-transmission-time",
    }

    def __init__(self, client, webhook_id: str):
        self.client = client
        self.webhook_id = webhook_id

    def verify(self, raw: bytes, headers: dict) -> EventEnvelope:
        transmission = {
            field: headers.get(header, "")
            for field, header in self.TRANSMISSION_HEADERS.items()
        }
        missing = [self.TRANSMISSION_HEADERS[f] for f, v in transmission.items() if not v]
        if missing:
            raise InvalidSignature(f"Missing PayPal headers: {', '.join(sorted(missing))}")

        # Reject garbage locally rather than spend a PayPal round trip on it
        envelope = self.parse(raw)

        # Raises VerifierUnavailable when PayPal cannot be reached
        if not self.client.verify_webhook_signature(self.webhook_id, transmission, raw):
            raise InvalidSignature("PayPal rejected webhook signature")

        return envelope

    def parse(self, raw: bytes) -> EventEnvelope:
        payload = _load_json(raw)
        return EventEnvelope(
            provider=self.provider,
            event_id=payload.get("id"),
            event_type=payload.get("event_type") or "",
            occurred_at=_event_time(parse_iso, payload.get("create_time")),
            payload=payload,
            raw=raw,
        )
