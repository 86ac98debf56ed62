import hashlib
import hmac
import json
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest
from faker import Faker

from subsync import create_app
from subsync.extensions import db
from subsync.models import Account
from subsync.utils.time import utcnow

# Initialize Faker for generating test data
fake = Faker()

STRIPE_TEST_SECRET = "whsec_test_secret"

PAYPAL_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api-m.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42",
    "PAYPAL-TRANSMISSION-ID": "69cd13f0-d67a-11e5-baa3-778b53f4ae55",
    "PAYPAL-TRANSMISSION-SIG": "lmI95Jx3Y9nhR5SJWlHVIWpg4AgFk7n9bCHSRxbrd8A9zrhdu2rMyFrmz+Zjh3s",
    "PAYPAL-TRANSMISSION-TIME": "2026-10-18T12:00:00Z",
}


class FakePayPalSession:
    """Stands in for requests.Session on the PayPal client."""

    def __init__(self):
        self.verification_status = "SUCCESS"
        self.error = None
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error

        response = Mock()
        response.raise_for_status = Mock()
        if url.endswith("/v1/oauth2/token"):
            response.json.return_value = {"access_token": "A21AAtest-token", "expires_in": 32400}
        else:
            response.json.return_value = {"verification_status": self.verification_status}
        return response

    def verification_calls(self):
        return [c for c in self.calls if c[0].endswith("/verify-webhook-signature")]


# ============================================
# APPLICATION FIXTURES
# ============================================

@pytest.fixture
def paypal_session():
    return FakePayPalSession()


@pytest.fixture
def app(paypal_session):
    """Fresh app with an in-memory database per test"""
    app = create_app("testing", paypal_session=paypal_session)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def engine(app):
    return app.extensions["reconciliation_engine"]


@pytest.fixture
def dispatcher(app):
    return app.extensions["webhook_dispatcher"]


# ============================================
# DATA FIXTURES
# ============================================

def make_account(**kwargs):
    account = Account.open_trial(kwargs.pop("account_id", None) or f"u_{fake.uuid4()[:12]}", email=fake.email())
    for key, value in kwargs.items():
        setattr(account, key, value)
    db.session.add(account)
    db.session.commit()
    return account


@pytest.fixture
def account(app):
    return make_account()


@pytest.fixture
def account_factory(app):
    return make_account


# ============================================
# PROVIDER PAYLOAD HELPERS
# ============================================

def stripe_signature(payload: bytes, secret: str = STRIPE_TEST_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type, obj, event_id=None, created=None) -> dict:
    return {
        "id": event_id or f"evt_{fake.pystr(min_chars=24, max_chars=24)}",
        "object": "event",
        "type": event_type,
        "created": created or int(time.time()),
        "data": {"object": obj},
    }


def stripe_subscription(sub_id, customer, status="active", price_id="price_practice_monthly",
                        period_start=None, period_end=None, cancel_at_period_end=False, metadata=None) -> dict:
    now = int(time.time())
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": period_start or now,
        "current_period_end": period_end or now + 30 * 86400,
        "metadata": metadata or {},
        "items": {"data": [{"price": {"id": price_id}}]},
    }


def stripe_checkout(sub_id, customer, user_id, plan="practice", payment_status="paid") -> dict:
    return {
        "id": f"cs_test_{fake.pystr(min_chars=16, max_chars=16)}",
        "object": "checkout.session",
        "mode": "subscription",
        "subscription": sub_id,
        "customer": customer,
        "client_reference_id": user_id,
        "payment_status": payment_status,
        "metadata": {"userId": user_id, "plan": plan},
    }


def stripe_invoice(sub_id, customer, price_id="price_practice_monthly", period_start=None, period_end=None) -> dict:
    now = int(time.time())
    return {
        "id": f"in_{fake.pystr(min_chars=16, max_chars=16)}",
        "object": "invoice",
        "subscription": sub_id,
        "customer": customer,
        "lines": {
            "data": [
                {
                    "period": {"start": period_start or now, "end": period_end or now + 30 * 86400},
                    "price": {"id": price_id},
                }
            ]
        },
    }


def paypal_event(event_type, resource, event_id=None, create_time=None) -> dict:
    return {
        "id": event_id or f"WH-{fake.pystr(min_chars=17, max_chars=17).upper()}",
        "event_version": "1.0",
        "create_time": create_time or iso(utcnow()),
        "resource_type": "subscription",
        "event_type": event_type,
        "resource": resource,
    }


def paypal_subscription(sub_id, payer_id, custom_id=None, plan_id="P-practice-plan-id", status="ACTIVE") -> dict:
    return {
        "id": sub_id,
        "plan_id": plan_id,
        "status": status,
        "custom_id": custom_id,
        "start_time": iso(utcnow() - timedelta(minutes=1)),
        "subscriber": {"payer_id": payer_id, "email_address": fake.email()},
        "billing_info": {"next_billing_time": iso(utcnow() + timedelta(days=30))},
    }


def iso(value) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def encode(event: dict) -> bytes:
    return json.dumps(event).encode()


@pytest.fixture
def post_stripe(client):
    def _post(event: dict, signature: str | None = None):
        body = encode(event)
        headers = {"Content-Type": "application/json"}
        headers["Stripe-Signature"] = signature or stripe_signature(body)
        return client.post("/webhooks/stripe", data=body, headers=headers)
    return _post


@pytest.fixture
def post_paypal(client):
    def _post(event: dict, headers: dict | None = None):
        body = encode(event)
        request_headers = {"Content-Type": "application/json", **(PAYPAL_HEADERS if headers is None else headers)}
        return client.post("/webhooks/paypal", data=body, headers=request_headers)
    return _post
