"""Shared test fixtures for the verify-relay test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake secrets)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- store / dispatcher: the app's fulfillment collaborators
- checkout_event / verification_event: Stripe event builders
- post_event: POSTs an event with a real Stripe-Signature header
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock

import pytest

from verify_relay import create_app
from verify_relay.extensions import db as _db

WEBHOOK_SECRET = "whsec_test_fake"


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header the way Stripe does (HMAC-SHA256)."""
    if timestamp is None:
        timestamp = int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _relay_response(status_code=200, body=None):
    """A stand-in for requests.Response from the provisioning endpoint."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = json.dumps(body) if body is not None else ""
    if body is None:
        resp.json.side_effect = ValueError("No JSON")
    else:
        resp.json.return_value = body
    return resp


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions["fulfillment_store"]


@pytest.fixture
def dispatcher(app):
    return app.extensions["fulfillment_dispatcher"]


@pytest.fixture
def relay_response():
    """Builder for fake provisioning responses."""
    return _relay_response


@pytest.fixture
def checkout_event():
    """Build a checkout.session.* event."""

    def _build(session_id="cs_test_001", payment_status="paid", email="joe@example.com",
               product_id="builder-pass", promo_code=None, verification_session_id=None,
               event_type="checkout.session.completed", event_id="evt_checkout_001"):
        metadata = {}
        if product_id:
            metadata["product_id"] = product_id
        if verification_session_id:
            metadata["verification_session_id"] = verification_session_id
        discounts = []
        if promo_code:
            discounts.append({"amount": 500, "discount": {"id": promo_code}})
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "payment_status": payment_status,
                    "customer_details": {"email": email},
                    "metadata": metadata,
                    "total_details": {"breakdown": {"discounts": discounts}},
                }
            },
        }

    return _build


@pytest.fixture
def verification_event():
    """Build an identity.verification_session.* event."""

    def _build(session_id="vs_test_001", email="joe@example.com", product_id=None,
               checkout_session_id=None, event_type="identity.verification_session.verified",
               event_id="evt_verified_001"):
        metadata = {}
        if email:
            metadata["email"] = email
        if product_id:
            metadata["product_id"] = product_id
        if checkout_session_id:
            metadata["checkout_session_id"] = checkout_session_id
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "identity.verification_session",
                    "status": "verified",
                    "metadata": metadata,
                }
            },
        }

    return _build


@pytest.fixture
def post_event(client):
    """POST an event to the webhook with a valid (or deliberately bad) signature."""

    def _post(event, secret=WEBHOOK_SECRET, timestamp=None, path="/stripe/webhook"):
        payload = json.dumps(event)
        return client.post(
            path,
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(payload, secret, timestamp)},
        )

    return _post


@pytest.fixture
def signer():
    """sign_payload, for tests that build their own requests."""
    return sign_payload
