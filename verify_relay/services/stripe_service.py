"""Stripe service — webhook signature verification and event parsing.

Responsible for:
- Verifying the Stripe-Signature header against the raw request body
- Turning a verified event into EventFacts, the only shape the rest of the
  package reads (the vendor schema stops here)
"""

import json
import logging
from dataclasses import dataclass, field

import stripe

from verify_relay.errors import PayloadInvalid, SignatureInvalid

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
CHECKOUT_ASYNC_FAILED = "checkout.session.async_payment_failed"
VERIFICATION_VERIFIED = "identity.verification_session.verified"
VERIFICATION_REQUIRES_INPUT = "identity.verification_session.requires_input"

CHECKOUT_EVENTS = (CHECKOUT_COMPLETED, CHECKOUT_ASYNC_SUCCEEDED, CHECKOUT_ASYNC_FAILED)
VERIFICATION_EVENTS = (VERIFICATION_VERIFIED, VERIFICATION_REQUIRES_INPUT)


# ──────────────────────────────────────────────
# Signature verification
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header, secret, tolerance=300):
    """Verify a Stripe webhook and return the parsed event dict.

    ``payload`` must be the raw request body exactly as received; any
    re-serialization breaks the signature.

    Raises SignatureInvalid on a bad, missing or expired signature, or a
    body that is not UTF-8 (Stripe signs the decoded text).
    Raises PayloadInvalid if the signed body is not a Stripe event.
    """
    if not secret:
        raise SignatureInvalid("No webhook secret configured")
    if not sig_header:
        raise SignatureInvalid("Missing Stripe-Signature header")

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalid("Body is not UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid(str(e)) from e

    try:
        event = json.loads(payload)
    except ValueError as e:
        raise PayloadInvalid(f"Body is not JSON: {e}") from e

    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise PayloadInvalid("Event has no type")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise PayloadInvalid("Event has no data.object")

    return event


# ──────────────────────────────────────────────
# Event parsing
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class EventFacts:
    """The handful of fields fulfillment needs, pulled out of a Stripe event."""

    event_id: str
    event_type: str
    email: str = None
    product_id: str = None
    promo_code: str = None
    checkout_session_id: str = None
    verification_session_id: str = None
    payment_status: str = None
    raw: dict = field(default_factory=dict, repr=False)


def _text(value):
    """Strings only; blanks count as absent."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _dig(obj, *path):
    """Walk nested dicts/lists, returning None at the first missing step."""
    for step in path:
        if isinstance(obj, dict):
            obj = obj.get(step)
        elif isinstance(obj, list) and isinstance(step, int):
            obj = obj[step] if -len(obj) <= step < len(obj) else None
        else:
            return None
    return obj


def extract_event_facts(event):
    """Build EventFacts from a verified event.

    Checkout sessions and verification sessions each may name the other
    session in their metadata (``verification_session_id`` /
    ``checkout_session_id``); those links let out-of-order events land on
    the same fulfillment row. Event types outside checkout and identity
    get facts with only the event id and type.
    """
    event_type = event["type"]
    obj = event["data"]["object"]
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    if event_type in CHECKOUT_EVENTS:
        return EventFacts(
            event_id=event.get("id"),
            event_type=event_type,
            email=_text(_dig(obj, "customer_details", "email")) or _text(obj.get("customer_email")),
            product_id=_text(metadata.get("product_id")),
            promo_code=_text(
                _dig(obj, "total_details", "breakdown", "discounts", 0, "discount", "id")
            ),
            checkout_session_id=_text(obj.get("id")),
            verification_session_id=_text(metadata.get("verification_session_id")),
            payment_status=_text(obj.get("payment_status")),
            raw=obj,
        )

    if event_type in VERIFICATION_EVENTS:
        return EventFacts(
            event_id=event.get("id"),
            event_type=event_type,
            email=_text(metadata.get("email")) or _text(_dig(obj, "verified_outputs", "email")),
            product_id=_text(metadata.get("product_id")),
            promo_code=_text(metadata.get("promo_code")),
            checkout_session_id=_text(metadata.get("checkout_session_id")),
            verification_session_id=_text(obj.get("id")),
            raw=obj,
        )

    return EventFacts(event_id=event.get("id"), event_type=event_type, raw=obj)
