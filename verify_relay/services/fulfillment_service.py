"""Fulfillment service — routes verified Stripe events to their handlers.

Responsible for:
- Dispatching each event type to its handler (unknown types are ignored)
- Keeping the record's status from moving backward on late events
- The verified path: store -> provisioning relay -> store -> welcome email
- Turning downstream failures into (ok, message) for the webhook blueprint

Ordering on the verified path: the fulfilled status (with the relay's
response) is committed before the welcome email goes out. If the email
then fails the row stays fulfilled, the request still succeeds, and the
customer can be re-sent their welcome with `flask resend-welcome`.
"""

import logging
from datetime import datetime, timezone

from flask import render_template

from verify_relay.errors import DeliveryFailed, ProvisionError, StoreUnavailable
from verify_relay.models.fulfillment import (
    STATUS_FULFILLED,
    STATUS_FULFILLMENT_FAILED,
    STATUS_NEEDS_INPUT,
    STATUS_PAID,
    STATUS_PAYMENT_NOT_PAID,
    STATUS_VERIFIED,
    can_transition,
)
from verify_relay.services.provisioning_service import ProvisionResult
from verify_relay.services import stripe_service
from verify_relay.services.stripe_service import extract_event_facts

logger = logging.getLogger(__name__)

WELCOME_TEMPLATE = "emails/welcome.html"


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


class FulfillmentDispatcher:
    """Coordinates the store, the provisioning relay and the notifier."""

    def __init__(self, store, relay, notifier,
                 welcome_subject="Verification Complete",
                 suppress_duplicate_welcome=True):
        self.store = store
        self.relay = relay
        self.notifier = notifier
        self.welcome_subject = welcome_subject
        self.suppress_duplicate_welcome = suppress_duplicate_welcome

        self.handlers = {
            stripe_service.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            stripe_service.CHECKOUT_ASYNC_SUCCEEDED: self._handle_async_payment_succeeded,
            stripe_service.CHECKOUT_ASYNC_FAILED: self._handle_async_payment_failed,
            stripe_service.VERIFICATION_VERIFIED: self._handle_verified,
            stripe_service.VERIFICATION_REQUIRES_INPUT: self._handle_requires_input,
        }

    def dispatch(self, event):
        """Process a verified Stripe event.

        Returns (success: bool, message: str). success=False means the
        sender should retry (the blueprint answers 500).
        """
        facts = extract_event_facts(event)

        handler = self.handlers.get(facts.event_type)
        if handler is None:
            logger.info(f"Ignoring event {facts.event_id} of type {facts.event_type}")
            return True, "ignored"

        if not (facts.checkout_session_id or facts.verification_session_id):
            logger.warning(f"{facts.event_type} {facts.event_id} has no session ID, skipping")
            return True, "ignored"

        try:
            return True, handler(facts)
        except StoreUnavailable as e:
            logger.error(f"Store unavailable while handling {facts.event_type} {facts.event_id}: {e}")
            return False, "store_unavailable"
        except ProvisionError as e:
            logger.error(
                f"Provisioning failed for verification {facts.verification_session_id}: {e}"
            )
            return False, "fulfillment_failed"

    # ──────────────────────────────────────────────
    # Store helpers
    # ──────────────────────────────────────────────

    def _write(self, facts, status, payload):
        """Upsert the event's fields, never moving status backward.

        A late event (e.g. checkout.session.completed after the customer
        was already fulfilled) still merges its identifiers, email and
        promo code, but keeps the current status and payload.
        """
        existing = self.store.find(
            checkout_session_id=facts.checkout_session_id,
            verification_session_id=facts.verification_session_id,
        )
        if existing is not None and not can_transition(existing.status, status):
            logger.info(
                f"{facts.event_type} {facts.event_id} would move {existing!r} "
                f"back to {status}; keeping {existing.status}"
            )
            status, payload = existing.status, existing.payload

        return self.store.upsert(
            checkout_session_id=facts.checkout_session_id,
            verification_session_id=facts.verification_session_id,
            customer_email=facts.email,
            product_id=facts.product_id,
            promo_code=facts.promo_code,
            status=status,
            payload=payload,
        )

    # ──────────────────────────────────────────────
    # Event Handlers
    # ──────────────────────────────────────────────

    def _handle_checkout_completed(self, facts):
        """checkout.session.completed: paid or payment_not_paid by payment_status."""
        status = STATUS_PAID if facts.payment_status == "paid" else STATUS_PAYMENT_NOT_PAID
        record = self._write(facts, status, facts.raw)
        logger.info(f"Checkout {facts.checkout_session_id} recorded as {record.status}")
        return record.status

    def _handle_async_payment_succeeded(self, facts):
        """Delayed payment methods (bank debits) settle after checkout completes."""
        record = self._write(facts, STATUS_PAID, facts.raw)
        return record.status

    def _handle_async_payment_failed(self, facts):
        record = self._write(facts, STATUS_PAYMENT_NOT_PAID, facts.raw)
        return record.status

    def _handle_requires_input(self, facts):
        record = self._write(facts, STATUS_NEEDS_INPUT, facts.raw)
        logger.info(f"Verification {facts.verification_session_id} needs input")
        return record.status

    def _handle_verified(self, facts):
        """identity.verification_session.verified: provision, store, then email.

        Email, product and promo code come from the merged record, so a
        checkout that arrived first can supply what the verification
        session lacks. Raises ProvisionError after recording
        fulfillment_failed.
        """
        existing = self.store.find(
            checkout_session_id=facts.checkout_session_id,
            verification_session_id=facts.verification_session_id,
        )
        if (
            existing is not None
            and existing.status == STATUS_FULFILLED
            and self.suppress_duplicate_welcome
        ):
            logger.info(
                f"Verification {facts.verification_session_id} already fulfilled, "
                f"skipping provisioning and welcome email"
            )
            return "already_fulfilled"

        record = self._write(facts, STATUS_VERIFIED, facts.raw)

        try:
            result = self.relay.provision(
                email=record.customer_email,
                verification_session_id=facts.verification_session_id,
                product_id=record.product_id,
                promo_code=record.promo_code,
                checkout_session_id=record.checkout_session_id,
            )
        except ProvisionError as e:
            # A fulfilled row keeps its status and stored credentials.
            self._write(facts, STATUS_FULFILLMENT_FAILED, {
                "error": str(e),
                "error_type": type(e).__name__,
                "status_code": e.status_code,
                "failed_at": _now_iso(),
            })
            raise

        # Persist before notifying so a mail outage cannot lose the credentials.
        record = self.store.upsert(
            checkout_session_id=facts.checkout_session_id,
            verification_session_id=facts.verification_session_id,
            status=STATUS_FULFILLED,
            payload={"fulfilled_at": _now_iso(), "relay": result.raw},
        )

        try:
            self.send_welcome(record.customer_email, result)
        except DeliveryFailed as e:
            logger.error(
                f"Welcome email failed for verification {facts.verification_session_id} "
                f"({record.customer_email}); record stays fulfilled: {e}"
            )
            return "fulfilled_unnotified"

        return STATUS_FULFILLED

    # ──────────────────────────────────────────────
    # Email Notifications
    # ──────────────────────────────────────────────

    def send_welcome(self, email, result):
        """Render the welcome email from a ProvisionResult and send it."""
        html = render_template(
            WELCOME_TEMPLATE,
            product_url=result.product_url,
            wg_conf=result.wg_conf,
            creds=result.creds,
        )
        self.notifier.send(email, self.welcome_subject, html)

    def resend_welcome(self, verification_session_id):
        """Re-send the welcome email for a fulfilled record from its stored relay response.

        Raises LookupError if there is no such record, ValueError if it is
        not fulfilled, DeliveryFailed if sending fails again.
        """
        record = self.store.find(verification_session_id=verification_session_id)
        if record is None:
            raise LookupError(f"No fulfillment for verification {verification_session_id}")
        if record.status != STATUS_FULFILLED:
            raise ValueError(
                f"Fulfillment for {verification_session_id} is {record.status}, not fulfilled"
            )

        relay = (record.payload or {}).get("relay") or {}
        result = ProvisionResult(
            product_url=relay.get("product_url"),
            wg_conf=relay.get("wg_conf"),
            creds=relay.get("creds"),
            raw=relay,
        )
        self.send_welcome(record.customer_email, result)
        logger.info(f"Welcome email re-sent for verification {verification_session_id}")
        return record
