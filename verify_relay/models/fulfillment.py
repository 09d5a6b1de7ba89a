"""Fulfillment model.

One row per purchase/verification lifecycle. A row is keyed by either the
Stripe Checkout Session ID or the Stripe Identity VerificationSession ID
(both unique, both nullable); whichever event arrives first creates it and
later events for the same identifier merge into it.

Lifecycle:
    paid / payment_not_paid -> verified -> fulfilled
    sideways: needs_input, fulfillment_failed
"""

import uuid

from verify_relay.extensions import db

STATUS_PAID = "paid"
STATUS_PAYMENT_NOT_PAID = "payment_not_paid"
STATUS_VERIFIED = "verified"
STATUS_NEEDS_INPUT = "needs_input"
STATUS_FULFILLMENT_FAILED = "fulfillment_failed"
STATUS_FULFILLED = "fulfilled"

# Rank along the lifecycle. Equal ranks are sideways moves.
_STATUS_RANK = {
    STATUS_PAID: 1,
    STATUS_PAYMENT_NOT_PAID: 1,
    STATUS_VERIFIED: 2,
    STATUS_NEEDS_INPUT: 2,
    STATUS_FULFILLMENT_FAILED: 2,
    STATUS_FULFILLED: 3,
}


def can_transition(current, new):
    """Return True if a record in ``current`` status may move to ``new``.

    ``fulfilled`` is terminal; everything else may move sideways or forward.
    A record with no status yet accepts anything.
    """
    if current is None:
        return True
    if current == STATUS_FULFILLED:
        return new == STATUS_FULFILLED
    return _STATUS_RANK[new] >= _STATUS_RANK[current]


class Fulfillment(db.Model):
    __tablename__ = "fulfillments"

    STATUSES = list(_STATUS_RANK)

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    checkout_session_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "cs_test_a1B2..."
    verification_session_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "vs_1Abc..."
    customer_email = db.Column(db.String(255), nullable=True)
    product_id = db.Column(db.String(255), nullable=False)
    promo_code = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.String(50), nullable=False, index=True
    )  # paid | payment_not_paid | verified | needs_input | fulfillment_failed | fulfilled
    payload = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        index=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "checkout_session_id": self.checkout_session_id,
            "verification_session_id": self.verification_session_id,
            "customer_email": self.customer_email,
            "product_id": self.product_id,
            "promo_code": self.promo_code,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        key = self.checkout_session_id or self.verification_session_id
        return f"<Fulfillment {key} ({self.status})>"
