"""Webhooks blueprint — /stripe/webhook (also mounted at /webhook)

Receives Stripe checkout and identity webhook events.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from verify_relay.errors import PayloadInvalid, SignatureInvalid
from verify_relay.services.stripe_service import verify_webhook_signature

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/stripe/webhook", methods=["POST"])
@webhooks_bp.route("/webhook", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Pass to the fulfillment dispatcher (idempotent via session-ID upserts)
    4. Return 200 to acknowledge, 400 for bad signatures, 500 to ask for a retry
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

    if not secret:
        logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        return jsonify({"error": "Webhook secret not configured"}), 503

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(
            payload,
            sig_header,
            secret,
            tolerance=current_app.config.get("STRIPE_SIGNATURE_TOLERANCE", 300),
        )
    except SignatureInvalid as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400
    except PayloadInvalid as e:
        logger.warning(f"Webhook payload rejected: {e}")
        return jsonify({"error": "Invalid payload"}), 400

    # --- Process event ---
    dispatcher = current_app.extensions["fulfillment_dispatcher"]
    success, message = dispatcher.dispatch(event)

    if success:
        return jsonify({"received": True, "status": message}), 200
    else:
        logger.error(f"Webhook processing failed for {event.get('id')}: {message}")
        return jsonify({"error": message}), 500
