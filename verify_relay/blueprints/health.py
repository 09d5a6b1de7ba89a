"""Health blueprint — /health

Read-only aggregate counters from the fulfillment store.
"""

import logging

from flask import Blueprint, current_app, jsonify

from verify_relay.errors import StoreUnavailable
from verify_relay.extensions import limiter

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)


@health_bp.route("/health", methods=["GET"])
@limiter.limit("60 per minute")
def health():
    store = current_app.extensions["fulfillment_store"]
    try:
        snapshot = store.health_snapshot()
    except StoreUnavailable as e:
        logger.error(f"Health snapshot failed: {e}")
        return jsonify({"ok": False, "error": "store_unavailable"}), 503

    return jsonify({"ok": True, **snapshot}), 200
