import os
import logging

import click
from flask import Flask, jsonify

from verify_relay.config import config_by_name
from verify_relay.extensions import db, migrate, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from verify_relay import models  # noqa: F401

    # --- Fulfillment collaborators (constructed once, shared per app) ---
    init_fulfillment(app)

    # --- Register blueprints ---
    from verify_relay.blueprints.webhooks import webhooks_bp
    from verify_relay.blueprints.health import health_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(health_bp)

    # --- Error handlers ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        # Receipts and counters are never cacheable
        response.headers["Cache-Control"] = "no-store"
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def init_fulfillment(app):
    """Build the store, relay, notifier and dispatcher from app config.

    Stored on app.extensions so tests can swap any of them per app.
    """
    from verify_relay.services.email_service import SmtpNotifier
    from verify_relay.services.fulfillment_service import FulfillmentDispatcher
    from verify_relay.services.fulfillment_store import FulfillmentStore
    from verify_relay.services.provisioning_service import ProvisioningRelay

    store = FulfillmentStore(
        db.session, default_product_id=app.config["DEFAULT_PRODUCT_ID"]
    )
    dispatcher = FulfillmentDispatcher(
        store=store,
        relay=ProvisioningRelay.from_config(app.config),
        notifier=SmtpNotifier.from_config(app.config),
        welcome_subject=app.config["WELCOME_SUBJECT"],
        suppress_duplicate_welcome=app.config["SUPPRESS_DUPLICATE_WELCOME"],
    )
    app.extensions["fulfillment_store"] = store
    app.extensions["fulfillment_dispatcher"] = dispatcher
    return dispatcher


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("init-db")
    def init_db():
        """Create the fulfillments table directly (dev shortcut for `flask db upgrade`)."""
        db.create_all()
        click.echo(f"Tables created on {app.config['SQLALCHEMY_DATABASE_URI']}")

    @app.cli.command("fulfillment-stats")
    def fulfillment_stats():
        """Print the same counters the /health endpoint returns."""
        snapshot = app.extensions["fulfillment_store"].health_snapshot()

        click.echo("")
        click.echo("=" * 40)
        click.echo(f"  Verified:   {snapshot['verified']}")
        click.echo(f"  Fulfilled:  {snapshot['fulfilled']}")
        click.echo(f"  Last 24h:   {snapshot['last_24h']}")
        click.echo(f"  Total:      {snapshot['total']}")
        for status, count in sorted(snapshot["by_status"].items()):
            click.echo(f"    {status}: {count}")
        click.echo("=" * 40)

    @app.cli.command("resend-welcome")
    @click.option("--verification-session-id", required=True,
                  help="Stripe Identity VerificationSession ID (vs_...)")
    def resend_welcome(verification_session_id):
        """Re-send the welcome email for a fulfilled customer.

        Use after a "fulfilled_unnotified" receipt: the credentials are
        read back from the stored relay response, nothing is re-provisioned.

        Usage:
            flask resend-welcome --verification-session-id vs_123
        """
        from verify_relay.errors import DeliveryFailed

        dispatcher = app.extensions["fulfillment_dispatcher"]
        try:
            record = dispatcher.resend_welcome(verification_session_id)
        except (LookupError, ValueError, DeliveryFailed) as e:
            raise click.ClickException(str(e))

        click.echo(f"Welcome email sent to {record.customer_email}")
