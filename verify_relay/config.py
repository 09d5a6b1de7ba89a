import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Database ---
    # Some PaaS providers (Railway, Heroku) hand out "postgres://" URLs,
    # which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or "sqlite:///fulfillment.db"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
    }

    # --- Stripe ---
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_SIGNATURE_TOLERANCE = int(os.environ.get("STRIPE_SIGNATURE_TOLERANCE", 300))

    # --- Provisioning relay ---
    PROVISION_URL = os.environ.get("PROVISION_URL")
    PROVISION_TOKEN = os.environ.get("PROVISION_TOKEN")      # bearer, optional
    PROVISION_TIMEOUT = float(os.environ.get("PROVISION_TIMEOUT", 20))

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 465))
    # Implicit TLS on 465, STARTTLS everywhere else unless told otherwise.
    MAIL_USE_SSL = _env_flag(
        "MAIL_USE_SSL", "true" if MAIL_SMTP_PORT == 465 else "false"
    )
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Verification Desk")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_TIMEOUT = float(os.environ.get("MAIL_TIMEOUT", 30))

    # --- Fulfillment ---
    DEFAULT_PRODUCT_ID = os.environ.get("DEFAULT_PRODUCT_ID", "builder-pass")
    WELCOME_SUBJECT = os.environ.get("WELCOME_SUBJECT", "Verification Complete")
    # Redelivered "verified" events for an already fulfilled record do not
    # provision or email a second time.
    SUPPRESS_DUPLICATE_WELCOME = _env_flag("SUPPRESS_DUPLICATE_WELCOME", "true")

    PORT = int(os.environ.get("PORT", 5001))

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "STRIPE_WEBHOOK_SECRET",
            "PROVISION_URL",
            "MAIL_SMTP_HOST",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if not (os.environ.get("MAIL_FROM_ADDRESS") or os.environ.get("MAIL_USERNAME")):
            missing.append("MAIL_FROM_ADDRESS")
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, fake secrets, no rate limiting."""

    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_SIGNATURE_TOLERANCE = 300
    PROVISION_URL = "https://provision.test/api/profiles/create"
    PROVISION_TOKEN = "provision-token-test"
    PROVISION_TIMEOUT = 20
    MAIL_SMTP_HOST = "smtp.test"
    MAIL_SMTP_PORT = 465
    MAIL_USE_SSL = True
    MAIL_USERNAME = "verify@example.test"
    MAIL_PASSWORD = "mail-password-test"
    MAIL_FROM_NAME = "Verification Desk"
    MAIL_FROM_ADDRESS = "verify@example.test"
    MAIL_TIMEOUT = 30
    DEFAULT_PRODUCT_ID = "builder-pass"
    WELCOME_SUBJECT = "Verification Complete"
    SUPPRESS_DUPLICATE_WELCOME = True
    RATELIMIT_ENABLED = False  # disable rate limiting in tests

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
