# Models package: import all models here so Alembic can discover them.

from verify_relay.models.fulfillment import Fulfillment  # noqa: F401
