"""Error taxonomy for webhook intake and fulfillment.

- SignatureInvalid / PayloadInvalid: sender errors, answered with 400.
  Stripe does not retry them.
- StoreUnavailable: database connectivity, lock or constraint races.
  Answered with 500 so Stripe redelivers.
- ProvisionError and subclasses: the provisioning relay failed. The record
  is marked fulfillment_failed and the request answers 500.
- DeliveryFailed: the welcome email could not be sent. Logged only; the
  fulfilled status stays.
"""


class FulfillmentError(Exception):
    """Base class for every error raised by this package."""


class SignatureInvalid(FulfillmentError):
    """Stripe-Signature header does not match the raw body, or is expired."""


class PayloadInvalid(FulfillmentError):
    """Signed body is not a usable Stripe event."""


class StoreUnavailable(FulfillmentError):
    """The fulfillment store could not complete a write or read."""


class ProvisionError(FulfillmentError):
    """The provisioning relay could not be reached or refused the request."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ProvisionTimeout(ProvisionError):
    """The provisioning relay did not answer within the configured timeout."""


class ProvisionRejected(ProvisionError):
    """The provisioning relay answered non-2xx, or the request was unusable."""


class DeliveryFailed(FulfillmentError):
    """The notification email could not be handed to the SMTP server."""
