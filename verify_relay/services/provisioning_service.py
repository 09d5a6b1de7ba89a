"""Provisioning service — relays verified customers to the provisioning endpoint.

One POST per call, bounded by a timeout. No retries here: a failure is
surfaced to the dispatcher, which records fulfillment_failed and answers
500 so Stripe redelivers the event.
"""

import logging
from dataclasses import dataclass, field

import requests

from verify_relay.errors import ProvisionError, ProvisionRejected, ProvisionTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionResult:
    """What the relay sent back. Every field is optional."""

    product_url: str = None
    wg_conf: str = None
    creds: object = None
    raw: dict = field(default_factory=dict)


class ProvisioningRelay:
    """HTTP client for the external provisioning endpoint."""

    def __init__(self, url, token=None, timeout=20):
        self.url = url
        self.token = token
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            url=config.get("PROVISION_URL"),
            token=config.get("PROVISION_TOKEN"),
            timeout=config.get("PROVISION_TIMEOUT", 20),
        )

    def provision(self, email, verification_session_id, product_id,
                  promo_code=None, checkout_session_id=None):
        """Create/enable the customer's profile and return a ProvisionResult.

        Raises ProvisionRejected when there is no email, no endpoint, or the
        endpoint answers non-2xx; ProvisionTimeout when it does not answer
        in time; ProvisionError for any other transport failure.
        """
        if not email:
            raise ProvisionRejected(
                f"No customer email for verification {verification_session_id}"
            )
        if not self.url:
            raise ProvisionRejected("PROVISION_URL is not configured")

        body = {
            "email": email,
            "verification_session_id": verification_session_id,
            "product_id": product_id,
            "promo_code": promo_code,
            "checkout_session_id": checkout_session_id,
        }
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = requests.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise ProvisionTimeout(
                f"Provisioning timed out after {self.timeout}s"
            ) from e
        except requests.exceptions.RequestException as e:
            raise ProvisionError(f"Provisioning request failed: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise ProvisionRejected(
                f"Provisioning rejected with HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError:
            logger.warning(
                f"Provisioning returned non-JSON body for {verification_session_id}"
            )
            data = {}
        if not isinstance(data, dict):
            data = {}

        logger.info(f"Provisioned {email} for verification {verification_session_id}")
        return ProvisionResult(
            product_url=data.get("product_url"),
            wg_conf=data.get("wg_conf"),
            creds=data.get("creds"),
            raw=data,
        )
