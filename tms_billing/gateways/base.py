import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from tms_billing.exceptions import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class CheckoutPayment:
    """Identifiers the checkout UI hands back after a gateway payment completes."""

    gateway: str
    payment_id: str | None = None
    order_id: str | None = None
    subscription_id: str | None = None
    signature: str | None = None
    payer_id: str | None = None

    @property
    def order_or_subscription_id(self) -> str | None:
        return self.order_id or self.subscription_id

    @property
    def is_subscription(self) -> bool:
        return bool(self.subscription_id)


@dataclass
class VerificationOutcome:
    gateway: str
    payment_id: str
    order_id: str | None = None
    subscription_id: str | None = None
    signature: str | None = None
    signature_format: str | None = None
    gateway_status: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def reference_id(self) -> str:
        return self.subscription_id or self.order_id or self.payment_id


class GatewayStrategy(Protocol):
    name: str
    # Underlying REST client, used for plan and subscription provisioning.
    client: Any

    def verify_authenticity(self, payment: CheckoutPayment) -> VerificationOutcome:
        ...

    def fetch_status(self, subscription_reference: str) -> dict[str, Any]:
        ...

    def cancel_subscription(self, subscription_reference: str, at_cycle_end: bool = False) -> dict[str, Any]:
        ...


def gateway_request(
    gateway: str,
    method: str,
    url: str,
    timeout: int,
    **kwargs: Any,
) -> dict[str, Any]:
    """Issue one HTTP call and normalize transport and status failures into gateway errors."""
    try:
        response = requests.request(method=method.upper(), url=url, timeout=timeout, **kwargs)
    except requests.Timeout as exc:
        logger.warning("Gateway timeout gateway=%s method=%s url=%s", gateway, method, url)
        raise GatewayTimeoutError(gateway, f"Timed out contacting {gateway}: {exc}") from exc
    except requests.RequestException as exc:
        raise GatewayError(gateway, f"Failed to contact {gateway}: {exc}") from exc

    if response.status_code >= 400:
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        logger.warning(
            "Gateway error gateway=%s method=%s url=%s status=%s body=%s",
            gateway,
            method,
            url,
            response.status_code,
            body,
        )
        raise GatewayError(
            gateway,
            f"{gateway} request failed with status {response.status_code}",
            http_status=response.status_code,
            body=body,
        )

    if response.status_code == 204 or not response.content:
        return {}

    try:
        payload = response.json()
    except ValueError as exc:
        raise GatewayError(gateway, f"Invalid response received from {gateway}.", response.status_code, response.text) from exc

    if not isinstance(payload, dict):
        raise GatewayError(gateway, f"Unexpected response format from {gateway}.", response.status_code, payload)
    return payload


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


def to_major_units(amount_minor: int) -> str:
    return f"{int(amount_minor) / 100:.2f}"
