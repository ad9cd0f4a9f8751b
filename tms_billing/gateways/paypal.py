import logging
import time
from typing import Any, Mapping

from tms_billing.config import Settings
from tms_billing.exceptions import (
    ConfigurationError,
    GatewayError,
    MissingFieldsError,
    PaymentNotCompletedError,
)
from tms_billing.gateways.base import CheckoutPayment, VerificationOutcome, gateway_request, to_major_units
from tms_billing.models import GATEWAY_PAYPAL

logger = logging.getLogger(__name__)

INTERVAL_UNITS = {"daily": "DAY", "weekly": "WEEK", "monthly": "MONTH", "yearly": "YEAR"}
SUBSCRIPTION_ACCEPTED_STATUSES = {"ACTIVE", "APPROVAL_PENDING"}
WEBHOOK_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalClient:
    name = GATEWAY_PAYPAL

    def __init__(self, settings: Settings):
        self.settings = settings
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def base_url(self) -> str:
        return self.settings.paypal_base_url

    def _get_access_token(self) -> str:
        if self._access_token and time.time() < self._token_expires_at:
            return self._access_token
        if not self.settings.paypal_configured:
            raise ConfigurationError("PayPal credentials not configured")

        data = gateway_request(
            GATEWAY_PAYPAL,
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            timeout=self.settings.gateway_timeout_seconds,
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        token = str(data.get("access_token") or "").strip()
        if not token:
            raise GatewayError(GATEWAY_PAYPAL, "Failed to get PayPal access token", body=data)
        expires_in = int(data.get("expires_in") or 300)
        self._access_token = token
        self._token_expires_at = time.time() + max(expires_in - 60, 30)
        return token

    def request(
        self,
        method: str,
        path: str,
        json_payload: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._get_access_token()}",
        }
        if request_id:
            # PayPal replays the stored response for a repeated request id.
            headers["PayPal-Request-Id"] = request_id
        return gateway_request(
            GATEWAY_PAYPAL,
            method,
            f"{self.base_url}/{path.lstrip('/')}",
            timeout=self.settings.gateway_timeout_seconds,
            json=json_payload,
            headers=headers,
        )

    def create_order(
        self,
        amount: float,
        currency: str,
        custom_id: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        purchase_unit: dict[str, Any] = {
            "amount": {"currency_code": currency, "value": f"{float(amount):.2f}"},
        }
        if custom_id:
            purchase_unit["custom_id"] = custom_id
        if description:
            purchase_unit["description"] = description[:127]
        return self.request(
            "POST",
            "/v2/checkout/orders",
            json_payload={"intent": "CAPTURE", "purchase_units": [purchase_unit]},
        )

    def fetch_order(self, order_id: str) -> dict[str, Any]:
        return self.request("GET", f"/v2/checkout/orders/{order_id}")

    def capture_order(self, order_id: str) -> dict[str, Any]:
        return self.request("POST", f"/v2/checkout/orders/{order_id}/capture", request_id=f"capture-{order_id}")

    def create_product(self, name: str) -> dict[str, Any]:
        return self.request(
            "POST",
            "/v1/catalogs/products",
            json_payload={
                "name": name,
                "description": f"Subscription for {name}",
                "type": "SERVICE",
                "category": "SOFTWARE",
            },
        )

    def create_plan(
        self,
        amount_minor: int,
        currency: str,
        period: str,
        interval_count: int,
        name: str,
    ) -> dict[str, Any]:
        interval_unit = INTERVAL_UNITS.get(period)
        if not interval_unit:
            raise GatewayError(GATEWAY_PAYPAL, f"Unsupported billing period: {period}")

        product = self.create_product(name)
        product_id = str(product.get("id") or "").strip()
        if not product_id:
            raise GatewayError(GATEWAY_PAYPAL, "Failed to create PayPal product", body=product)

        return self.request(
            "POST",
            "/v1/billing/plans",
            json_payload={
                "product_id": product_id,
                "name": f"{name} ({period})",
                "description": f"Recurring {period} subscription for {name}",
                "status": "ACTIVE",
                "billing_cycles": [
                    {
                        "frequency": {"interval_unit": interval_unit, "interval_count": int(interval_count)},
                        "tenure_type": "REGULAR",
                        "sequence": 1,
                        "total_cycles": 0,
                        "pricing_scheme": {
                            "fixed_price": {"value": to_major_units(amount_minor), "currency_code": currency},
                        },
                    }
                ],
                "payment_preferences": {
                    "auto_bill_outstanding": True,
                    "setup_fee_failure_action": "CANCEL",
                    "payment_failure_threshold": 3,
                },
            },
        )

    def create_subscription(
        self,
        plan_id: str,
        *,
        user_id: str | None = None,
        total_count: int = 0,
        customer_notify: int = 1,
        notes: dict[str, str] | None = None,
        trial_period_seconds: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "plan_id": plan_id,
            "application_context": {
                "brand_name": "TrackMyStartup",
                "user_action": "SUBSCRIBE_NOW",
                "return_url": f"{self.settings.frontend_url}/billing/paypal/return",
                "cancel_url": f"{self.settings.frontend_url}/billing/paypal/cancel",
            },
        }
        if user_id:
            payload["custom_id"] = user_id
        return self.request("POST", "/v1/billing/subscriptions", json_payload=payload)

    def fetch_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self.request("GET", f"/v1/billing/subscriptions/{subscription_id}")

    def cancel_subscription(self, subscription_id: str, at_cycle_end: bool = False) -> dict[str, Any]:
        # PayPal has no end-of-cycle cancel; access to the paid period is kept locally instead.
        return self.request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json_payload={"reason": "Cancelled by customer"},
        )

    def verify_webhook_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool:
        webhook_id = self.settings.paypal_webhook_id
        if not webhook_id:
            raise ConfigurationError("PayPal webhook id not configured")

        lowered = {key.lower(): value for key, value in headers.items()}
        payload: dict[str, Any] = {"webhook_id": webhook_id, "webhook_event": event}
        for field_name, header_name in WEBHOOK_SIGNATURE_HEADERS.items():
            value = lowered.get(header_name)
            if not value:
                return False
            payload[field_name] = value

        data = self.request("POST", "/v1/notifications/verify-webhook-signature", json_payload=payload)
        return str(data.get("verification_status") or "").upper() == "SUCCESS"


def _first_capture(order_data: dict[str, Any]) -> dict[str, Any]:
    for unit in order_data.get("purchase_units") or []:
        captures = ((unit or {}).get("payments") or {}).get("captures") or []
        if captures:
            return captures[0] or {}
    return {}


class PayPalStrategy:
    name = GATEWAY_PAYPAL

    def __init__(self, client: PayPalClient):
        self.client = client

    def verify_authenticity(self, payment: CheckoutPayment) -> VerificationOutcome:
        if payment.subscription_id:
            return self._verify_subscription(payment.subscription_id)
        if not payment.order_id:
            raise MissingFieldsError(["paypal_order_id"], "Missing PayPal order ID")
        return self._verify_order(payment.order_id)

    def _verify_subscription(self, subscription_id: str) -> VerificationOutcome:
        data = self.client.fetch_subscription(subscription_id)
        status = str(data.get("status") or "").upper()
        if status not in SUBSCRIPTION_ACCEPTED_STATUSES:
            raise PaymentNotCompletedError(f"Subscription not active (status={status or 'unknown'})")
        return VerificationOutcome(
            gateway=GATEWAY_PAYPAL,
            payment_id=subscription_id,
            order_id=subscription_id,
            subscription_id=subscription_id,
            gateway_status=status,
            raw=data,
        )

    def _verify_order(self, order_id: str) -> VerificationOutcome:
        order_data = self.client.fetch_order(order_id)
        status = str(order_data.get("status") or "").upper()

        if status == "APPROVED":
            # Status was read just now; capture is only attempted for an approved, uncaptured order.
            order_data = self.client.capture_order(order_id)
            status = str(order_data.get("status") or "").upper()

        if status != "COMPLETED":
            logger.warning("PayPal order not completed order_id=%s status=%s", order_id, status)
            raise PaymentNotCompletedError(f"PayPal order is not completed (status={status or 'unknown'})")

        capture = _first_capture(order_data)
        capture_id = str(capture.get("id") or "").strip() or order_id
        return VerificationOutcome(
            gateway=GATEWAY_PAYPAL,
            payment_id=capture_id,
            order_id=order_id,
            gateway_status=status,
            raw=order_data,
        )

    def fetch_status(self, subscription_reference: str) -> dict[str, Any]:
        return self.client.fetch_subscription(subscription_reference)

    def cancel_subscription(self, subscription_reference: str, at_cycle_end: bool = False) -> dict[str, Any]:
        return self.client.cancel_subscription(subscription_reference, at_cycle_end=at_cycle_end)
