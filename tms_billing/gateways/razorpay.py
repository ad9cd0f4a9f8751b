import logging
import re
from typing import Any

from tms_billing.config import Settings
from tms_billing.exceptions import ConfigurationError, MissingFieldsError, SignatureVerificationError
from tms_billing.gateways.base import CheckoutPayment, VerificationOutcome, gateway_request
from tms_billing.gateways.signatures import FORMAT_PRIMARY, verify_checkout_signature
from tms_billing.models import GATEWAY_RAZORPAY

logger = logging.getLogger(__name__)

RAZORPAY_PERIODS = {"daily", "weekly", "monthly", "yearly"}


def looks_like_razorpay_id(value: str | None, prefix: str) -> bool:
    return bool(re.fullmatch(rf"{prefix}_[A-Za-z0-9]+", (value or "").strip()))


class RazorpayClient:
    name = GATEWAY_RAZORPAY

    def __init__(self, settings: Settings):
        self.settings = settings

    def _credentials(self) -> tuple[str, str]:
        if not self.settings.razorpay_configured:
            raise ConfigurationError("Razorpay keys not configured")
        return self.settings.razorpay_key_id, self.settings.razorpay_key_secret

    def request(
        self,
        method: str,
        path: str,
        json_payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return gateway_request(
            GATEWAY_RAZORPAY,
            method,
            f"{self.settings.razorpay_api_base}/{path.lstrip('/')}",
            timeout=self.settings.gateway_timeout_seconds,
            auth=self._credentials(),
            json=json_payload,
            params=params,
        )

    def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str | None = None,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "amount": int(amount_minor),
            "currency": currency,
            "payment_capture": 1,
        }
        if receipt:
            payload["receipt"] = receipt[:40]
        if notes:
            payload["notes"] = notes
        return self.request("POST", "/orders", json_payload=payload)

    def create_plan(
        self,
        amount_minor: int,
        currency: str,
        period: str,
        interval_count: int,
        name: str,
    ) -> dict[str, Any]:
        payload = {
            "period": period,
            "interval": int(interval_count),
            "item": {"name": name, "amount": int(amount_minor), "currency": currency},
        }
        return self.request("POST", "/plans", json_payload=payload)

    def create_subscription(
        self,
        plan_id: str,
        *,
        user_id: str | None = None,
        total_count: int = 12,
        customer_notify: int = 1,
        notes: dict[str, str] | None = None,
        trial_period_seconds: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "plan_id": plan_id,
            "total_count": int(total_count),
            "customer_notify": int(customer_notify),
            "notes": {"user_id": user_id or "", **(notes or {})},
        }
        if trial_period_seconds:
            # Razorpay expresses a trial as a delayed first charge.
            payload["trial_period"] = int(trial_period_seconds)
        return self.request("POST", "/subscriptions", json_payload=payload)

    def fetch_order(self, order_id: str) -> dict[str, Any]:
        return self.request("GET", f"/orders/{order_id}")

    def fetch_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self.request("GET", f"/subscriptions/{subscription_id}")

    def cancel_subscription(self, subscription_id: str, at_cycle_end: bool = False) -> dict[str, Any]:
        return self.request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            json_payload={"cancel_at_cycle_end": 1 if at_cycle_end else 0},
        )

    def list_customer_subscriptions(self, customer_id: str, status: str = "active") -> list[dict[str, Any]]:
        data = self.request("GET", "/subscriptions", params={"customer_id": customer_id, "status": status})
        items = data.get("items")
        return items if isinstance(items, list) else []

    def list_customer_tokens(self, customer_id: str) -> list[dict[str, Any]]:
        data = self.request("GET", f"/customers/{customer_id}/tokens")
        items = data.get("items")
        return items if isinstance(items, list) else []

    def delete_customer_token(self, customer_id: str, token_id: str) -> dict[str, Any]:
        return self.request("DELETE", f"/customers/{customer_id}/tokens/{token_id}")


class RazorpayStrategy:
    name = GATEWAY_RAZORPAY

    def __init__(self, client: RazorpayClient):
        self.client = client

    def verify_authenticity(self, payment: CheckoutPayment) -> VerificationOutcome:
        missing = []
        if not payment.payment_id:
            missing.append("razorpay_payment_id")
        if not payment.signature:
            missing.append("razorpay_signature")
        if not payment.order_or_subscription_id:
            missing.append("razorpay_order_id|razorpay_subscription_id")
        if missing:
            raise MissingFieldsError(missing, "Missing payment verification data")

        secret = self.client.settings.razorpay_key_secret
        if not secret:
            raise ConfigurationError("Razorpay secret not configured")

        signature_format = verify_checkout_signature(
            secret,
            payment.order_or_subscription_id,
            payment.payment_id,
            payment.signature,
            allow_alternate_formats=payment.is_subscription,
        )
        if signature_format is None:
            logger.warning(
                "Razorpay signature mismatch payment_id=%s order_id=%s subscription_id=%s",
                payment.payment_id,
                payment.order_id,
                payment.subscription_id,
            )
            raise SignatureVerificationError("Invalid payment signature")

        if signature_format != FORMAT_PRIMARY:
            logger.warning(
                "RAZORPAY SIGNATURE FORMAT DRIFT: subscription payment validated with non-primary "
                "format=%s payment_id=%s subscription_id=%s; confirm the gateway signing contract",
                signature_format,
                payment.payment_id,
                payment.subscription_id,
            )

        return VerificationOutcome(
            gateway=GATEWAY_RAZORPAY,
            payment_id=payment.payment_id,
            order_id=payment.order_id,
            subscription_id=payment.subscription_id,
            signature=payment.signature,
            signature_format=signature_format,
            gateway_status="captured",
        )

    def fetch_status(self, subscription_reference: str) -> dict[str, Any]:
        return self.client.fetch_subscription(subscription_reference)

    def cancel_subscription(self, subscription_reference: str, at_cycle_end: bool = False) -> dict[str, Any]:
        return self.client.cancel_subscription(subscription_reference, at_cycle_end=at_cycle_end)
