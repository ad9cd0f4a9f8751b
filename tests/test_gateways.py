import json

import pytest
import requests

from tms_billing.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    MissingFieldsError,
    PaymentNotCompletedError,
    SignatureVerificationError,
)
from tms_billing.gateways import base
from tms_billing.gateways.base import CheckoutPayment, gateway_request, to_major_units, to_minor_units
from tms_billing.gateways.paypal import PayPalClient, PayPalStrategy
from tms_billing.gateways.razorpay import RazorpayStrategy, looks_like_razorpay_id
from tms_billing.gateways.signatures import compute_signature

from conftest import RAZORPAY_SECRET


class StubResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload


def test_timeout_becomes_gateway_timeout(monkeypatch):
    def fake_request(**kwargs):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(base.requests, "request", fake_request)

    with pytest.raises(GatewayTimeoutError) as excinfo:
        gateway_request("razorpay", "GET", "https://example.test/orders", timeout=1)

    assert excinfo.value.status_code == 504
    assert excinfo.value.retryable is True


def test_error_status_keeps_gateway_body(monkeypatch):
    body = {"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too small"}}
    monkeypatch.setattr(base.requests, "request", lambda **kwargs: StubResponse(400, body))

    with pytest.raises(GatewayError) as excinfo:
        gateway_request("razorpay", "POST", "https://example.test/orders", timeout=1)

    assert excinfo.value.http_status == 400
    assert excinfo.value.body == body
    assert excinfo.value.status_code == 502


def test_empty_success_body_is_empty_dict(monkeypatch):
    monkeypatch.setattr(base.requests, "request", lambda **kwargs: StubResponse(204))

    assert gateway_request("paypal", "POST", "https://example.test/cancel", timeout=1) == {}


def test_non_json_success_body_rejected(monkeypatch):
    monkeypatch.setattr(base.requests, "request", lambda **kwargs: StubResponse(200, text="<html>"))

    with pytest.raises(GatewayError):
        gateway_request("paypal", "GET", "https://example.test/orders/1", timeout=1)


def test_paypal_token_reused_across_requests(monkeypatch, settings):
    urls = []

    def fake_request(method, url, **kwargs):
        urls.append(url)
        if url.endswith("/v1/oauth2/token"):
            return StubResponse(200, {"access_token": "A21", "expires_in": 32400})
        assert kwargs["headers"]["Authorization"] == "Bearer A21"
        return StubResponse(200, {"id": "ORDER-1", "status": "CREATED"})

    monkeypatch.setattr(base.requests, "request", fake_request)
    client = PayPalClient(settings)

    client.fetch_order("ORDER-1")
    client.fetch_order("ORDER-1")

    assert sum(url.endswith("/v1/oauth2/token") for url in urls) == 1
    assert len(urls) == 3
    assert urls[0].startswith("https://api-m.sandbox.paypal.com")


def test_razorpay_strategy_requires_ids(razorpay_client):
    strategy = RazorpayStrategy(razorpay_client)

    with pytest.raises(MissingFieldsError) as excinfo:
        strategy.verify_authenticity(CheckoutPayment(gateway="razorpay", order_id="order_1"))

    assert excinfo.value.detail == "Missing payment verification data"
    assert "razorpay_payment_id" in excinfo.value.missing


def test_razorpay_strategy_rejects_swapped_order_signature(razorpay_client):
    strategy = RazorpayStrategy(razorpay_client)
    payment = CheckoutPayment(
        gateway="razorpay",
        order_id="order_1",
        payment_id="pay_1",
        signature=compute_signature(RAZORPAY_SECRET, "pay_1|order_1"),
    )

    with pytest.raises(SignatureVerificationError):
        strategy.verify_authenticity(payment)


def test_razorpay_strategy_reports_format(razorpay_client):
    outcome = RazorpayStrategy(razorpay_client).verify_authenticity(
        CheckoutPayment(
            gateway="razorpay",
            subscription_id="sub_1",
            payment_id="pay_1",
            signature=compute_signature(RAZORPAY_SECRET, "pay_1"),
        )
    )

    assert outcome.signature_format == "payment_only"
    assert outcome.reference_id == "sub_1"


def test_paypal_subscription_must_be_active(paypal_client):
    paypal_client.responses[("GET", "/v1/billing/subscriptions/I-9")] = {"id": "I-9", "status": "SUSPENDED"}

    with pytest.raises(PaymentNotCompletedError):
        PayPalStrategy(paypal_client).verify_authenticity(CheckoutPayment(gateway="paypal", subscription_id="I-9"))


def test_paypal_completed_order_not_captured_again(paypal_client):
    paypal_client.responses[("GET", "/v2/checkout/orders/ORDER-5")] = {
        "id": "ORDER-5",
        "status": "COMPLETED",
        "purchase_units": [{"payments": {"captures": [{"id": "CAPTURE-5"}]}}],
    }

    outcome = PayPalStrategy(paypal_client).verify_authenticity(CheckoutPayment(gateway="paypal", order_id="ORDER-5"))

    assert outcome.payment_id == "CAPTURE-5"
    assert paypal_client.calls_to("POST", "/v2/checkout/orders/ORDER-5/capture") == []


def test_paypal_order_id_required(paypal_client):
    with pytest.raises(MissingFieldsError):
        PayPalStrategy(paypal_client).verify_authenticity(CheckoutPayment(gateway="paypal"))


def test_amount_unit_conversion():
    assert to_minor_units(299) == 29900
    assert to_minor_units(352.82) == 35282
    assert to_major_units(999) == "9.99"


@pytest.mark.parametrize(
    "value, prefix, expected",
    [("pay_Abc123", "pay", True), ("sub_R1", "sub", True), ("pay_", "pay", False), ("order_1", "pay", False), (None, "pay", False)],
)
def test_razorpay_id_shape(value, prefix, expected):
    assert looks_like_razorpay_id(value, prefix) is expected
