from tms_billing import verification
from tms_billing.gateways.signatures import compute_signature
from tms_billing.models import (
    BillingCycle,
    MentorPayment,
    MentorStartupAssignment,
    PaymentTransaction,
    UserSubscription,
)

from conftest import RAZORPAY_SECRET


def _razorpay_payload(order_id="order_V1", payment_id="pay_V1", **extra):
    payload = {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": compute_signature(RAZORPAY_SECRET, f"{order_id}|{payment_id}"),
    }
    payload.update(extra)
    return payload


def test_verified_payment_activates_subscription(client, db, plans, profile):
    response = client.post(
        "/api/razorpay/verify",
        json=_razorpay_payload(user_id="U1", plan_id=1, amount=299, currency="INR", interval="monthly"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["payment_id"] == "pay_V1"

    active = db.query(UserSubscription).filter(UserSubscription.user_id == "U1", UserSubscription.status == "active").all()
    assert len(active) == 1
    assert active[0].plan_tier == "basic"
    assert active[0].amount == 299
    assert active[0].billing_cycle_count == 1

    transactions = db.query(PaymentTransaction).all()
    assert len(transactions) == 1
    assert transactions[0].status == "success"
    assert transactions[0].gateway_payment_id == "pay_V1"

    cycles = db.query(BillingCycle).all()
    assert [cycle.cycle_number for cycle in cycles] == [1]


def test_repeated_verification_is_idempotent(client, db, plans, profile):
    payload = _razorpay_payload(user_id="U1", plan_id=1, amount=299, currency="INR")

    first = client.post("/api/razorpay/verify", json=payload)
    second = client.post("/api/razorpay/verify", json=payload)

    assert first.status_code == second.status_code == 200
    assert second.json()["message"] == "Payment already verified"
    assert db.query(UserSubscription).count() == 1
    assert db.query(PaymentTransaction).count() == 1
    assert db.query(BillingCycle).count() == 1


def test_new_payment_supersedes_active_subscription(client, db, plans, profile, make_subscription):
    previous = make_subscription(plan_tier="basic", storage_used_mb=42.5)

    response = client.post(
        "/api/razorpay/verify",
        json=_razorpay_payload(user_id="U1", plan_id=2, amount=599, currency="INR"),
    )

    assert response.status_code == 200
    active = db.query(UserSubscription).filter(UserSubscription.status == "active").all()
    assert len(active) == 1
    assert active[0].plan_tier == "premium"
    assert active[0].previous_subscription_id == previous.id
    assert active[0].storage_used_mb == 42.5
    db.refresh(previous)
    assert previous.status == "inactive"


def test_invalid_signature_rejected(client, db, plans, profile):
    payload = _razorpay_payload(user_id="U1", plan_id=1)
    payload["razorpay_signature"] = "0" * 64

    response = client.post("/api/razorpay/verify", json=payload)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Invalid payment signature"}
    assert db.query(UserSubscription).count() == 0


def test_missing_fields_rejected(client):
    response = client.post("/api/razorpay/verify", json={"razorpay_order_id": "order_1"})

    assert response.status_code == 400
    assert response.json()["error"] == "Missing payment verification data"


def test_mentor_payment_completed_without_subscription(client, db, plans, profile):
    assignment = MentorStartupAssignment(status="pending_payment", mentor_id="M1", startup_id="U1")
    db.add(assignment)
    db.flush()
    db.add(MentorPayment(assignment_id=assignment.id, amount=1500, currency="INR", razorpay_order_id="order_M1"))
    db.commit()

    response = client.post(
        "/api/razorpay/verify",
        json=_razorpay_payload(order_id="order_M1", payment_id="pay_M1", user_id="U1", plan_id=1),
    )

    assert response.status_code == 200
    assert response.json()["message"] == "Mentor payment verified and completed"
    mentor_payment = db.query(MentorPayment).one()
    assert mentor_payment.payment_status == "completed"
    assert mentor_payment.razorpay_payment_id == "pay_M1"
    assert mentor_payment.assignment.status == "ready_for_activation"
    assert db.query(PaymentTransaction).count() == 0
    assert db.query(UserSubscription).count() == 0


def test_assignment_waiting_on_agreement_stays_pending(client, db):
    assignment = MentorStartupAssignment(status="pending_payment_and_agreement", agreement_status="pending")
    db.add(assignment)
    db.flush()
    db.add(MentorPayment(assignment_id=assignment.id, razorpay_order_id="order_M2"))
    db.commit()

    response = client.post("/api/razorpay/verify", json=_razorpay_payload(order_id="order_M2", payment_id="pay_M2"))

    assert response.status_code == 200
    assert db.query(MentorStartupAssignment).one().status == "pending_payment_and_agreement"


def test_verification_without_plan_only_authenticates(client, db):
    response = client.post("/api/razorpay/verify", json=_razorpay_payload())

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Payment verified", "payment_id": "pay_V1"}
    assert db.query(PaymentTransaction).count() == 0


def test_subscription_payment_accepts_swapped_signature(client, db, plans, profile):
    payload = {
        "razorpay_subscription_id": "sub_S1",
        "razorpay_payment_id": "pay_S1",
        "razorpay_signature": compute_signature(RAZORPAY_SECRET, "pay_S1|sub_S1"),
        "user_id": "U1",
        "plan_id": 1,
    }

    response = client.post("/api/razorpay/verify", json=payload)

    assert response.status_code == 200
    subscription = db.query(UserSubscription).one()
    assert subscription.razorpay_subscription_id == "sub_S1"
    assert subscription.autopay_enabled is True
    transaction = db.query(PaymentTransaction).one()
    assert transaction.payment_metadata["signature_format"] == "swapped"


def test_tax_inclusive_total_is_recorded(client, db, plans, profile):
    response = client.post(
        "/api/razorpay/verify",
        json=_razorpay_payload(user_id="U1", plan_id=1, amount=299, tax_percentage=18, tax_amount=53.82, total_amount_with_tax=352.82),
    )

    assert response.status_code == 200
    assert db.query(PaymentTransaction).one().amount == 352.82


def test_paypal_order_captured_and_recorded(client, db, plans, profile, paypal_client):
    paypal_client.responses[("GET", "/v2/checkout/orders/ORDER-9")] = {"id": "ORDER-9", "status": "APPROVED"}
    paypal_client.responses[("POST", "/v2/checkout/orders/ORDER-9/capture")] = {
        "id": "ORDER-9",
        "status": "COMPLETED",
        "purchase_units": [{"payments": {"captures": [{"id": "CAPTURE-9"}]}}],
    }

    response = client.post(
        "/api/paypal/verify",
        json={"paypal_order_id": "ORDER-9", "user_id": "U1", "plan_id": 1, "amount": 9.99, "currency": "EUR"},
    )

    assert response.status_code == 200
    assert response.json()["payment_id"] == "CAPTURE-9"
    transaction = db.query(PaymentTransaction).one()
    assert transaction.payment_gateway == "paypal"
    assert transaction.gateway_payment_id == "CAPTURE-9"
    assert transaction.currency == "EUR"


def test_paypal_order_not_completed_rejected(client, db, paypal_client):
    paypal_client.responses[("GET", "/v2/checkout/orders/ORDER-7")] = {"id": "ORDER-7", "status": "CREATED"}

    response = client.post("/api/paypal/verify", json={"paypal_order_id": "ORDER-7"})

    assert response.status_code == 400
    assert "not completed" in response.json()["error"]
    assert paypal_client.calls_to("POST", "/v2/checkout/orders/ORDER-7/capture") == []


def test_generic_endpoint_detects_provider(client, db, plans, profile):
    response = client.post(
        "/api/payment/verify",
        json={"paypal_subscription_id": "I-SUB1", "user_id": "U1", "plan_id": 1, "currency": "EUR"},
    )

    assert response.status_code == 200
    subscription = db.query(UserSubscription).one()
    assert subscription.payment_gateway == "paypal"
    assert subscription.paypal_subscription_id == "I-SUB1"


def test_generic_endpoint_without_provider_rejected(client):
    response = client.post("/api/payment/verify", json={"user_id": "U1"})

    assert response.status_code == 400
    assert response.json()["error"] == "Unable to determine payment provider"


def test_bookkeeping_failure_still_reports_verified_payment(client, db, plans, profile, monkeypatch):
    def broken_activation(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(verification, "activate_subscription", broken_activation)

    response = client.post("/api/razorpay/verify", json=_razorpay_payload(user_id="U1", plan_id=1, amount=299))

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Payment verified", "payment_id": "pay_V1"}
    assert db.query(UserSubscription).count() == 0
    assert db.query(PaymentTransaction).count() == 0
