from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from tms_billing.exceptions import GatewayError, InvalidRequestError
from tms_billing.models import (
    CountryPlanPrice,
    PaymentTransaction,
    SubscriptionChange,
    UserProfile,
    UserSubscription,
    utcnow,
)
from tms_billing.subscriptions import (
    activate_subscription,
    add_billing_period,
    expire_lapsed_subscriptions,
    get_active_subscription,
    mark_cancelled,
    mark_past_due,
    record_recurring_charge,
    resolve_profile_id,
    resolve_tier_price,
    upgrade_subscription,
)


def test_add_billing_period_clamps_month_end():
    assert add_billing_period(datetime(2026, 1, 31, 10), "monthly") == datetime(2026, 2, 28, 10)
    assert add_billing_period(datetime(2028, 1, 31), "monthly") == datetime(2028, 2, 29)
    assert add_billing_period(datetime(2026, 12, 15), "monthly") == datetime(2027, 1, 15)
    assert add_billing_period(datetime(2026, 3, 1), "yearly") == datetime(2027, 3, 1)


def test_database_rejects_second_active_row(db, make_subscription):
    make_subscription()
    with pytest.raises(IntegrityError):
        make_subscription()
    db.rollback()


def test_activation_keeps_single_active_row(db, plans, profile):
    first = activate_subscription(
        db,
        profile_id="U1",
        plan=plans["basic"],
        plan_tier="basic",
        gateway="razorpay",
        payment_id="pay_A1",
        amount=299,
        currency="INR",
    )
    second = activate_subscription(
        db,
        profile_id="U1",
        plan=plans["premium"],
        plan_tier="premium",
        gateway="razorpay",
        payment_id="pay_A2",
        amount=599,
        currency="INR",
    )

    assert first.created and second.created
    assert second.superseded_ids == [first.subscription.id]
    assert get_active_subscription(db, "U1").id == second.subscription.id
    assert db.query(UserSubscription).filter(UserSubscription.status == "active").count() == 1


def test_resolve_profile_prefers_matching_role(db, plans):
    db.add_all(
        [
            UserProfile(id="P-mentor", auth_user_id="auth-9", role="Mentor", created_at=utcnow() - timedelta(days=2)),
            UserProfile(id="P-startup", auth_user_id="auth-9", role="Startup", created_at=utcnow()),
        ]
    )
    db.commit()

    assert resolve_profile_id(db, "auth-9", plans["basic"]) == "P-startup"
    assert resolve_profile_id(db, "auth-9") == "P-mentor"
    assert resolve_profile_id(db, "unknown-user") == "unknown-user"
    with pytest.raises(InvalidRequestError):
        resolve_profile_id(db, "  ")


def test_country_price_preferred_over_plan_price(db, plans):
    db.add(CountryPlanPrice(country="India", plan_tier="premium", price_inr=499, price_eur=9, currency="INR"))
    db.commit()

    assert resolve_tier_price(db, "premium", country="India", currency="INR") == (499.0, "INR")
    assert resolve_tier_price(db, "premium", country="Germany", currency="INR") == (599.0, "INR")


def test_upgrade_replaces_subscription(client, db, plans, profile, make_subscription, razorpay_client):
    old = make_subscription(plan_tier="basic", razorpay_subscription_id="sub_old", storage_used_mb=12.0)

    response = client.post("/api/subscriptions/upgrade", json={"user_id": "U1", "new_plan_tier": "premium"})

    assert response.status_code == 200
    body = response.json()
    assert body["change_type"] == "upgrade"
    assert body["subscription"]["plan_tier"] == "premium"
    assert body["subscription"]["previous_plan_tier"] == "basic"
    assert body["subscription"]["razorpay_subscription_id"].startswith("sub_test")

    db.refresh(old)
    assert old.autopay_enabled is False
    assert old.status == "inactive"

    new = db.query(UserSubscription).filter(UserSubscription.status == "active").one()
    assert new.previous_subscription_id == old.id
    assert new.previous_plan_tier == "basic"
    assert new.storage_used_mb == 12.0
    assert new.amount == 599
    assert new.mandate_status == "pending"

    assert razorpay_client.calls_to("POST", "/subscriptions/sub_old/cancel") == [{"cancel_at_cycle_end": 0}]
    [plan_payload] = razorpay_client.calls_to("POST", "/plans")
    assert plan_payload["item"]["amount"] == 59900

    change = db.query(SubscriptionChange).one()
    assert change.change_type == "upgrade"
    assert change.old_plan_tier == "basic"
    assert change.new_plan_tier == "premium"


def test_upgrade_to_lower_tier_rejected(client, db, plans, profile, make_subscription):
    make_subscription(plan_tier="premium")

    response = client.post("/api/subscriptions/upgrade", json={"user_id": "U1", "new_plan_tier": "basic"})

    assert response.status_code == 400
    assert response.json()["error"] == "Cannot upgrade from premium to basic"


def test_gateway_failure_leaves_subscription_untouched(db, plans, profile, make_subscription, gateway_factory, razorpay_client, settings):
    old = make_subscription(plan_tier="basic", razorpay_subscription_id="sub_old")
    razorpay_client.responses[("POST", "/subscriptions")] = GatewayError("razorpay", "razorpay request failed with status 500", 500)

    with pytest.raises(GatewayError):
        upgrade_subscription(db, gateway_factory, "U1", "premium", settings=settings)

    db.refresh(old)
    assert old.status == "active"
    assert old.autopay_enabled is True
    assert razorpay_client.calls_to("POST", "/subscriptions/sub_old/cancel") == []


def test_downgrade_from_free_rejected(client, db, plans, profile, make_subscription):
    make_subscription(plan_tier="free", amount=0, autopay_enabled=False)

    response = client.post("/api/subscriptions/downgrade", json={"user_id": "U1", "new_plan_tier": "basic"})

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Cannot downgrade from free plan"}


def test_downgrade_without_subscription_treated_as_free(client, profile):
    status = client.get("/api/billing/subscription-status", params={"user_id": "U1"})
    response = client.post("/api/subscriptions/downgrade", json={"user_id": "U1", "new_plan_tier": "basic"})

    assert status.json()["plan_tier"] == "free"
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Cannot downgrade from free plan"}


def test_downgrade_to_same_tier_rejected(client, db, plans, profile, make_subscription):
    make_subscription(plan_tier="basic")

    response = client.post("/api/subscriptions/downgrade", json={"user_id": "U1", "new_plan_tier": "basic"})

    assert response.status_code == 400
    assert response.json()["error"] == "Already on the basic plan"


def test_downgrade_to_free_keeps_paid_period(client, db, plans, profile, make_subscription, razorpay_client):
    current = make_subscription(plan_tier="premium", razorpay_subscription_id="sub_prem")

    response = client.post("/api/subscriptions/downgrade", json={"user_id": "U1", "new_plan_tier": "free"})

    assert response.status_code == 200
    assert response.json()["subscription"] is None
    db.refresh(current)
    assert current.status == "active"
    assert current.autopay_enabled is False
    assert current.mandate_status == "cancelled"
    assert db.query(UserSubscription).count() == 1
    assert razorpay_client.calls_to("POST", "/subscriptions/sub_prem/cancel") == [{"cancel_at_cycle_end": 1}]


def test_downgrade_between_paid_tiers(client, db, plans, profile, make_subscription):
    make_subscription(plan_tier="premium", amount=599)

    response = client.post("/api/subscriptions/downgrade", json={"user_id": "U1", "new_plan_tier": "basic"})

    assert response.status_code == 200
    new = db.query(UserSubscription).filter(UserSubscription.status == "active").one()
    assert new.plan_tier == "basic"
    assert new.previous_plan_tier == "premium"


def test_plan_change_requires_fields(client):
    response = client.post("/api/subscriptions/upgrade", json={"user_id": "U1"})

    assert response.status_code == 400
    assert response.json()["error"] == "user_id and new_plan_tier are required"


def test_stop_autopay(client, db, profile, make_subscription, razorpay_client):
    subscription = make_subscription(razorpay_subscription_id="sub_auto")

    response = client.post("/api/razorpay/stop-autopay", json={"subscription_id": subscription.id, "user_id": "U1"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["razorpay_cancelled"] is True
    assert body["message"].startswith("Auto-pay has been stopped")

    db.refresh(subscription)
    assert subscription.status == "active"
    assert subscription.autopay_enabled is False
    assert subscription.mandate_status == "cancelled"
    assert subscription.autopay_cancellation_reason == "user_cancelled"
    assert db.query(SubscriptionChange).filter(SubscriptionChange.change_type == "cancel_autopay").count() == 1

    again = client.post("/api/razorpay/stop-autopay", json={"subscription_id": subscription.id, "user_id": "U1"})
    assert again.json()["already_disabled"] is True
    assert len(razorpay_client.calls_to("POST", "/subscriptions/sub_auto/cancel")) == 1


def test_stop_autopay_survives_gateway_failure(client, db, profile, make_subscription, razorpay_client):
    subscription = make_subscription(razorpay_subscription_id="sub_down")
    razorpay_client.responses[("POST", "/subscriptions/sub_down/cancel")] = GatewayError("razorpay", "boom", 500)

    response = client.post("/api/razorpay/stop-autopay", json={"subscription_id": subscription.id, "user_id": "U1"})

    assert response.status_code == 200
    assert response.json()["razorpay_cancelled"] is False
    db.refresh(subscription)
    assert subscription.autopay_enabled is False


def test_stop_autopay_unknown_subscription(client, profile):
    response = client.post("/api/razorpay/stop-autopay", json={"subscription_id": "missing", "user_id": "U1"})

    assert response.status_code == 404
    assert response.json()["error"] == "Subscription not found"


def test_expire_lapsed_subscriptions(db, make_subscription):
    past = utcnow() - timedelta(days=1)
    lapsed = make_subscription(user_id="U1", autopay_enabled=False, current_period_end=past)
    renewing = make_subscription(user_id="U2", autopay_enabled=True, current_period_end=past)
    running = make_subscription(user_id="U3", autopay_enabled=False)

    assert expire_lapsed_subscriptions(db) == 1

    db.refresh(lapsed)
    db.refresh(renewing)
    db.refresh(running)
    assert lapsed.status == "inactive"
    assert renewing.status == "active"
    assert running.status == "active"


def test_recurring_charges_number_cycles_without_gaps(db, plans, profile):
    record = activate_subscription(
        db,
        profile_id="U1",
        plan=plans["basic"],
        plan_tier="basic",
        gateway="razorpay",
        payment_id="pay_first",
        amount=299,
        currency="INR",
        gateway_subscription_id="sub_cycle",
    )
    subscription = record.subscription

    second = record_recurring_charge(db, subscription, gateway="razorpay", payment_id="pay_second", amount=299)
    repeat = record_recurring_charge(db, subscription, gateway="razorpay", payment_id="pay_second", amount=299)
    third = record_recurring_charge(db, subscription, gateway="razorpay", payment_id="pay_third", amount=299)

    assert second.cycle_number == 2
    assert repeat is None
    assert third.cycle_number == 3
    db.refresh(subscription)
    assert subscription.billing_cycle_count == 3
    assert subscription.total_paid == 897
    assert db.query(PaymentTransaction).count() == 3


def test_subscription_status_endpoint(client, db, profile, make_subscription):
    make_subscription(plan_tier="premium", is_in_trial=True)

    response = client.get("/api/billing/subscription-status", params={"user_id": "U1"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "active"
    assert body["plan_tier"] == "premium"
    assert body["is_in_trial"] is True
    assert body["autopay_enabled"] is True


def test_subscription_status_without_subscription(client, profile):
    body = client.get("/api/billing/subscription-status", params={"user_id": "U1"}).json()

    assert body["status"] == "inactive"
    assert body["plan_tier"] == "free"


def test_record_trial_subscription(client, db, plans, profile):
    response = client.post(
        "/api/billing/record-subscription",
        json={"user_id": "U1", "razorpay_subscription_id": "sub_trial", "plan_type": "monthly", "trial_end": "2026-11-01T00:00:00Z"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["is_in_trial"] is True
    assert body["razorpay_subscription_id"] == "sub_trial"
    assert body["billing_cycle_count"] == 0

    again = client.post(
        "/api/billing/record-subscription",
        json={"user_id": "U1", "razorpay_subscription_id": "sub_trial"},
    )
    assert again.json()["id"] == body["id"]
    assert db.query(UserSubscription).count() == 1


def test_only_active_rows_change_status(db, make_subscription):
    subscription = make_subscription()

    assert mark_past_due(db, subscription, "subscription_halted") is True
    assert subscription.status == "past_due"
    assert mark_cancelled(db, subscription) is False
    assert mark_past_due(db, subscription) is False
    assert subscription.status == "past_due"
