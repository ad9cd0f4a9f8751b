import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from tms_billing.config import Settings  # noqa: E402
from tms_billing.database import Base, get_db  # noqa: E402
from tms_billing.dependencies import (  # noqa: E402
    get_app_settings,
    get_engine,
    get_paypal_client,
    get_razorpay_client,
)
from tms_billing.gateways.paypal import PayPalClient, PayPalStrategy  # noqa: E402
from tms_billing.gateways.razorpay import RazorpayClient, RazorpayStrategy  # noqa: E402
from tms_billing.main import app  # noqa: E402
from tms_billing.models import (  # noqa: E402
    STATUS_ACTIVE,
    SubscriptionPlan,
    UserProfile,
    UserSubscription,
    utcnow,
)
from tms_billing.subscriptions import add_billing_period  # noqa: E402
from tms_billing.utils.rate_limiter import in_memory_rate_limiter  # noqa: E402

RAZORPAY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"

PAYPAL_WEBHOOK_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/certs/cert.pem",
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2026-01-01T00:00:00Z",
}


class RecordingClientMixin:
    """Replaces the HTTP layer with canned responses and records every call."""

    def __init__(self, settings):
        super().__init__(settings)
        self.calls = []
        self.responses = {}
        self._counter = 0

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}{self._counter}"

    def calls_to(self, method, path):
        return [payload for call_method, call_path, payload in self.calls if call_method == method and call_path == path]

    def request(self, method, path, json_payload=None, **kwargs):
        self.calls.append((method, path, json_payload))
        canned = self.responses.get((method, path))
        if isinstance(canned, Exception):
            raise canned
        if canned is not None:
            return canned
        return self.default_response(method, path, json_payload or {})


class FakeRazorpayClient(RecordingClientMixin, RazorpayClient):
    def default_response(self, method, path, payload):
        if method == "POST" and path == "/orders":
            return {"id": self._next_id("order_test"), "amount": payload["amount"], "currency": payload["currency"], "status": "created"}
        if method == "POST" and path == "/plans":
            return {"id": self._next_id("plan_test"), "period": payload["period"]}
        if method == "POST" and path == "/subscriptions":
            return {"id": self._next_id("sub_test"), "status": "created", "plan_id": payload["plan_id"]}
        if method == "POST" and path.endswith("/cancel"):
            return {"id": path.split("/")[2], "status": "cancelled"}
        if method == "GET" and path.startswith("/subscriptions/"):
            return {"id": path.split("/")[2], "status": "active"}
        if method == "GET" and path == "/subscriptions":
            return {"items": []}
        if method == "GET" and path.endswith("/tokens"):
            return {"items": []}
        return {}


class FakePayPalClient(RecordingClientMixin, PayPalClient):
    def default_response(self, method, path, payload):
        if method == "POST" and path == "/v1/catalogs/products":
            return {"id": self._next_id("PROD-")}
        if method == "POST" and path == "/v1/billing/plans":
            return {"id": self._next_id("P-")}
        if method == "POST" and path == "/v1/billing/subscriptions":
            return {"id": self._next_id("I-"), "status": "APPROVAL_PENDING"}
        if method == "GET" and path.startswith("/v1/billing/subscriptions/"):
            return {"id": path.rsplit("/", 1)[-1], "status": "ACTIVE"}
        if method == "POST" and path == "/v2/checkout/orders":
            return {"id": self._next_id("ORDER-"), "status": "CREATED"}
        if method == "POST" and path == "/v1/notifications/verify-webhook-signature":
            return {"verification_status": "SUCCESS"}
        return {}


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        app_env="test",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=RAZORPAY_SECRET,
        razorpay_webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        razorpay_startup_plan_id_monthly="plan_startup_monthly",
        razorpay_startup_plan_id_yearly="plan_startup_yearly",
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        paypal_webhook_id="WH-TEST",
        frontend_url="http://localhost:5173",
        verify_rate_limit=1000,
        plan_change_rate_limit=1000,
        webhook_rate_limit=1000,
        rate_limit_backend="memory",
    )


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def db(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def razorpay_client(settings):
    return FakeRazorpayClient(settings)


@pytest.fixture
def paypal_client(settings):
    return FakePayPalClient(settings)


@pytest.fixture
def gateway_factory(razorpay_client, paypal_client):
    strategies = {
        "razorpay": RazorpayStrategy(razorpay_client),
        "paypal": PayPalStrategy(paypal_client),
    }
    return lambda gateway: strategies[gateway or "razorpay"]


@pytest.fixture
def client(db, engine, settings, razorpay_client, paypal_client):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_razorpay_client] = lambda: razorpay_client
    app.dependency_overrides[get_paypal_client] = lambda: paypal_client
    in_memory_rate_limiter.reset()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def plans(db):
    basic = SubscriptionPlan(id=1, name="Basic", price=299, currency="INR", interval="monthly", plan_tier="basic", user_type="Startup")
    premium = SubscriptionPlan(id=2, name="Premium", price=599, currency="INR", interval="monthly", plan_tier="premium", user_type="Startup")
    startup = SubscriptionPlan(id=3, name="Startup", price=299, currency="INR", interval="monthly", plan_tier="basic", user_type="Startup")
    db.add_all([basic, premium, startup])
    db.commit()
    return {"basic": basic, "premium": premium, "startup": startup}


@pytest.fixture
def profile(db):
    user = UserProfile(id="U1", auth_user_id="auth-U1", email=None, name="Asha Founder", role="Startup")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def make_subscription(db):
    def _make(user_id="U1", plan_tier="basic", **overrides):
        now = utcnow()
        values = {
            "user_id": user_id,
            "plan_tier": plan_tier,
            "status": STATUS_ACTIVE,
            "current_period_start": now,
            "current_period_end": add_billing_period(now, "monthly"),
            "amount": 299,
            "currency": "INR",
            "interval": "monthly",
            "payment_gateway": "razorpay",
            "autopay_enabled": True,
            "mandate_status": "active",
            "billing_cycle_count": 1,
            "total_paid": 299,
        }
        values.update(overrides)
        subscription = UserSubscription(**values)
        db.add(subscription)
        db.commit()
        return subscription

    return _make
