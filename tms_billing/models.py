import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from tms_billing.database import Base

TIER_FREE = "free"
TIER_BASIC = "basic"
TIER_PREMIUM = "premium"
TIER_RANK = {TIER_FREE: 0, TIER_BASIC: 1, TIER_PREMIUM: 2}

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_CANCELLED = "cancelled"
STATUS_PAST_DUE = "past_due"

MANDATE_PENDING = "pending"
MANDATE_ACTIVE = "active"
MANDATE_CANCELLED = "cancelled"

GATEWAY_RAZORPAY = "razorpay"
GATEWAY_PAYPAL = "paypal"


def utcnow() -> datetime:
    # Stored naive in UTC, matching the Supabase timestamp columns.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    auth_user_id = Column(String(36), nullable=False, index=True)
    email = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=True)  # Startup, Mentor, Investor, Advisor ...
    razorpay_customer_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Float, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="EUR")
    interval = Column(String, nullable=False, default="monthly")
    plan_tier = Column(String, nullable=False, default=TIER_FREE)
    user_type = Column(String, nullable=True)
    storage_limit_mb = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True)


class CountryPlanPrice(Base):
    __tablename__ = "country_plan_prices"

    id = Column(Integer, primary_key=True, index=True)
    country = Column(String, nullable=False, index=True)
    plan_tier = Column(String, nullable=False)
    base_price_eur = Column(Float, nullable=True)
    price_inr = Column(Float, nullable=True)
    price_eur = Column(Float, nullable=True)
    currency = Column(String(3), nullable=False, default="INR")
    payment_gateway = Column(String, nullable=False, default=GATEWAY_RAZORPAY)
    is_active = Column(Boolean, default=True)


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"
    __table_args__ = (
        # At most one active row per profile; deactivate-then-insert relies on it.
        Index(
            "uq_user_subscriptions_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    plan_tier = Column(String, nullable=False, default=TIER_FREE)
    status = Column(String, nullable=False, default=STATUS_ACTIVE, index=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    amount = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    interval = Column(String, nullable=False, default="monthly")
    country = Column(String, nullable=True)
    payment_gateway = Column(String, nullable=True)

    is_in_trial = Column(Boolean, default=False)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    autopay_enabled = Column(Boolean, default=False)
    mandate_status = Column(String, nullable=True)
    mandate_created_at = Column(DateTime, nullable=True)
    razorpay_subscription_id = Column(String, nullable=True, index=True)
    razorpay_mandate_id = Column(String, nullable=True)
    paypal_subscription_id = Column(String, nullable=True, index=True)
    autopay_cancelled_at = Column(DateTime, nullable=True)
    autopay_cancellation_reason = Column(String, nullable=True)

    billing_cycle_count = Column(Integer, nullable=False, default=0)
    total_paid = Column(Float, nullable=False, default=0)
    last_billing_date = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    locked_amount_inr = Column(Float, nullable=True)

    previous_plan_tier = Column(String, nullable=True)
    previous_subscription_id = Column(String(36), nullable=True)
    storage_used_mb = Column(Float, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    plan = relationship("SubscriptionPlan")
    billing_cycles = relationship(
        "BillingCycle",
        back_populates="subscription",
        order_by="BillingCycle.cycle_number",
    )


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("payment_gateway", "gateway_payment_id", name="uq_payment_transactions_gateway_payment"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("user_subscriptions.id"), nullable=True, index=True)
    payment_gateway = Column(String, nullable=False)
    gateway_order_id = Column(String, nullable=True, index=True)
    gateway_payment_id = Column(String, nullable=True)
    gateway_signature = Column(String, nullable=True)
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String, nullable=False, default="pending")  # pending, success, failed, refunded
    payment_type = Column(String, nullable=False, default="initial")  # initial, recurring, upgrade, downgrade
    plan_tier = Column(String, nullable=True)
    is_autopay = Column(Boolean, default=False)
    autopay_mandate_id = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class BillingCycle(Base):
    __tablename__ = "billing_cycles"
    __table_args__ = (
        UniqueConstraint("subscription_id", "cycle_number", name="uq_billing_cycles_subscription_cycle"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    subscription_id = Column(String(36), ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    payment_transaction_id = Column(String(36), ForeignKey("payment_transactions.id"), nullable=True)
    cycle_number = Column(Integer, nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String(3), nullable=True)
    status = Column(String, nullable=False, default="paid")  # paid, pending, failed
    plan_tier = Column(String, nullable=True)
    is_autopay = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    subscription = relationship("UserSubscription", back_populates="billing_cycles")


class GatewayPlanCache(Base):
    __tablename__ = "razorpay_plans_cache"
    __table_args__ = (
        UniqueConstraint(
            "gateway",
            "amount_paise",
            "currency",
            "period",
            "interval_count",
            name="uq_plans_cache_terms",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    gateway = Column(String, nullable=False, default=GATEWAY_RAZORPAY)
    plan_id = Column(String, nullable=False)
    amount_paise = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    period = Column(String, nullable=False)
    interval_count = Column(Integer, nullable=False, default=1)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class MentorStartupAssignment(Base):
    __tablename__ = "mentor_startup_assignments"

    id = Column(Integer, primary_key=True, index=True)
    mentor_id = Column(String(36), nullable=True)
    startup_id = Column(String(36), nullable=True)
    status = Column(String, nullable=False, default="pending_payment")
    agreement_status = Column(String, nullable=True)
    payment_status = Column(String, nullable=True, default="pending")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class MentorPayment(Base):
    __tablename__ = "mentor_payments"

    id = Column(Integer, primary_key=True, index=True)
    assignment_id = Column(Integer, ForeignKey("mentor_startup_assignments.id"), nullable=False, index=True)
    amount = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    payment_gateway = Column(String, nullable=True)
    razorpay_order_id = Column(String, nullable=True, index=True)
    razorpay_payment_id = Column(String, nullable=True, index=True)
    paypal_order_id = Column(String, nullable=True, index=True)
    payment_status = Column(String, nullable=False, default="pending")  # pending, completed, failed
    payment_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    assignment = relationship("MentorStartupAssignment")


class SubscriptionChange(Base):
    __tablename__ = "subscription_changes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    old_subscription_id = Column(String(36), nullable=True)
    new_subscription_id = Column(String(36), nullable=True)
    change_type = Column(String, nullable=False)  # upgrade, downgrade, cancel_autopay
    old_plan_tier = Column(String, nullable=True)
    new_plan_tier = Column(String, nullable=True)
    old_amount = Column(Float, nullable=True)
    new_amount = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    effective_from = Column(DateTime, nullable=True)
    effective_to = Column(DateTime, nullable=True)
    initiated_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("gateway", "event_id", name="uq_webhook_events_gateway_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    gateway = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=True)
    status = Column(String, nullable=False, default="received")  # received, processed, failed
    received_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)


class RateLimitBucket(Base):
    """Request count per rate key and fixed window, shared by every app instance."""

    __tablename__ = "rate_limit_buckets"

    rate_key = Column(String(255), primary_key=True)
    window_start = Column(BigInteger, primary_key=True, autoincrement=False)
    request_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(BigInteger, nullable=False, index=True)
