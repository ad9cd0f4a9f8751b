import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tms_billing.config import Settings, get_settings
from tms_billing.email_service import send_subscription_change_email
from tms_billing.exceptions import InvalidRequestError, NotFoundError
from tms_billing.gateways.base import GatewayStrategy, to_minor_units
from tms_billing.models import (
    GATEWAY_PAYPAL,
    GATEWAY_RAZORPAY,
    MANDATE_ACTIVE,
    MANDATE_CANCELLED,
    MANDATE_PENDING,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_INACTIVE,
    STATUS_PAST_DUE,
    TIER_FREE,
    TIER_RANK,
    BillingCycle,
    CountryPlanPrice,
    PaymentTransaction,
    SubscriptionChange,
    SubscriptionPlan,
    UserProfile,
    UserSubscription,
    utcnow,
)
from tms_billing.plan_cache import get_or_create_plan
from tms_billing.utils.results import Result, attempt

logger = logging.getLogger(__name__)

T = TypeVar("T")
GatewayFactory = Callable[[str], GatewayStrategy]

# Status is only ever left from `active`; anything else needs a new row.
ALLOWED_TRANSITIONS = {
    STATUS_ACTIVE: {STATUS_INACTIVE, STATUS_CANCELLED, STATUS_PAST_DUE},
    STATUS_INACTIVE: set(),
    STATUS_CANCELLED: set(),
    STATUS_PAST_DUE: set(),
}

AUTOPAY_STOPPED_MESSAGE = (
    "Auto-pay has been stopped. Your subscription will continue until the current billing period ends."
)


@dataclass
class ActivationRecord:
    subscription: UserSubscription
    transaction: PaymentTransaction | None
    billing_cycle: BillingCycle | None = None
    created: bool = True
    superseded_ids: list[str] = field(default_factory=list)


@dataclass
class PlanChangeOutcome:
    change_type: str
    old_subscription: UserSubscription
    subscription: UserSubscription | None = None
    gateway_subscription: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def _normalize_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if getattr(value, "tzinfo", None):
        return value.replace(tzinfo=None)
    return value


def add_billing_period(start: datetime, interval: str) -> datetime:
    months = 12 if (interval or "").lower() == "yearly" else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _transition(subscription: UserSubscription, new_status: str) -> bool:
    """Move `subscription` to `new_status`. Returns False when it is already there."""
    current = subscription.status or STATUS_ACTIVE
    if current == new_status:
        return False
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidRequestError(f"Cannot move subscription from {current} to {new_status}")
    subscription.status = new_status
    return True


def _lock_query(db: Session, query):
    if db.bind is not None and db.bind.dialect.name != "sqlite":
        return query.with_for_update()
    return query


def _run_with_single_active(db: Session, user_id: str, action: Callable[[], T]) -> T:
    """
    Run `action` and commit. A unique-index conflict means another request
    activated a row for the same user in between; the action is replayed once
    against the fresh state.
    """
    for attempt_number in (1, 2):
        try:
            result = action()
            db.commit()
            return result
        except IntegrityError:
            db.rollback()
            if attempt_number == 2:
                raise
            logger.warning("Concurrent subscription activation detected user_id=%s, retrying", user_id)
    raise AssertionError("unreachable")


def _deactivate_active(db: Session, user_id: str) -> list[UserSubscription]:
    rows = _lock_query(
        db,
        db.query(UserSubscription).filter(
            UserSubscription.user_id == user_id,
            UserSubscription.status == STATUS_ACTIVE,
        ),
    ).all()
    for row in rows:
        _transition(row, STATUS_INACTIVE)
    if rows:
        db.flush()
    return rows


def resolve_profile_id(db: Session, user_id: str, plan: SubscriptionPlan | None = None) -> str:
    """
    Map an auth identity to the billing profile id.

    One auth user may own several profiles; the profile whose role matches the
    plan's user type wins, otherwise the oldest one.
    """
    user_id = (user_id or "").strip()
    if not user_id:
        raise InvalidRequestError("user_id is required")

    direct = db.query(UserProfile).filter(UserProfile.id == user_id).first()
    if direct:
        return direct.id

    profiles = (
        db.query(UserProfile)
        .filter(UserProfile.auth_user_id == user_id)
        .order_by(UserProfile.created_at.asc())
        .all()
    )
    if not profiles:
        logger.warning("No profile found for user_id=%s, using it as the profile id", user_id)
        return user_id

    target_role = ((plan.user_type if plan else None) or "").strip().lower()
    if target_role:
        for profile in profiles:
            if (profile.role or "").strip().lower() == target_role:
                return profile.id
    return profiles[0].id


def get_plan(db: Session, plan_id: Any) -> SubscriptionPlan | None:
    if plan_id in (None, ""):
        return None
    try:
        normalized_id = int(plan_id)
    except (TypeError, ValueError):
        return None
    return db.query(SubscriptionPlan).filter(SubscriptionPlan.id == normalized_id).first()


def resolve_plan_tier(db: Session, plan_id: Any) -> str:
    plan = get_plan(db, plan_id)
    if plan and plan.plan_tier:
        return plan.plan_tier
    return TIER_FREE


def find_plan_for_tier(
    db: Session,
    plan_tier: str,
    interval: str = "monthly",
    user_type: str | None = None,
) -> SubscriptionPlan | None:
    query = db.query(SubscriptionPlan).filter(
        SubscriptionPlan.plan_tier == plan_tier,
        SubscriptionPlan.interval == interval,
        SubscriptionPlan.is_active.is_(True),
    )
    if user_type:
        matched = query.filter(func.lower(SubscriptionPlan.user_type) == user_type.strip().lower()).first()
        if matched:
            return matched
    return query.order_by(SubscriptionPlan.id.asc()).first()


def resolve_tier_price(
    db: Session,
    plan_tier: str,
    country: str | None = None,
    currency: str | None = None,
    interval: str = "monthly",
    plan: SubscriptionPlan | None = None,
) -> tuple[float, str]:
    """Country-specific price first, then the plan's base price."""
    if country:
        row = (
            db.query(CountryPlanPrice)
            .filter(
                CountryPlanPrice.country == country,
                CountryPlanPrice.plan_tier == plan_tier,
                CountryPlanPrice.is_active.is_(True),
            )
            .first()
        )
        if row:
            wants_inr = (currency or row.currency or "").upper() == "INR"
            if wants_inr and row.price_inr:
                return float(row.price_inr), "INR"
            if row.price_eur:
                return float(row.price_eur), "EUR"
            if row.price_inr:
                return float(row.price_inr), "INR"
            if row.base_price_eur:
                return float(row.base_price_eur), "EUR"

    plan = plan or find_plan_for_tier(db, plan_tier, interval)
    if plan is None or not plan.price:
        raise NotFoundError(f"No price configured for {plan_tier} plan")
    return float(plan.price), (plan.currency or currency or "EUR").upper()


def get_active_subscription(db: Session, user_id: str) -> UserSubscription | None:
    return (
        db.query(UserSubscription)
        .filter(
            UserSubscription.user_id == user_id,
            UserSubscription.status == STATUS_ACTIVE,
        )
        .order_by(UserSubscription.created_at.desc())
        .first()
    )


def find_subscription_by_gateway_reference(
    db: Session,
    gateway: str,
    reference: str | None,
) -> UserSubscription | None:
    reference = (reference or "").strip()
    if not reference:
        return None
    column = (
        UserSubscription.paypal_subscription_id
        if gateway == GATEWAY_PAYPAL
        else UserSubscription.razorpay_subscription_id
    )
    return (
        db.query(UserSubscription)
        .filter(column == reference)
        .order_by(UserSubscription.created_at.desc())
        .first()
    )


def find_transaction(db: Session, gateway: str, gateway_payment_id: str | None) -> PaymentTransaction | None:
    if not gateway_payment_id:
        return None
    return (
        db.query(PaymentTransaction)
        .filter(
            PaymentTransaction.payment_gateway == gateway,
            PaymentTransaction.gateway_payment_id == gateway_payment_id,
        )
        .first()
    )


def _assign_gateway_reference(subscription: UserSubscription, gateway: str, reference: str | None) -> None:
    if gateway == GATEWAY_PAYPAL:
        subscription.paypal_subscription_id = reference
    else:
        subscription.razorpay_subscription_id = reference


def _gateway_reference(subscription: UserSubscription) -> str | None:
    if subscription.payment_gateway == GATEWAY_PAYPAL:
        return subscription.paypal_subscription_id
    return subscription.razorpay_subscription_id


def activate_subscription(
    db: Session,
    *,
    profile_id: str,
    plan: SubscriptionPlan | None,
    plan_tier: str,
    gateway: str,
    payment_id: str,
    amount: float,
    currency: str,
    interval: str = "monthly",
    order_id: str | None = None,
    gateway_subscription_id: str | None = None,
    signature: str | None = None,
    country: str | None = None,
    is_autopay: bool = True,
    payment_type: str = "initial",
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ActivationRecord:
    """
    Replace the user's active subscription with a freshly paid one.

    Deactivation, the new row, its payment transaction and billing cycle #1
    commit together. A payment id that was already recorded returns the
    existing rows untouched.
    """

    def _apply() -> ActivationRecord:
        existing = find_transaction(db, gateway, payment_id)
        if existing is not None:
            subscription = None
            if existing.subscription_id:
                subscription = db.query(UserSubscription).filter(UserSubscription.id == existing.subscription_id).first()
            logger.info(
                "Payment already recorded gateway=%s payment_id=%s subscription_id=%s",
                gateway,
                payment_id,
                existing.subscription_id,
            )
            return ActivationRecord(subscription=subscription, transaction=existing, created=False)

        started_at = _normalize_datetime(now) or utcnow()
        period_end = add_billing_period(started_at, interval)
        superseded = _deactivate_active(db, profile_id)
        previous = superseded[0] if superseded else None

        subscription = UserSubscription(
            user_id=profile_id,
            plan_id=plan.id if plan else None,
            plan_tier=plan_tier,
            status=STATUS_ACTIVE,
            current_period_start=started_at,
            current_period_end=period_end,
            amount=amount,
            currency=currency,
            interval=interval or "monthly",
            country=country,
            payment_gateway=gateway,
            is_in_trial=False,
            autopay_enabled=is_autopay,
            mandate_status=MANDATE_ACTIVE if is_autopay else None,
            mandate_created_at=started_at if is_autopay else None,
            billing_cycle_count=1,
            total_paid=amount,
            last_billing_date=started_at,
            next_billing_date=period_end,
            locked_amount_inr=amount if (currency or "").upper() == "INR" else None,
            previous_plan_tier=previous.plan_tier if previous else None,
            previous_subscription_id=previous.id if previous else None,
            storage_used_mb=previous.storage_used_mb if previous else None,
        )
        _assign_gateway_reference(subscription, gateway, gateway_subscription_id)
        db.add(subscription)
        db.flush()

        transaction = PaymentTransaction(
            user_id=profile_id,
            subscription_id=subscription.id,
            payment_gateway=gateway,
            gateway_order_id=order_id or gateway_subscription_id,
            gateway_payment_id=payment_id,
            gateway_signature=signature,
            amount=amount,
            currency=currency,
            status="success",
            payment_type=payment_type,
            plan_tier=plan_tier,
            is_autopay=is_autopay,
            autopay_mandate_id=gateway_subscription_id if is_autopay else None,
            payment_metadata=metadata,
        )
        db.add(transaction)
        db.flush()

        cycle = BillingCycle(
            subscription_id=subscription.id,
            payment_transaction_id=transaction.id,
            cycle_number=1,
            period_start=started_at,
            period_end=period_end,
            amount=amount,
            currency=currency,
            status="paid",
            plan_tier=plan_tier,
            is_autopay=is_autopay,
        )
        db.add(cycle)
        db.flush()

        return ActivationRecord(
            subscription=subscription,
            transaction=transaction,
            billing_cycle=cycle,
            superseded_ids=[row.id for row in superseded],
        )

    record = _run_with_single_active(db, profile_id, _apply)
    if record.created:
        logger.info(
            "Subscription activated user_id=%s subscription_id=%s plan_tier=%s gateway=%s payment_id=%s superseded=%s",
            profile_id,
            record.subscription.id,
            plan_tier,
            gateway,
            payment_id,
            ",".join(record.superseded_ids) or "-",
        )
    return record


def _insert_change(db: Session, **values: Any) -> SubscriptionChange:
    with db.begin_nested():
        change = SubscriptionChange(**values)
        db.add(change)
    return change


def record_subscription_change(
    db: Session,
    *,
    user_id: str,
    change_type: str,
    old_subscription: UserSubscription | None = None,
    new_subscription: UserSubscription | None = None,
    new_plan_tier: str | None = None,
    old_amount: float | None = None,
    new_amount: float | None = None,
    effective_from: datetime | None = None,
    effective_to: datetime | None = None,
    initiated_by: str = "user",
) -> Result[SubscriptionChange]:
    """History is best-effort: a failed insert is logged and reported, the caller's change stands."""
    return attempt(
        logger,
        "Record subscription change",
        _insert_change,
        db,
        context={"user_id": user_id, "change_type": change_type},
        user_id=user_id,
        old_subscription_id=old_subscription.id if old_subscription else None,
        new_subscription_id=new_subscription.id if new_subscription else None,
        change_type=change_type,
        old_plan_tier=old_subscription.plan_tier if old_subscription else None,
        new_plan_tier=new_plan_tier or (new_subscription.plan_tier if new_subscription else None),
        old_amount=old_amount if old_amount is not None else (old_subscription.amount if old_subscription else None),
        new_amount=new_amount if new_amount is not None else (new_subscription.amount if new_subscription else None),
        currency=(new_subscription or old_subscription).currency if (new_subscription or old_subscription) else None,
        effective_from=effective_from or utcnow(),
        effective_to=effective_to,
        initiated_by=initiated_by,
    )


def notify_subscription_change(
    db: Session,
    settings: Settings,
    subscription: UserSubscription,
    event_type: str,
) -> None:
    profile = db.query(UserProfile).filter(UserProfile.id == subscription.user_id).first()
    if not profile or not profile.email:
        return
    try:
        send_subscription_change_email(
            settings,
            email=profile.email,
            full_name=profile.name,
            event_type=event_type,
            plan_tier=subscription.plan_tier,
            status=subscription.status,
            amount=subscription.amount,
            currency=subscription.currency,
            access_until=_normalize_datetime(subscription.current_period_end),
        )
    except Exception:
        logger.exception(
            "Failed to send subscription change email user_id=%s event_type=%s",
            subscription.user_id,
            event_type,
        )


def _cancel_gateway_subscription(
    gateway_factory: GatewayFactory,
    subscription: UserSubscription,
    at_cycle_end: bool,
) -> Result[dict[str, Any]]:
    reference = _gateway_reference(subscription)
    if not reference:
        return Result.success({})
    gateway = subscription.payment_gateway or GATEWAY_RAZORPAY

    def _cancel() -> dict[str, Any]:
        return gateway_factory(gateway).cancel_subscription(reference, at_cycle_end=at_cycle_end)

    return attempt(
        logger,
        "Cancel gateway subscription",
        _cancel,
        context={
            "gateway": gateway,
            "subscription_id": subscription.id,
            "gateway_subscription_id": reference,
        },
    )


def _disable_autopay(subscription: UserSubscription, reason: str, now: datetime) -> None:
    subscription.autopay_enabled = False
    subscription.mandate_status = MANDATE_CANCELLED
    subscription.autopay_cancelled_at = now
    subscription.autopay_cancellation_reason = reason


def _change_plan(
    db: Session,
    gateway_factory: GatewayFactory,
    current: UserSubscription,
    new_plan_tier: str,
    change_type: str,
    country: str | None,
    settings: Settings,
) -> PlanChangeOutcome:
    profile = db.query(UserProfile).filter(UserProfile.id == current.user_id).first()
    interval = current.interval or "monthly"
    plan = find_plan_for_tier(db, new_plan_tier, interval, profile.role if profile else None)
    amount, currency = resolve_tier_price(
        db,
        new_plan_tier,
        country=country or current.country,
        currency=current.currency,
        interval=interval,
        plan=plan,
    )

    # Gateway provisioning happens before any local write so a gateway failure leaves state untouched.
    strategy = gateway_factory(current.payment_gateway or GATEWAY_RAZORPAY)
    gateway_plan_id = get_or_create_plan(
        db,
        strategy.client,
        to_minor_units(amount),
        currency,
        interval,
        1,
        f"{new_plan_tier.title()} Plan",
        gateway=strategy.name,
    )
    gateway_subscription = strategy.client.create_subscription(
        gateway_plan_id,
        user_id=current.user_id,
        notes={"change_type": change_type, "previous_plan_tier": current.plan_tier or ""},
    )
    gateway_subscription_id = str(gateway_subscription.get("id") or "").strip() or None

    warnings: list[str] = []
    cancel_result = _cancel_gateway_subscription(gateway_factory, current, at_cycle_end=False)
    if not cancel_result.ok:
        warnings.append(
            f"Previous gateway subscription could not be cancelled and may still charge: {cancel_result.error}"
        )

    old_subscription_id = current.id

    def _apply() -> tuple[UserSubscription, UserSubscription]:
        now = utcnow()
        old = db.query(UserSubscription).filter(UserSubscription.id == old_subscription_id).first()
        _disable_autopay(old, change_type, now)
        if old.status == STATUS_ACTIVE:
            _transition(old, STATUS_INACTIVE)
        # Another active row may have appeared concurrently; it is superseded as well.
        _deactivate_active(db, old.user_id)

        period_end = add_billing_period(now, interval)
        new_subscription = UserSubscription(
            user_id=old.user_id,
            plan_id=plan.id if plan else None,
            plan_tier=new_plan_tier,
            status=STATUS_ACTIVE,
            current_period_start=now,
            current_period_end=period_end,
            amount=amount,
            currency=currency,
            interval=interval,
            country=country or old.country,
            payment_gateway=strategy.name,
            autopay_enabled=True,
            mandate_status=MANDATE_PENDING,
            billing_cycle_count=0,
            total_paid=0,
            next_billing_date=period_end,
            locked_amount_inr=amount if currency == "INR" else None,
            previous_plan_tier=old.plan_tier,
            previous_subscription_id=old.id,
            storage_used_mb=old.storage_used_mb,
        )
        _assign_gateway_reference(new_subscription, strategy.name, gateway_subscription_id)
        db.add(new_subscription)
        db.flush()
        return old, new_subscription

    old, new_subscription = _run_with_single_active(db, current.user_id, _apply)

    change_result = record_subscription_change(
        db,
        user_id=old.user_id,
        change_type=change_type,
        old_subscription=old,
        new_subscription=new_subscription,
        effective_from=new_subscription.current_period_start,
        effective_to=new_subscription.current_period_end,
    )
    if change_result.ok:
        db.commit()
    else:
        warnings.append(f"Subscription change history was not recorded: {change_result.error}")

    logger.info(
        "Subscription %s user_id=%s old_subscription_id=%s new_subscription_id=%s old_tier=%s new_tier=%s",
        change_type,
        old.user_id,
        old.id,
        new_subscription.id,
        old.plan_tier,
        new_plan_tier,
    )
    notify_subscription_change(db, settings, new_subscription, f"subscription_{change_type}d")
    return PlanChangeOutcome(
        change_type=change_type,
        old_subscription=old,
        subscription=new_subscription,
        gateway_subscription=gateway_subscription,
        warnings=warnings,
    )


def _require_tier(new_plan_tier: str) -> str:
    tier = (new_plan_tier or "").strip().lower()
    if tier not in TIER_RANK:
        raise InvalidRequestError(f"Unknown plan tier: {new_plan_tier}")
    return tier


def upgrade_subscription(
    db: Session,
    gateway_factory: GatewayFactory,
    user_id: str,
    new_plan_tier: str,
    country: str | None = None,
    settings: Settings | None = None,
) -> PlanChangeOutcome:
    settings = settings or get_settings()
    new_tier = _require_tier(new_plan_tier)
    profile_id = resolve_profile_id(db, user_id)
    current = get_active_subscription(db, profile_id)
    if current is None:
        raise NotFoundError("No active subscription found")

    current_tier = current.plan_tier or TIER_FREE
    if TIER_RANK[new_tier] <= TIER_RANK.get(current_tier, 0):
        raise InvalidRequestError(f"Cannot upgrade from {current_tier} to {new_tier}")

    return _change_plan(db, gateway_factory, current, new_tier, "upgrade", country, settings)


def downgrade_subscription(
    db: Session,
    gateway_factory: GatewayFactory,
    user_id: str,
    new_plan_tier: str,
    country: str | None = None,
    settings: Settings | None = None,
) -> PlanChangeOutcome:
    settings = settings or get_settings()
    new_tier = _require_tier(new_plan_tier)
    profile_id = resolve_profile_id(db, user_id)
    current = get_active_subscription(db, profile_id)
    # No active row means the user is on the free tier.
    current_tier = (current.plan_tier if current else None) or TIER_FREE
    if current_tier == TIER_FREE:
        raise InvalidRequestError("Cannot downgrade from free plan")
    if TIER_RANK[new_tier] > TIER_RANK.get(current_tier, 0):
        raise InvalidRequestError("Use upgrade to move to a higher plan")
    if new_tier == current_tier:
        raise InvalidRequestError(f"Already on the {current_tier} plan")

    if new_tier != TIER_FREE:
        return _change_plan(db, gateway_factory, current, new_tier, "downgrade", country, settings)

    # Free needs no replacement row; the paid period runs out with autopay off.
    warnings: list[str] = []
    cancel_result = _cancel_gateway_subscription(gateway_factory, current, at_cycle_end=True)
    if not cancel_result.ok:
        warnings.append(
            f"Gateway subscription could not be cancelled and may still charge: {cancel_result.error}"
        )

    _disable_autopay(current, "downgrade_to_free", utcnow())
    db.commit()
    db.refresh(current)

    change_result = record_subscription_change(
        db,
        user_id=current.user_id,
        change_type="downgrade",
        old_subscription=current,
        new_plan_tier=TIER_FREE,
        new_amount=0,
        effective_from=current.current_period_end,
    )
    if change_result.ok:
        db.commit()
    else:
        warnings.append(f"Subscription change history was not recorded: {change_result.error}")

    logger.info(
        "Subscription downgrade to free scheduled user_id=%s subscription_id=%s access_until=%s",
        current.user_id,
        current.id,
        current.current_period_end,
    )
    notify_subscription_change(db, settings, current, "subscription_downgraded")
    return PlanChangeOutcome(change_type="downgrade", old_subscription=current, warnings=warnings)


def apply_mandate_cancellation(
    db: Session,
    subscription: UserSubscription,
    reason: str,
    initiated_by: str = "user",
    commit: bool = True,
) -> bool:
    """
    Autopay is off and the mandate cancelled, but the row stays active until
    its period ends. Returns False when autopay was already off.
    """
    if not subscription.autopay_enabled and subscription.mandate_status == MANDATE_CANCELLED:
        return False

    _disable_autopay(subscription, reason, utcnow())
    db.flush()
    record_subscription_change(
        db,
        user_id=subscription.user_id,
        change_type="cancel_autopay",
        old_subscription=subscription,
        effective_from=utcnow(),
        effective_to=subscription.current_period_end,
        initiated_by=initiated_by,
    )
    if commit:
        db.commit()
        db.refresh(subscription)
    logger.info(
        "Autopay cancelled subscription_id=%s user_id=%s reason=%s initiated_by=%s",
        subscription.id,
        subscription.user_id,
        reason,
        initiated_by,
    )
    return True


def stop_autopay(
    db: Session,
    gateway_factory: GatewayFactory,
    subscription_id: str,
    user_id: str,
    reason: str = "user_cancelled",
    initiated_by: str = "user",
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    profile_id = resolve_profile_id(db, user_id)
    subscription = (
        db.query(UserSubscription)
        .filter(
            UserSubscription.id == subscription_id,
            UserSubscription.user_id == profile_id,
        )
        .first()
    )
    if subscription is None:
        raise NotFoundError("Subscription not found")

    if not subscription.autopay_enabled:
        return {
            "success": True,
            "message": "Autopay is already disabled",
            "already_disabled": True,
            "subscription_id": subscription.id,
        }

    cancel_result = _cancel_gateway_subscription(gateway_factory, subscription, at_cycle_end=False)
    apply_mandate_cancellation(db, subscription, reason, initiated_by)
    notify_subscription_change(db, settings, subscription, "autopay_stopped")

    gateway_key = f"{subscription.payment_gateway or GATEWAY_RAZORPAY}_cancelled"
    return {
        "success": True,
        "message": AUTOPAY_STOPPED_MESSAGE,
        gateway_key: cancel_result.ok,
        "subscription_id": subscription.id,
    }


def record_recurring_charge(
    db: Session,
    subscription: UserSubscription,
    *,
    gateway: str,
    payment_id: str,
    amount: float,
    currency: str | None = None,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    order_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> BillingCycle | None:
    """
    Append the next billing cycle for a recurring charge.

    Returns None without writing when this payment id was already recorded,
    so redelivered webhooks never add a cycle twice.
    """
    if find_transaction(db, gateway, payment_id) is not None:
        logger.info("Recurring charge already recorded gateway=%s payment_id=%s", gateway, payment_id)
        return None

    locked = _lock_query(db, db.query(UserSubscription).filter(UserSubscription.id == subscription.id)).first()
    now = utcnow()
    period_start = _normalize_datetime(period_start) or now
    period_end = _normalize_datetime(period_end) or add_billing_period(period_start, locked.interval)
    currency = (currency or locked.currency or "INR").upper()

    last_cycle = (
        db.query(func.max(BillingCycle.cycle_number))
        .filter(BillingCycle.subscription_id == locked.id)
        .scalar()
    )
    next_cycle = max(int(last_cycle or 0), int(locked.billing_cycle_count or 0)) + 1

    transaction = PaymentTransaction(
        user_id=locked.user_id,
        subscription_id=locked.id,
        payment_gateway=gateway,
        gateway_order_id=order_id or _gateway_reference(locked),
        gateway_payment_id=payment_id,
        amount=amount,
        currency=currency,
        status="success",
        payment_type="recurring",
        plan_tier=locked.plan_tier,
        is_autopay=True,
        autopay_mandate_id=_gateway_reference(locked),
        payment_metadata=metadata,
    )
    try:
        db.add(transaction)
        db.flush()
        cycle = BillingCycle(
            subscription_id=locked.id,
            payment_transaction_id=transaction.id,
            cycle_number=next_cycle,
            period_start=period_start,
            period_end=period_end,
            amount=amount,
            currency=currency,
            status="paid",
            plan_tier=locked.plan_tier,
            is_autopay=True,
        )
        db.add(cycle)
        locked.billing_cycle_count = next_cycle
        locked.total_paid = float(locked.total_paid or 0) + float(amount or 0)
        locked.last_billing_date = now
        locked.current_period_start = period_start
        locked.current_period_end = period_end
        locked.next_billing_date = period_end
        if locked.autopay_enabled:
            locked.mandate_status = MANDATE_ACTIVE
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Recurring charge conflicted with a concurrent delivery gateway=%s payment_id=%s subscription_id=%s",
            gateway,
            payment_id,
            subscription.id,
        )
        return None

    logger.info(
        "Recurring charge recorded subscription_id=%s cycle=%s payment_id=%s amount=%s %s",
        locked.id,
        next_cycle,
        payment_id,
        amount,
        currency,
    )
    return cycle


def record_failed_payment(
    db: Session,
    *,
    gateway: str,
    payment_id: str,
    user_id: str,
    subscription: UserSubscription | None = None,
    amount: float = 0,
    currency: str | None = None,
    order_id: str | None = None,
    reason: str | None = None,
) -> PaymentTransaction | None:
    existing = find_transaction(db, gateway, payment_id)
    if existing is not None:
        if existing.status == "pending":
            existing.status = "failed"
            existing.failure_reason = reason
            db.commit()
        return existing

    transaction = PaymentTransaction(
        user_id=user_id,
        subscription_id=subscription.id if subscription else None,
        payment_gateway=gateway,
        gateway_order_id=order_id,
        gateway_payment_id=payment_id,
        amount=amount,
        currency=(currency or (subscription.currency if subscription else None) or "INR").upper(),
        status="failed",
        payment_type="recurring" if subscription else "initial",
        plan_tier=subscription.plan_tier if subscription else None,
        is_autopay=bool(subscription and subscription.autopay_enabled),
        failure_reason=reason,
    )
    try:
        with db.begin_nested():
            db.add(transaction)
    except IntegrityError:
        return find_transaction(db, gateway, payment_id)
    db.commit()
    return transaction


def mark_past_due(db: Session, subscription: UserSubscription, reason: str | None = None) -> bool:
    if subscription.status != STATUS_ACTIVE:
        return False
    _transition(subscription, STATUS_PAST_DUE)
    db.commit()
    logger.warning(
        "Subscription marked past_due subscription_id=%s user_id=%s reason=%s",
        subscription.id,
        subscription.user_id,
        reason,
    )
    return True


def mark_cancelled(db: Session, subscription: UserSubscription, reason: str | None = None) -> bool:
    if subscription.status != STATUS_ACTIVE:
        return False
    _transition(subscription, STATUS_CANCELLED)
    subscription.autopay_enabled = False
    subscription.mandate_status = MANDATE_CANCELLED
    if reason and not subscription.autopay_cancellation_reason:
        subscription.autopay_cancellation_reason = reason
    db.commit()
    logger.info("Subscription cancelled subscription_id=%s user_id=%s", subscription.id, subscription.user_id)
    return True


def expire_lapsed_subscriptions(db: Session, now: datetime | None = None) -> int:
    """Deactivate active rows past their period end with autopay off. Returns the count."""
    now = _normalize_datetime(now) or utcnow()
    rows = (
        db.query(UserSubscription)
        .filter(
            UserSubscription.status == STATUS_ACTIVE,
            UserSubscription.autopay_enabled.isnot(True),
            UserSubscription.current_period_end.isnot(None),
            UserSubscription.current_period_end < now,
        )
        .all()
    )
    for row in rows:
        _transition(row, STATUS_INACTIVE)
    if rows:
        db.commit()
        logger.info("Expired lapsed subscriptions count=%s", len(rows))
    return len(rows)


def subscription_status(db: Session, user_id: str) -> dict[str, Any]:
    profile_id = resolve_profile_id(db, user_id)
    subscription = get_active_subscription(db, profile_id)
    if subscription is None:
        subscription = (
            db.query(UserSubscription)
            .filter(UserSubscription.user_id == profile_id)
            .order_by(UserSubscription.created_at.desc())
            .first()
        )
    if subscription is None:
        return {
            "status": STATUS_INACTIVE,
            "plan_tier": TIER_FREE,
            "is_in_trial": False,
            "trial_end": None,
            "current_period_end": None,
            "autopay_enabled": False,
            "mandate_status": None,
        }
    return {
        "status": subscription.status,
        "plan_tier": subscription.plan_tier,
        "is_in_trial": bool(subscription.is_in_trial),
        "trial_end": subscription.trial_end,
        "current_period_end": subscription.current_period_end,
        "autopay_enabled": bool(subscription.autopay_enabled),
        "mandate_status": subscription.mandate_status,
    }


def record_trial_subscription(
    db: Session,
    *,
    user_id: str,
    gateway_subscription_id: str,
    interval: str = "monthly",
    trial_end: datetime | None = None,
    gateway: str = GATEWAY_RAZORPAY,
) -> UserSubscription:
    """Record a trial that the gateway will start charging when it ends."""
    plan = find_plan_by_name(db, "Startup", interval)
    if plan is None:
        raise NotFoundError("Startup plan not found")
    profile_id = resolve_profile_id(db, user_id, plan)

    existing = find_subscription_by_gateway_reference(db, gateway, gateway_subscription_id)
    if existing is not None:
        return existing

    def _apply() -> UserSubscription:
        now = utcnow()
        _deactivate_active(db, profile_id)
        period_end = trial_end or add_billing_period(now, interval)
        subscription = UserSubscription(
            user_id=profile_id,
            plan_id=plan.id,
            plan_tier=plan.plan_tier,
            status=STATUS_ACTIVE,
            current_period_start=now,
            current_period_end=period_end,
            amount=plan.price,
            currency=plan.currency,
            interval=interval,
            payment_gateway=gateway,
            is_in_trial=True,
            trial_start=now,
            trial_end=trial_end,
            autopay_enabled=True,
            mandate_status=MANDATE_PENDING,
            billing_cycle_count=0,
            total_paid=0,
            next_billing_date=period_end,
        )
        _assign_gateway_reference(subscription, gateway, gateway_subscription_id)
        db.add(subscription)
        db.flush()
        return subscription

    subscription = _run_with_single_active(db, profile_id, _apply)
    logger.info(
        "Trial subscription recorded user_id=%s subscription_id=%s gateway_subscription_id=%s",
        profile_id,
        subscription.id,
        gateway_subscription_id,
    )
    return subscription


def find_plan_by_name(db: Session, name: str, interval: str) -> SubscriptionPlan | None:
    return (
        db.query(SubscriptionPlan)
        .filter(
            SubscriptionPlan.name == name,
            SubscriptionPlan.interval == interval,
            SubscriptionPlan.is_active.is_(True),
        )
        .first()
    )
