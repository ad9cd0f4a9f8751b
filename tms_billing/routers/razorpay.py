import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from tms_billing import schemas
from tms_billing.config import Settings
from tms_billing.database import get_db
from tms_billing.dependencies import (
    enforce_rate_limit_or_429,
    get_app_settings,
    get_engine,
    get_gateway_factory,
    get_razorpay_client,
    get_razorpay_strategy,
)
from tms_billing.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    MissingFieldsError,
    WebhookSignatureError,
)
from tms_billing.gateways.base import to_minor_units
from tms_billing.gateways.razorpay import RazorpayClient, RazorpayStrategy
from tms_billing.gateways.signatures import verify_webhook_signature
from tms_billing.models import GATEWAY_RAZORPAY
from tms_billing.plan_cache import get_or_create_plan
from tms_billing.subscriptions import GatewayFactory, record_trial_subscription, stop_autopay
from tms_billing.utils.results import attempt
from tms_billing.verification import PaymentVerifier, build_verification_request
from tms_billing.webhooks import RazorpayWebhookDispatcher

router = APIRouter(prefix="/api/razorpay", tags=["razorpay"])
logger = logging.getLogger(__name__)

MIN_ORDER_AMOUNT_MINOR = 100


@router.post("/create-order")
def create_order(
    payload: schemas.RazorpayCreateOrderRequest,
    client: RazorpayClient = Depends(get_razorpay_client),
):
    amount_minor = to_minor_units(payload.amount)
    if amount_minor < MIN_ORDER_AMOUNT_MINOR:
        raise InvalidRequestError("Amount must be at least 1.00")

    order = client.create_order(
        amount_minor,
        (payload.currency or "INR").upper(),
        receipt=payload.receipt,
        notes=payload.notes,
    )
    logger.info("Razorpay order created order_id=%s amount=%s", order.get("id"), amount_minor)
    return order


@router.post("/create-subscription")
def create_subscription(
    payload: schemas.RazorpayCreateSubscriptionRequest,
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
    settings: Settings = Depends(get_app_settings),
):
    plan_id = (payload.plan_id or "").strip()
    if not plan_id and payload.amount:
        plan_id = get_or_create_plan(
            db,
            client,
            to_minor_units(payload.amount),
            payload.currency,
            payload.interval,
            name=payload.plan_name or "TrackMyStartup Subscription",
            gateway=GATEWAY_RAZORPAY,
        )
    if not plan_id:
        plan_id = settings.default_startup_plan_id(payload.interval)
    if not plan_id:
        raise InvalidRequestError("plan_id not provided and RAZORPAY_STARTUP_PLAN_ID(_MONTHLY) not set")

    trial_seconds = None
    if payload.include_trial:
        trial_seconds = settings.trial_period_seconds(payload.trial_days, payload.trial_seconds)

    subscription = client.create_subscription(
        plan_id,
        user_id=payload.user_id,
        total_count=payload.total_count,
        customer_notify=payload.customer_notify,
        notes={"trial_startup": "true"} if payload.include_trial else None,
        trial_period_seconds=trial_seconds,
    )
    logger.info(
        "Razorpay subscription created subscription_id=%s plan_id=%s user_id=%s trial=%s",
        subscription.get("id"),
        plan_id,
        payload.user_id,
        bool(trial_seconds),
    )
    return subscription


@router.post("/create-trial-subscription")
def create_trial_subscription(
    payload: schemas.TrialSubscriptionRequest,
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
    settings: Settings = Depends(get_app_settings),
):
    if not payload.user_id:
        raise MissingFieldsError(["user_id"], "user_id is required")

    plan_type = "yearly" if payload.plan_type == "yearly" else "monthly"
    plan_id = settings.default_startup_plan_id(plan_type)
    if not plan_id:
        raise ConfigurationError(f"Razorpay startup plan for {plan_type} billing is not configured")

    subscription = client.create_subscription(
        plan_id,
        user_id=payload.user_id,
        total_count=1 if plan_type == "yearly" else 12,
        notes={
            "startup_count": str(payload.startup_count or 0),
            "trial_startup": "true",
            "plan_type": plan_type,
        },
        trial_period_seconds=settings.trial_period_seconds(),
    )

    subscription_id = str(subscription.get("id") or "")
    recorded = attempt(
        logger,
        "Record trial subscription",
        record_trial_subscription,
        db,
        user_id=payload.user_id,
        gateway_subscription_id=subscription_id,
        interval=plan_type,
        gateway=GATEWAY_RAZORPAY,
        context={"user_id": payload.user_id, "subscription_id": subscription_id},
    )
    if not recorded.ok:
        # The gateway subscription exists; the activation webhook or record-subscription reconciles it.
        db.rollback()
    return subscription


@router.post("/stop-autopay")
def stop_subscription_autopay(
    payload: schemas.StopAutopayRequest,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    settings: Settings = Depends(get_app_settings),
):
    if not payload.subscription_id or not payload.user_id:
        raise MissingFieldsError(
            [name for name in ("subscription_id", "user_id") if not getattr(payload, name)],
            "subscription_id and user_id are required",
        )
    return stop_autopay(
        db,
        gateway_factory,
        payload.subscription_id,
        payload.user_id,
        settings=settings,
    )


@router.post("/cleanup-customer")
def cleanup_customer(
    payload: schemas.CleanupCustomerRequest,
    client: RazorpayClient = Depends(get_razorpay_client),
):
    customer_id = (payload.customer_id or "").strip()
    if not customer_id:
        raise MissingFieldsError(["customer_id"], "customer_id is required")

    cancelled = 0
    for subscription in client.list_customer_subscriptions(customer_id):
        result = attempt(
            logger,
            "Cancel customer subscription",
            client.cancel_subscription,
            subscription.get("id"),
            context={"customer_id": customer_id, "subscription_id": subscription.get("id")},
        )
        if result.ok:
            cancelled += 1

    deleted = 0
    for token in client.list_customer_tokens(customer_id):
        result = attempt(
            logger,
            "Delete customer token",
            client.delete_customer_token,
            customer_id,
            token.get("id"),
            context={"customer_id": customer_id, "token_id": token.get("id")},
        )
        if result.ok:
            deleted += 1

    logger.info(
        "Razorpay customer cleaned up customer_id=%s cancelled_subscriptions=%s deleted_tokens=%s",
        customer_id,
        cancelled,
        deleted,
    )
    return {"ok": True, "cancelled_subscriptions": cancelled, "deleted_tokens": deleted}


@router.post("/verify", response_model=schemas.VerifyResponse, response_model_exclude_none=True)
def verify_payment(
    payload: schemas.PaymentVerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    strategy: RazorpayStrategy = Depends(get_razorpay_strategy),
    settings: Settings = Depends(get_app_settings),
    db_engine: Engine = Depends(get_engine),
):
    enforce_rate_limit_or_429(
        request=request,
        settings=settings,
        db_engine=db_engine,
        scope="razorpay.verify",
        limit=settings.verify_rate_limit,
        window_seconds=settings.verify_rate_window_seconds,
        user_id=payload.user_id,
    )
    verification = build_verification_request(payload, GATEWAY_RAZORPAY)
    return PaymentVerifier(db, strategy, settings).verify(verification).to_response()


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    strategy: RazorpayStrategy = Depends(get_razorpay_strategy),
    settings: Settings = Depends(get_app_settings),
    db_engine: Engine = Depends(get_engine),
):
    enforce_rate_limit_or_429(
        request=request,
        settings=settings,
        db_engine=db_engine,
        scope="razorpay.webhook",
        limit=settings.webhook_rate_limit,
        window_seconds=settings.webhook_rate_window_seconds,
    )

    if not settings.razorpay_webhook_secret:
        raise ConfigurationError("Webhook verification is not configured")

    body = await request.body()
    signature = (request.headers.get("X-Razorpay-Signature") or "").strip()
    if not verify_webhook_signature(settings.razorpay_webhook_secret, body, signature):
        logger.warning("Razorpay webhook signature rejected")
        raise WebhookSignatureError("Invalid signature")

    try:
        event: Any = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise InvalidRequestError("Invalid webhook payload")
    if not isinstance(event, dict):
        raise InvalidRequestError("Invalid webhook payload")

    dispatcher = RazorpayWebhookDispatcher(db, strategy, settings)
    return dispatcher.dispatch(event, event_id=request.headers.get("x-razorpay-event-id"))
