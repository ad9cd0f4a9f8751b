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
    get_paypal_client,
    get_paypal_strategy,
)
from tms_billing.exceptions import InvalidRequestError, MissingFieldsError, WebhookSignatureError
from tms_billing.gateways.base import to_minor_units
from tms_billing.gateways.paypal import PayPalClient, PayPalStrategy
from tms_billing.models import GATEWAY_PAYPAL
from tms_billing.plan_cache import get_or_create_plan
from tms_billing.verification import PaymentVerifier, build_verification_request
from tms_billing.webhooks import PayPalWebhookDispatcher, verify_paypal_webhook

router = APIRouter(prefix="/api/paypal", tags=["paypal"])
logger = logging.getLogger(__name__)


def _enforce_verify_rate_limit(request: Request, settings: Settings, db_engine: Engine, user_id) -> None:
    enforce_rate_limit_or_429(
        request=request,
        settings=settings,
        db_engine=db_engine,
        scope="paypal.verify",
        limit=settings.verify_rate_limit,
        window_seconds=settings.verify_rate_window_seconds,
        user_id=user_id,
    )


@router.post("/create-order")
def create_order(
    payload: schemas.PayPalCreateOrderRequest,
    client: PayPalClient = Depends(get_paypal_client),
):
    if payload.amount is None or payload.amount <= 0:
        raise InvalidRequestError("Invalid amount")

    custom_id = None
    if payload.assignment_id is not None:
        custom_id = f"assignment:{payload.assignment_id}"
    elif payload.user_id:
        custom_id = payload.user_id

    order = client.create_order(
        payload.amount,
        (payload.currency or "EUR").upper(),
        custom_id=custom_id,
        description=payload.description,
    )
    logger.info("PayPal order created order_id=%s amount=%s", order.get("id"), payload.amount)
    return {"orderId": order.get("id")}


@router.post("/create-subscription")
def create_subscription(
    payload: schemas.PayPalCreateSubscriptionRequest,
    db: Session = Depends(get_db),
    client: PayPalClient = Depends(get_paypal_client),
):
    if payload.final_amount is None or payload.final_amount <= 0:
        raise InvalidRequestError("Invalid amount")

    plan_id = get_or_create_plan(
        db,
        client,
        to_minor_units(payload.final_amount),
        payload.currency,
        payload.interval,
        name=payload.plan_name,
        gateway=GATEWAY_PAYPAL,
    )
    subscription = client.create_subscription(plan_id, user_id=payload.user_id)
    logger.info(
        "PayPal subscription created subscription_id=%s plan_id=%s user_id=%s",
        subscription.get("id"),
        plan_id,
        payload.user_id,
    )
    return {"subscriptionId": subscription.get("id"), "status": subscription.get("status")}


@router.post("/verify", response_model=schemas.VerifyResponse, response_model_exclude_none=True)
def verify_order(
    payload: schemas.PaymentVerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    strategy: PayPalStrategy = Depends(get_paypal_strategy),
    settings: Settings = Depends(get_app_settings),
    db_engine: Engine = Depends(get_engine),
):
    _enforce_verify_rate_limit(request, settings, db_engine, payload.user_id)
    verification = build_verification_request(payload, GATEWAY_PAYPAL)
    return PaymentVerifier(db, strategy, settings).verify(verification).to_response()


@router.post("/verify-subscription", response_model=schemas.VerifyResponse, response_model_exclude_none=True)
def verify_subscription(
    payload: schemas.PaymentVerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    strategy: PayPalStrategy = Depends(get_paypal_strategy),
    settings: Settings = Depends(get_app_settings),
    db_engine: Engine = Depends(get_engine),
):
    if not payload.paypal_subscription_id:
        raise MissingFieldsError(["paypal_subscription_id"], "Missing PayPal subscription ID")
    _enforce_verify_rate_limit(request, settings, db_engine, payload.user_id)
    verification = build_verification_request(payload, GATEWAY_PAYPAL)
    return PaymentVerifier(db, strategy, settings).verify(verification).to_response()


@router.post("/webhook")
async def paypal_webhook(
    request: Request,
    db: Session = Depends(get_db),
    strategy: PayPalStrategy = Depends(get_paypal_strategy),
    settings: Settings = Depends(get_app_settings),
    db_engine: Engine = Depends(get_engine),
):
    enforce_rate_limit_or_429(
        request=request,
        settings=settings,
        db_engine=db_engine,
        scope="paypal.webhook",
        limit=settings.webhook_rate_limit,
        window_seconds=settings.webhook_rate_window_seconds,
    )

    body = await request.body()
    try:
        event: Any = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise InvalidRequestError("Invalid webhook payload")
    if not isinstance(event, dict):
        raise InvalidRequestError("Invalid webhook payload")

    if not verify_paypal_webhook(strategy.client, request.headers, event):
        logger.warning("PayPal webhook signature rejected event_id=%s", event.get("id"))
        raise WebhookSignatureError("Invalid signature")

    return PayPalWebhookDispatcher(db, strategy, settings).dispatch(event)
