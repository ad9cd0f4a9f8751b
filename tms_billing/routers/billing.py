import logging
from datetime import timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from tms_billing import schemas
from tms_billing.config import Settings
from tms_billing.database import get_db
from tms_billing.dependencies import enforce_rate_limit_or_429, get_app_settings, get_engine, get_gateway_factory
from tms_billing.exceptions import InvalidRequestError, MissingFieldsError
from tms_billing.models import GATEWAY_RAZORPAY
from tms_billing.subscriptions import GatewayFactory, record_trial_subscription, subscription_status
from tms_billing.verification import PaymentVerifier, build_verification_request, detect_gateway

router = APIRouter(tags=["billing"])
logger = logging.getLogger(__name__)


@router.post("/api/payment/verify", response_model=schemas.VerifyResponse, response_model_exclude_none=True)
def verify_payment(
    payload: schemas.PaymentVerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    settings: Settings = Depends(get_app_settings),
    db_engine: Engine = Depends(get_engine),
):
    """Gateway-neutral verification; the gateway comes from `provider` or the ids present."""
    gateway = detect_gateway(payload)
    if gateway is None:
        raise InvalidRequestError("Unable to determine payment provider")

    enforce_rate_limit_or_429(
        request=request,
        settings=settings,
        db_engine=db_engine,
        scope=f"{gateway}.verify",
        limit=settings.verify_rate_limit,
        window_seconds=settings.verify_rate_window_seconds,
        user_id=payload.user_id,
    )
    verification = build_verification_request(payload, gateway)
    return PaymentVerifier(db, gateway_factory(gateway), settings).verify(verification).to_response()


@router.get("/api/billing/subscription-status", response_model=schemas.SubscriptionStatusResponse)
def get_subscription_status(
    user_id: str = Query(...),
    db: Session = Depends(get_db),
):
    return subscription_status(db, user_id)


@router.post("/api/billing/record-subscription", response_model=schemas.SubscriptionResponse)
def record_subscription(
    payload: schemas.RecordSubscriptionRequest,
    db: Session = Depends(get_db),
):
    missing = [name for name in ("user_id", "razorpay_subscription_id") if not getattr(payload, name)]
    if missing:
        raise MissingFieldsError(missing, "user_id and razorpay_subscription_id are required")

    interval = "yearly" if payload.plan_type == "yearly" else "monthly"
    trial_end = payload.trial_end
    if trial_end is not None and trial_end.tzinfo is not None:
        trial_end = trial_end.astimezone(timezone.utc).replace(tzinfo=None)
    return record_trial_subscription(
        db,
        user_id=payload.user_id,
        gateway_subscription_id=payload.razorpay_subscription_id,
        interval=interval,
        trial_end=trial_end,
        gateway=GATEWAY_RAZORPAY,
    )
