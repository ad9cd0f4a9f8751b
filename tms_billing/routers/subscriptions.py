import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from tms_billing import schemas
from tms_billing.config import Settings
from tms_billing.database import get_db
from tms_billing.dependencies import enforce_rate_limit_or_429, get_app_settings, get_engine, get_gateway_factory
from tms_billing.exceptions import MissingFieldsError
from tms_billing.subscriptions import (
    GatewayFactory,
    PlanChangeOutcome,
    downgrade_subscription,
    upgrade_subscription,
)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


def _require_plan_change_fields(payload: schemas.PlanChangeRequest) -> None:
    missing = [name for name in ("user_id", "new_plan_tier") if not getattr(payload, name)]
    if missing:
        raise MissingFieldsError(missing, "user_id and new_plan_tier are required")


def _plan_change_response(outcome: PlanChangeOutcome) -> schemas.PlanChangeResponse:
    if outcome.warnings:
        logger.warning(
            "Plan change completed with warnings change_type=%s subscription_id=%s warnings=%s",
            outcome.change_type,
            outcome.old_subscription.id,
            "; ".join(outcome.warnings),
        )

    new_tier = outcome.subscription.plan_tier if outcome.subscription else "free"
    if outcome.subscription is None:
        message = "Autopay stopped. Your plan moves to free when the current period ends."
    else:
        message = f"Subscription {outcome.change_type}d to {new_tier}"

    return schemas.PlanChangeResponse(
        change_type=outcome.change_type,
        message=message,
        subscription=(
            schemas.SubscriptionResponse.model_validate(outcome.subscription) if outcome.subscription else None
        ),
        old_subscription=schemas.SubscriptionResponse.model_validate(outcome.old_subscription),
        gateway_subscription=outcome.gateway_subscription or None,
    )


def _enforce_plan_change_rate_limit(request: Request, settings: Settings, db_engine: Engine, user_id: str) -> None:
    enforce_rate_limit_or_429(
        request=request,
        settings=settings,
        db_engine=db_engine,
        scope="subscriptions.plan_change",
        limit=settings.plan_change_rate_limit,
        window_seconds=settings.plan_change_rate_window_seconds,
        user_id=user_id,
    )


@router.post("/upgrade", response_model=schemas.PlanChangeResponse)
def upgrade(
    payload: schemas.PlanChangeRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    settings: Settings = Depends(get_app_settings),
    db_engine: Engine = Depends(get_engine),
):
    _require_plan_change_fields(payload)
    _enforce_plan_change_rate_limit(request, settings, db_engine, payload.user_id)
    outcome = upgrade_subscription(
        db,
        gateway_factory,
        payload.user_id,
        payload.new_plan_tier,
        country=payload.country,
        settings=settings,
    )
    return _plan_change_response(outcome)


@router.post("/downgrade", response_model=schemas.PlanChangeResponse)
def downgrade(
    payload: schemas.PlanChangeRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    settings: Settings = Depends(get_app_settings),
    db_engine: Engine = Depends(get_engine),
):
    _require_plan_change_fields(payload)
    _enforce_plan_change_rate_limit(request, settings, db_engine, payload.user_id)
    outcome = downgrade_subscription(
        db,
        gateway_factory,
        payload.user_id,
        payload.new_plan_tier,
        country=payload.country,
        settings=settings,
    )
    return _plan_change_response(outcome)
