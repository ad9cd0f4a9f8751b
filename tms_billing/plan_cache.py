import logging
import time
from datetime import timedelta
from typing import Any, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tms_billing.exceptions import GatewayError, InvalidRequestError, PlanCreationError, PlanCreationInProgressError
from tms_billing.models import GATEWAY_RAZORPAY, GatewayPlanCache, utcnow

logger = logging.getLogger(__name__)

PLAN_PERIODS = {"daily", "weekly", "monthly", "yearly"}

# Marks terms whose gateway plan is still being created by another request.
PENDING_PLAN_ID = ""
CLAIM_POLL_ATTEMPTS = 20
CLAIM_POLL_SECONDS = 0.25
CLAIM_STALE_AFTER = timedelta(seconds=60)


class PlanCreatingClient(Protocol):
    def create_plan(
        self,
        amount_minor: int,
        currency: str,
        period: str,
        interval_count: int,
        name: str,
    ) -> dict[str, Any]:
        ...


def _normalize_terms(amount_minor: int, currency: str, period: str, interval_count: int) -> tuple[int, str, str, int]:
    try:
        amount = int(amount_minor)
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError("Invalid amount") from exc
    if amount <= 0:
        raise InvalidRequestError("Invalid amount")

    normalized_period = (period or "").strip().lower()
    if normalized_period not in PLAN_PERIODS:
        raise InvalidRequestError(f"Invalid billing period: {period}")

    try:
        count = int(interval_count or 1)
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError("Invalid interval count") from exc
    if count <= 0:
        raise InvalidRequestError("Invalid interval count")

    return amount, (currency or "INR").strip().upper(), normalized_period, count


def find_cached_plan(
    db: Session,
    amount_minor: int,
    currency: str,
    period: str,
    interval_count: int = 1,
    gateway: str = GATEWAY_RAZORPAY,
) -> GatewayPlanCache | None:
    return (
        db.query(GatewayPlanCache)
        .filter(
            GatewayPlanCache.gateway == gateway,
            GatewayPlanCache.amount_paise == amount_minor,
            GatewayPlanCache.currency == currency,
            GatewayPlanCache.period == period,
            GatewayPlanCache.interval_count == interval_count,
        )
        .first()
    )


def _claim_terms(db: Session, gateway: str, amount: int, currency: str, period: str, interval_count: int, name: str) -> GatewayPlanCache | None:
    claim = GatewayPlanCache(
        gateway=gateway,
        plan_id=PENDING_PLAN_ID,
        amount_paise=amount,
        currency=currency,
        period=period,
        interval_count=interval_count,
        name=name,
    )
    try:
        with db.begin_nested():
            db.add(claim)
    except IntegrityError:
        return None
    db.commit()
    return claim


def _take_over_stale_claim(db: Session, row: GatewayPlanCache) -> bool:
    # Conditional update so only one waiter inherits a claim whose creator died.
    claimed_at = row.created_at
    taken = (
        db.query(GatewayPlanCache)
        .filter(
            GatewayPlanCache.id == row.id,
            GatewayPlanCache.plan_id == PENDING_PLAN_ID,
            GatewayPlanCache.created_at == claimed_at,
        )
        .update({GatewayPlanCache.created_at: utcnow()}, synchronize_session="fetch")
    )
    db.commit()
    return taken == 1


def _wait_for_plan(db: Session, amount: int, currency: str, period: str, interval_count: int, gateway: str) -> GatewayPlanCache | None:
    """Poll until the claiming request stores its plan id. None means the claim was released."""
    for _ in range(CLAIM_POLL_ATTEMPTS):
        db.expire_all()
        row = find_cached_plan(db, amount, currency, period, interval_count, gateway)
        if row is None or row.plan_id != PENDING_PLAN_ID:
            return row
        if row.created_at and utcnow() - row.created_at > CLAIM_STALE_AFTER:
            return row
        time.sleep(CLAIM_POLL_SECONDS)
    raise PlanCreationInProgressError(gateway, "Plan creation already in progress for these terms, retry shortly")


def get_or_create_plan(
    db: Session,
    client: PlanCreatingClient,
    amount_minor: int,
    currency: str,
    period: str,
    interval_count: int = 1,
    name: str = "Subscription Plan",
    gateway: str = GATEWAY_RAZORPAY,
) -> str:
    """
    Return the gateway plan id for these pricing terms, creating it once.

    The terms are claimed with a pending row before the gateway is called, so
    concurrent callers wait for the claimant's plan instead of creating their
    own. A failed creation releases the claim.
    """
    amount, currency, period, interval_count = _normalize_terms(amount_minor, currency, period, interval_count)

    claim = None
    while claim is None:
        cached = find_cached_plan(db, amount, currency, period, interval_count, gateway)
        if cached is None:
            claim = _claim_terms(db, gateway, amount, currency, period, interval_count, name)
            continue
        if cached.plan_id != PENDING_PLAN_ID:
            return cached.plan_id

        settled = _wait_for_plan(db, amount, currency, period, interval_count, gateway)
        if settled is None:
            continue
        if settled.plan_id != PENDING_PLAN_ID:
            return settled.plan_id
        if _take_over_stale_claim(db, settled):
            logger.warning(
                "Took over stale plan claim gateway=%s amount=%s currency=%s period=%s interval=%s",
                gateway,
                amount,
                currency,
                period,
                interval_count,
            )
            claim = settled

    try:
        plan = client.create_plan(amount, currency, period, interval_count, name)
        plan_id = str(plan.get("id") or "").strip()
        if not plan_id:
            raise PlanCreationError(gateway, "Gateway did not return a plan id", body=plan)
    except GatewayError as exc:
        db.delete(claim)
        db.commit()
        if isinstance(exc, PlanCreationError):
            raise
        logger.warning(
            "Gateway plan creation failed gateway=%s amount=%s currency=%s period=%s interval=%s error=%s",
            gateway,
            amount,
            currency,
            period,
            interval_count,
            exc.detail,
        )
        raise PlanCreationError(gateway, f"Failed to create plan: {exc.detail}", exc.http_status, exc.body) from exc

    claim.plan_id = plan_id
    db.commit()
    logger.info(
        "Cached gateway plan gateway=%s plan_id=%s amount=%s currency=%s period=%s interval=%s",
        gateway,
        plan_id,
        amount,
        currency,
        period,
        interval_count,
    )
    return plan_id
