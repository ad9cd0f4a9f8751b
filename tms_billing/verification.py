import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from tms_billing.config import Settings
from tms_billing.gateways.base import CheckoutPayment, GatewayStrategy, VerificationOutcome
from tms_billing.mentor_payments import complete_mentor_payment, find_mentor_payment
from tms_billing.models import GATEWAY_PAYPAL, GATEWAY_RAZORPAY
from tms_billing.subscriptions import (
    ActivationRecord,
    activate_subscription,
    get_plan,
    notify_subscription_change,
    resolve_profile_id,
)
from tms_billing.utils.results import attempt

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = {GATEWAY_RAZORPAY: "INR", GATEWAY_PAYPAL: "EUR"}


@dataclass
class VerificationRequest:
    payment: CheckoutPayment
    user_id: str | None = None
    plan_id: Any | None = None
    assignment_id: int | None = None
    amount: float | None = None
    currency: str | None = None
    interval: str = "monthly"
    country: str | None = None
    tax_percentage: float | None = None
    tax_amount: float | None = None
    total_amount_with_tax: float | None = None

    @property
    def gateway(self) -> str:
        return self.payment.gateway


@dataclass
class VerificationResult:
    success: bool
    message: str
    payment_id: str | None = None
    subscription_id: str | None = None
    mentor_payment: bool = False
    already_recorded: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        # Reconciliation warnings stay in the logs; the checkout UI only sees the outcome.
        payload: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.payment_id:
            payload["payment_id"] = self.payment_id
        if self.subscription_id:
            payload["subscription_id"] = self.subscription_id
        return payload


def resolve_amount(request: VerificationRequest, plan_price: float | None) -> float:
    if request.total_amount_with_tax is not None and request.total_amount_with_tax > 0:
        return float(request.total_amount_with_tax)
    if request.amount is not None:
        return float(request.amount)
    return float(plan_price or 0)


class PaymentVerifier:
    """
    Verify a completed checkout and route it to the mentor-payment or the
    subscription bookkeeping.

    Authenticity failures raise. Once authenticity holds the money has moved,
    so bookkeeping failures are logged and returned as warnings instead.
    """

    def __init__(self, db: Session, strategy: GatewayStrategy, settings: Settings):
        self.db = db
        self.strategy = strategy
        self.settings = settings

    def verify(self, request: VerificationRequest) -> VerificationResult:
        outcome = self.strategy.verify_authenticity(request.payment)
        logger.info(
            "Payment authenticated gateway=%s payment_id=%s order_id=%s subscription_id=%s",
            outcome.gateway,
            outcome.payment_id,
            outcome.order_id,
            outcome.subscription_id,
        )

        mentor_result = self._complete_mentor_payment(request, outcome)
        if mentor_result is not None:
            return mentor_result

        if request.user_id and request.plan_id not in (None, ""):
            return self._record_subscription_payment(request, outcome)

        return VerificationResult(success=True, message="Payment verified", payment_id=outcome.payment_id)

    def _complete_mentor_payment(
        self,
        request: VerificationRequest,
        outcome: VerificationOutcome,
    ) -> VerificationResult | None:
        if outcome.subscription_id:
            return None

        mentor_payment = find_mentor_payment(
            self.db,
            outcome.gateway,
            order_id=outcome.order_id,
            assignment_id=request.assignment_id,
        )
        if mentor_payment is None:
            return None

        result = VerificationResult(
            success=True,
            message="Mentor payment verified and completed",
            payment_id=outcome.payment_id,
            mentor_payment=True,
        )
        completion = attempt(
            logger,
            "Complete mentor payment",
            complete_mentor_payment,
            self.db,
            mentor_payment,
            outcome.payment_id,
            outcome.gateway,
            context={
                "mentor_payment_id": mentor_payment.id,
                "assignment_id": mentor_payment.assignment_id,
                "payment_id": outcome.payment_id,
            },
        )
        if not completion.ok:
            self.db.rollback()
            result.warnings.append(f"Mentor payment could not be marked completed: {completion.error}")
        return result

    def _record_subscription_payment(
        self,
        request: VerificationRequest,
        outcome: VerificationOutcome,
    ) -> VerificationResult:
        result = VerificationResult(
            success=True,
            message="Payment verified",
            payment_id=outcome.payment_id,
        )

        plan = get_plan(self.db, request.plan_id)
        if plan is None:
            logger.warning(
                "Verified payment references unknown plan plan_id=%s payment_id=%s user_id=%s",
                request.plan_id,
                outcome.payment_id,
                request.user_id,
            )
        plan_tier = plan.plan_tier if plan and plan.plan_tier else "free"
        amount = resolve_amount(request, plan.price if plan else None)
        currency = (
            request.currency
            or (plan.currency if plan else None)
            or DEFAULT_CURRENCY.get(outcome.gateway, "INR")
        ).upper()
        metadata = {
            "tax_percentage": request.tax_percentage,
            "tax_amount": request.tax_amount,
            "total_amount_with_tax": request.total_amount_with_tax,
        }
        if outcome.signature_format:
            metadata["signature_format"] = outcome.signature_format

        def _persist() -> ActivationRecord:
            profile_id = resolve_profile_id(self.db, request.user_id, plan)
            return activate_subscription(
                self.db,
                profile_id=profile_id,
                plan=plan,
                plan_tier=plan_tier,
                gateway=outcome.gateway,
                payment_id=outcome.payment_id,
                amount=amount,
                currency=currency,
                interval=request.interval or "monthly",
                order_id=outcome.order_id,
                gateway_subscription_id=outcome.subscription_id,
                signature=outcome.signature,
                country=request.country,
                is_autopay=bool(outcome.subscription_id),
                metadata=metadata,
            )

        persisted = attempt(
            logger,
            "Persist verified subscription payment",
            _persist,
            context={
                "gateway": outcome.gateway,
                "payment_id": outcome.payment_id,
                "user_id": request.user_id,
                "plan_id": request.plan_id,
            },
        )
        if not persisted.ok:
            self.db.rollback()
            result.warnings.append(
                f"Payment {outcome.payment_id} verified but not recorded, manual reconciliation needed: {persisted.error}"
            )
            return result

        record = persisted.value
        if record.subscription is not None:
            result.subscription_id = record.subscription.id
        if not record.created:
            result.already_recorded = True
            result.message = "Payment already verified"
            return result

        notify_subscription_change(self.db, self.settings, record.subscription, "subscription_activated")
        return result


def detect_gateway(payload: Any) -> str | None:
    provider = (getattr(payload, "provider", None) or "").strip().lower()
    if provider in DEFAULT_CURRENCY:
        return provider
    if getattr(payload, "razorpay_payment_id", None) or getattr(payload, "razorpay_signature", None):
        return GATEWAY_RAZORPAY
    if getattr(payload, "paypal_order_id", None) or getattr(payload, "paypal_subscription_id", None):
        return GATEWAY_PAYPAL
    return None


def build_verification_request(payload: Any, gateway: str) -> VerificationRequest:
    """Map a verify request body onto the gateway-neutral request."""
    if gateway == GATEWAY_PAYPAL:
        payment = CheckoutPayment(
            gateway=GATEWAY_PAYPAL,
            order_id=(payload.paypal_order_id or "").strip() or None,
            subscription_id=(payload.paypal_subscription_id or "").strip() or None,
            payer_id=payload.paypal_payer_id,
        )
    else:
        payment = CheckoutPayment(
            gateway=GATEWAY_RAZORPAY,
            payment_id=(payload.razorpay_payment_id or "").strip() or None,
            order_id=(payload.razorpay_order_id or "").strip() or None,
            subscription_id=(payload.razorpay_subscription_id or "").strip() or None,
            signature=(payload.razorpay_signature or "").strip() or None,
        )
    return VerificationRequest(
        payment=payment,
        user_id=payload.user_id,
        plan_id=payload.plan_id,
        assignment_id=payload.assignment_id,
        amount=payload.amount,
        currency=payload.currency,
        interval=payload.interval or "monthly",
        country=payload.country,
        tax_percentage=payload.tax_percentage,
        tax_amount=payload.tax_amount,
        total_amount_with_tax=payload.total_amount_with_tax,
    )
