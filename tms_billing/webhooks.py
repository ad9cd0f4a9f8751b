import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tms_billing.config import Settings
from tms_billing.exceptions import BillingError
from tms_billing.gateways.base import GatewayStrategy
from tms_billing.gateways.razorpay import looks_like_razorpay_id
from tms_billing.mentor_payments import MENTOR_PAYMENT_COMPLETED, complete_mentor_payment, find_mentor_payment
from tms_billing.models import (
    GATEWAY_PAYPAL,
    GATEWAY_RAZORPAY,
    MANDATE_ACTIVE,
    PaymentTransaction,
    UserProfile,
    UserSubscription,
    WebhookEvent,
    utcnow,
)
from tms_billing.subscriptions import (
    apply_mandate_cancellation,
    find_subscription_by_gateway_reference,
    find_transaction,
    mark_cancelled,
    mark_past_due,
    notify_subscription_change,
    record_failed_payment,
    record_recurring_charge,
)
from tms_billing.utils.results import attempt

logger = logging.getLogger(__name__)

EVENT_RECEIVED = "received"
EVENT_PROCESSED = "processed"
EVENT_FAILED = "failed"


def _ok(status: str = "processed", **extra: Any) -> dict[str, Any]:
    return {"ok": True, "status": status, **extra}


def _ignored(reason: str, **extra: Any) -> dict[str, Any]:
    return {"ok": True, "status": "ignored", "reason": reason, **extra}


def _from_timestamp(raw: Any) -> datetime | None:
    try:
        timestamp = int(raw or 0)
    except (TypeError, ValueError):
        return None
    if timestamp <= 0:
        return None
    return datetime.fromtimestamp(timestamp, timezone.utc).replace(tzinfo=None)


def _from_iso(raw: Any) -> datetime | None:
    value = str(raw or "").strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _entity(event: dict[str, Any], name: str) -> dict[str, Any]:
    return ((event.get("payload") or {}).get(name) or {}).get("entity") or {}


class WebhookDispatcher:
    """
    Route one verified gateway event to its handler.

    Every delivery is claimed in `webhook_events` first; an event id that was
    already processed is acknowledged without touching state again.
    """

    gateway = ""

    def __init__(self, db: Session, strategy: GatewayStrategy, settings: Settings):
        self.db = db
        self.strategy = strategy
        self.settings = settings
        self.handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {}

    def event_type(self, event: dict[str, Any]) -> str:
        raise NotImplementedError

    def event_id(self, event: dict[str, Any]) -> str | None:
        raise NotImplementedError

    def _claim(self, event_id: str, event_type: str) -> WebhookEvent | None:
        existing = (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.gateway == self.gateway, WebhookEvent.event_id == event_id)
            .first()
        )
        if existing is not None:
            if existing.status == EVENT_PROCESSED:
                return None
            existing.status = EVENT_RECEIVED
            existing.received_at = utcnow()
            self.db.commit()
            return existing

        row = WebhookEvent(gateway=self.gateway, event_id=event_id, event_type=event_type, status=EVENT_RECEIVED)
        try:
            with self.db.begin_nested():
                self.db.add(row)
        except IntegrityError:
            # A concurrent delivery of the same event claimed it first.
            return None
        self.db.commit()
        return row

    def _finish(self, row: WebhookEvent, status: str) -> None:
        row.status = status
        row.processed_at = utcnow()
        self.db.commit()

    def dispatch(self, event: dict[str, Any], event_id: str | None = None) -> dict[str, Any]:
        event_type = self.event_type(event)
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring webhook gateway=%s event=%s", self.gateway, event_type)
            return {"ok": True, "ignored": event_type}

        event_id = (event_id or "").strip() or self.event_id(event)
        row = None
        if event_id:
            row = self._claim(event_id, event_type)
            if row is None:
                logger.info("Duplicate webhook gateway=%s event=%s event_id=%s", self.gateway, event_type, event_id)
                return _ok("duplicate", event=event_type)

        try:
            result = handler(event)
        except Exception:
            self.db.rollback()
            logger.exception("Webhook handler failed gateway=%s event=%s event_id=%s", self.gateway, event_type, event_id)
            if row is not None:
                self._finish(row, EVENT_FAILED)
            raise

        if row is not None:
            self._finish(row, EVENT_PROCESSED)
        logger.info(
            "Webhook handled gateway=%s event=%s event_id=%s status=%s",
            self.gateway,
            event_type,
            event_id,
            result.get("status"),
        )
        return {**result, "event": event_type}

    def _apply_cancellation(self, subscription: UserSubscription, reason: str) -> dict[str, Any]:
        # Cancelled while autopay was still on means the payer or bank revoked it: keep the paid period.
        if subscription.autopay_enabled:
            apply_mandate_cancellation(self.db, subscription, reason, initiated_by=self.gateway)
            notify_subscription_change(self.db, self.settings, subscription, "autopay_stopped")
            return _ok("autopay_cancelled", subscription_id=subscription.id)
        changed = mark_cancelled(self.db, subscription, reason)
        return _ok("cancelled" if changed else "unchanged", subscription_id=subscription.id)

    def _apply_failure(
        self,
        subscription: UserSubscription,
        payment_id: str | None,
        amount: float,
        currency: str | None,
        reason: str,
    ) -> dict[str, Any]:
        if payment_id:
            record_failed_payment(
                self.db,
                gateway=self.gateway,
                payment_id=payment_id,
                user_id=subscription.user_id,
                subscription=subscription,
                amount=amount,
                currency=currency,
                reason=reason,
            )
        changed = mark_past_due(self.db, subscription, reason)
        if changed:
            notify_subscription_change(self.db, self.settings, subscription, "payment_failed")
        return _ok("past_due" if changed else "unchanged", subscription_id=subscription.id)

    def _complete_mentor_or_transaction(
        self,
        order_id: str | None,
        payment_id: str | None,
    ) -> dict[str, Any]:
        mentor_payment = find_mentor_payment(self.db, self.gateway, order_id=order_id, payment_id=payment_id)
        if mentor_payment is not None:
            complete_mentor_payment(self.db, mentor_payment, payment_id, self.gateway)
            return _ok("mentor_payment_completed", mentor_payment_id=mentor_payment.id)

        transaction = find_transaction(self.db, self.gateway, payment_id)
        if transaction is None and order_id:
            transaction = (
                self.db.query(PaymentTransaction)
                .filter(
                    PaymentTransaction.payment_gateway == self.gateway,
                    PaymentTransaction.gateway_order_id == order_id,
                    PaymentTransaction.status == "pending",
                )
                .first()
            )
        if transaction is None:
            return _ignored("transaction_not_found")
        if transaction.status == "success":
            return _ok("unchanged", transaction_id=transaction.id)
        if transaction.status == "pending":
            transaction.status = "success"
            if payment_id and not transaction.gateway_payment_id:
                transaction.gateway_payment_id = payment_id
            self.db.commit()
            return _ok("transaction_succeeded", transaction_id=transaction.id)
        return _ignored(f"transaction_{transaction.status}", transaction_id=transaction.id)

    def _mark_refunded(self, payment_id: str | None) -> dict[str, Any]:
        transaction = find_transaction(self.db, self.gateway, payment_id)
        if transaction is None:
            return _ignored("transaction_not_found")
        if transaction.status != "refunded":
            transaction.status = "refunded"
            self.db.commit()
        return _ok("refunded", transaction_id=transaction.id)


class RazorpayWebhookDispatcher(WebhookDispatcher):
    gateway = GATEWAY_RAZORPAY

    def __init__(self, db: Session, strategy: GatewayStrategy, settings: Settings):
        super().__init__(db, strategy, settings)
        self.handlers = {
            "payment.captured": self._payment_captured,
            "payment.failed": self._payment_failed,
            "payment.refunded": self._payment_refunded,
            "refund.processed": self._payment_refunded,
            "subscription.activated": self._subscription_activated,
            "subscription.charged": self._subscription_charged,
            "subscription.paused": self._subscription_paused,
            "subscription.halted": self._subscription_halted,
            "subscription.cancelled": self._subscription_cancelled,
            "subscription.completed": self._subscription_completed,
        }

    def event_type(self, event: dict[str, Any]) -> str:
        return str(event.get("event") or "").strip()

    def event_id(self, event: dict[str, Any]) -> str | None:
        event_type = self.event_type(event)
        payment_id = _entity(event, "payment").get("id")
        subscription_id = _entity(event, "subscription").get("id")
        refund_id = _entity(event, "refund").get("id")
        reference = refund_id or payment_id or subscription_id
        if not reference:
            return None
        suffix = event.get("created_at") if event_type.startswith("subscription.") and not payment_id else ""
        return ":".join(str(part) for part in (event_type, reference, suffix) if part)

    def _subscription_for_event(self, event: dict[str, Any]) -> UserSubscription | None:
        subscription_entity = _entity(event, "subscription")
        subscription_id = subscription_entity.get("id") or _entity(event, "payment").get("subscription_id")
        return find_subscription_by_gateway_reference(self.db, self.gateway, subscription_id)

    def _payment_captured(self, event: dict[str, Any]) -> dict[str, Any]:
        payment = _entity(event, "payment")
        payment_id = str(payment.get("id") or "").strip()
        if not looks_like_razorpay_id(payment_id, "pay"):
            return _ignored("invalid_payment_id")
        order_id = str(payment.get("order_id") or "").strip() or None
        return self._complete_mentor_or_transaction(order_id, payment_id)

    def _payment_failed(self, event: dict[str, Any]) -> dict[str, Any]:
        payment = _entity(event, "payment")
        payment_id = str(payment.get("id") or "").strip() or None
        reason = str(payment.get("error_description") or payment.get("error_code") or "payment_failed")
        amount = int(payment.get("amount") or 0) / 100

        subscription = find_subscription_by_gateway_reference(self.db, self.gateway, payment.get("subscription_id"))
        if subscription is not None:
            return self._apply_failure(subscription, payment_id, amount, payment.get("currency"), reason)

        transaction = find_transaction(self.db, self.gateway, payment_id)
        if transaction is None:
            return _ignored("subscription_not_found")
        record_failed_payment(
            self.db,
            gateway=self.gateway,
            payment_id=payment_id,
            user_id=transaction.user_id,
            reason=reason,
        )
        return _ok("transaction_failed", transaction_id=transaction.id)

    def _payment_refunded(self, event: dict[str, Any]) -> dict[str, Any]:
        refund = _entity(event, "refund")
        payment_id = refund.get("payment_id") or _entity(event, "payment").get("id")
        return self._mark_refunded(str(payment_id or "").strip() or None)

    def _subscription_activated(self, event: dict[str, Any]) -> dict[str, Any]:
        entity = _entity(event, "subscription")
        subscription = self._subscription_for_event(event)
        customer_id = str(entity.get("customer_id") or "").strip()

        user_id = subscription.user_id if subscription else (entity.get("notes") or {}).get("user_id")
        if customer_id and user_id:
            profile = self.db.query(UserProfile).filter(UserProfile.id == user_id).first()
            if profile is not None and profile.razorpay_customer_id != customer_id:
                profile.razorpay_customer_id = customer_id

        if subscription is None:
            self.db.commit()
            return _ignored("subscription_not_found")

        if subscription.autopay_enabled:
            subscription.mandate_status = MANDATE_ACTIVE
            if not subscription.mandate_created_at:
                subscription.mandate_created_at = utcnow()
            # The recurring token backs the autopay mandate.
            token_id = str(_entity(event, "payment").get("token_id") or "").strip()
            if token_id:
                subscription.razorpay_mandate_id = token_id
        self.db.commit()
        return _ok("activated", subscription_id=subscription.id)

    def _authoritative_period(self, subscription_id: str, entity: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
        fetched = attempt(
            logger,
            "Fetch subscription period",
            self.strategy.fetch_status,
            subscription_id,
            context={"gateway": self.gateway, "subscription_id": subscription_id},
        )
        source = fetched.value if fetched.ok and fetched.value else entity
        return _from_timestamp(source.get("current_start")), _from_timestamp(source.get("current_end"))

    def _subscription_charged(self, event: dict[str, Any]) -> dict[str, Any]:
        entity = _entity(event, "subscription")
        payment = _entity(event, "payment")
        subscription_id = str(entity.get("id") or payment.get("subscription_id") or "").strip()
        payment_id = str(payment.get("id") or "").strip()
        if not looks_like_razorpay_id(subscription_id, "sub") or not looks_like_razorpay_id(payment_id, "pay"):
            return _ignored("invalid_ids")

        if find_transaction(self.db, self.gateway, payment_id) is not None:
            return _ok("duplicate_payment", payment_id=payment_id)

        subscription = find_subscription_by_gateway_reference(self.db, self.gateway, subscription_id)
        if subscription is None:
            logger.warning(
                "Charge for unknown subscription subscription_id=%s payment_id=%s",
                subscription_id,
                payment_id,
            )
            return _ignored("subscription_not_found")

        if subscription.is_in_trial:
            subscription.is_in_trial = False

        period_start, period_end = self._authoritative_period(subscription_id, entity)
        cycle = record_recurring_charge(
            self.db,
            subscription,
            gateway=self.gateway,
            payment_id=payment_id,
            amount=int(payment.get("amount") or 0) / 100,
            currency=payment.get("currency"),
            period_start=period_start,
            period_end=period_end,
            order_id=payment.get("order_id") or subscription_id,
            metadata={"invoice_id": payment.get("invoice_id")} if payment.get("invoice_id") else None,
        )
        if cycle is None:
            return _ok("duplicate_payment", payment_id=payment_id)
        return _ok("charged", subscription_id=subscription.id, cycle_number=cycle.cycle_number)

    def _subscription_paused(self, event: dict[str, Any]) -> dict[str, Any]:
        subscription = self._subscription_for_event(event)
        if subscription is None:
            return _ignored("subscription_not_found")
        changed = apply_mandate_cancellation(self.db, subscription, "mandate_paused", initiated_by=self.gateway)
        if changed:
            notify_subscription_change(self.db, self.settings, subscription, "autopay_stopped")
        return _ok("autopay_cancelled" if changed else "unchanged", subscription_id=subscription.id)

    def _subscription_halted(self, event: dict[str, Any]) -> dict[str, Any]:
        subscription = self._subscription_for_event(event)
        if subscription is None:
            return _ignored("subscription_not_found")
        return self._apply_failure(subscription, None, 0, None, "subscription_halted")

    def _subscription_cancelled(self, event: dict[str, Any]) -> dict[str, Any]:
        subscription = self._subscription_for_event(event)
        if subscription is None:
            return _ignored("subscription_not_found")
        return self._apply_cancellation(subscription, "gateway_cancelled")

    def _subscription_completed(self, event: dict[str, Any]) -> dict[str, Any]:
        subscription = self._subscription_for_event(event)
        if subscription is None:
            return _ignored("subscription_not_found")
        changed = apply_mandate_cancellation(self.db, subscription, "subscription_completed", initiated_by=self.gateway)
        return _ok("completed" if changed else "unchanged", subscription_id=subscription.id)


def _paypal_amount(resource: dict[str, Any]) -> tuple[float, str | None]:
    amount = resource.get("amount") or {}
    raw_value = amount.get("value", amount.get("total"))
    try:
        value = float(raw_value or 0)
    except (TypeError, ValueError):
        value = 0.0
    return value, amount.get("currency_code") or amount.get("currency")


def _paypal_capture_id_from_links(resource: dict[str, Any]) -> str | None:
    for link in resource.get("links") or []:
        href = str((link or {}).get("href") or "")
        if (link or {}).get("rel") == "up" and "/captures/" in href:
            return href.rstrip("/").rsplit("/", 1)[-1]
    return None


class PayPalWebhookDispatcher(WebhookDispatcher):
    gateway = GATEWAY_PAYPAL

    def __init__(self, db: Session, strategy: GatewayStrategy, settings: Settings):
        super().__init__(db, strategy, settings)
        self.handlers = {
            "PAYMENT.CAPTURE.COMPLETED": self._capture_completed,
            "PAYMENT.CAPTURE.DENIED": self._capture_denied,
            "PAYMENT.CAPTURE.REFUNDED": self._capture_refunded,
            "PAYMENT.SALE.COMPLETED": self._sale_completed,
            "BILLING.SUBSCRIPTION.ACTIVATED": self._subscription_activated,
            "BILLING.SUBSCRIPTION.SUSPENDED": self._subscription_suspended,
            "BILLING.SUBSCRIPTION.CANCELLED": self._subscription_cancelled,
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED": self._subscription_payment_failed,
        }

    def event_type(self, event: dict[str, Any]) -> str:
        return str(event.get("event_type") or "").strip()

    def event_id(self, event: dict[str, Any]) -> str | None:
        return str(event.get("id") or "").strip() or None

    @staticmethod
    def _resource(event: dict[str, Any]) -> dict[str, Any]:
        return event.get("resource") or {}

    def _subscription_for_resource(self, resource: dict[str, Any]) -> UserSubscription | None:
        return find_subscription_by_gateway_reference(self.db, self.gateway, resource.get("id"))

    def _capture_completed(self, event: dict[str, Any]) -> dict[str, Any]:
        resource = self._resource(event)
        capture_id = str(resource.get("id") or "").strip() or None
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        order_id = str(related.get("order_id") or "").strip() or None
        return self._complete_mentor_or_transaction(order_id, capture_id)

    def _capture_denied(self, event: dict[str, Any]) -> dict[str, Any]:
        resource = self._resource(event)
        capture_id = str(resource.get("id") or "").strip() or None
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        order_id = str(related.get("order_id") or "").strip() or None

        mentor_payment = find_mentor_payment(self.db, self.gateway, order_id=order_id)
        if mentor_payment is not None and mentor_payment.payment_status != MENTOR_PAYMENT_COMPLETED:
            mentor_payment.payment_status = "failed"
            self.db.commit()
            return _ok("mentor_payment_failed", mentor_payment_id=mentor_payment.id)

        transaction = find_transaction(self.db, self.gateway, capture_id)
        if transaction is None:
            return _ignored("transaction_not_found")
        record_failed_payment(
            self.db,
            gateway=self.gateway,
            payment_id=capture_id,
            user_id=transaction.user_id,
            reason="capture_denied",
        )
        return _ok("transaction_failed", transaction_id=transaction.id)

    def _capture_refunded(self, event: dict[str, Any]) -> dict[str, Any]:
        return self._mark_refunded(_paypal_capture_id_from_links(self._resource(event)))

    def _sale_completed(self, event: dict[str, Any]) -> dict[str, Any]:
        resource = self._resource(event)
        sale_id = str(resource.get("id") or "").strip()
        subscription_id = str(resource.get("billing_agreement_id") or "").strip()
        if not sale_id or not subscription_id:
            return _ignored("not_a_subscription_sale")

        if find_transaction(self.db, self.gateway, sale_id) is not None:
            return _ok("duplicate_payment", payment_id=sale_id)

        subscription = find_subscription_by_gateway_reference(self.db, self.gateway, subscription_id)
        if subscription is None:
            return _ignored("subscription_not_found")

        # The first sale pays for the cycle recorded at verification, which only knew the subscription id.
        initial = find_transaction(self.db, self.gateway, subscription_id)
        if initial is not None and initial.subscription_id == subscription.id and subscription.billing_cycle_count == 1:
            initial.gateway_payment_id = sale_id
            self.db.commit()
            return _ok("initial_payment_reconciled", subscription_id=subscription.id, payment_id=sale_id)

        amount, currency = _paypal_amount(resource)
        period_start, period_end = self._authoritative_period(subscription_id)
        cycle = record_recurring_charge(
            self.db,
            subscription,
            gateway=self.gateway,
            payment_id=sale_id,
            amount=amount,
            currency=currency,
            period_start=period_start,
            period_end=period_end,
            order_id=subscription_id,
        )
        if cycle is None:
            return _ok("duplicate_payment", payment_id=sale_id)
        return _ok("charged", subscription_id=subscription.id, cycle_number=cycle.cycle_number)

    def _authoritative_period(self, subscription_id: str) -> tuple[datetime | None, datetime | None]:
        fetched = attempt(
            logger,
            "Fetch subscription period",
            self.strategy.fetch_status,
            subscription_id,
            context={"gateway": self.gateway, "subscription_id": subscription_id},
        )
        if not fetched.ok or not fetched.value:
            return None, None
        billing_info = fetched.value.get("billing_info") or {}
        last_payment = billing_info.get("last_payment") or {}
        return _from_iso(last_payment.get("time")), _from_iso(billing_info.get("next_billing_time"))

    def _subscription_activated(self, event: dict[str, Any]) -> dict[str, Any]:
        subscription = self._subscription_for_resource(self._resource(event))
        if subscription is None:
            return _ignored("subscription_not_found")
        if subscription.autopay_enabled:
            subscription.mandate_status = MANDATE_ACTIVE
            if not subscription.mandate_created_at:
                subscription.mandate_created_at = utcnow()
            self.db.commit()
        return _ok("activated", subscription_id=subscription.id)

    def _subscription_suspended(self, event: dict[str, Any]) -> dict[str, Any]:
        subscription = self._subscription_for_resource(self._resource(event))
        if subscription is None:
            return _ignored("subscription_not_found")
        changed = apply_mandate_cancellation(self.db, subscription, "mandate_suspended", initiated_by=self.gateway)
        if changed:
            notify_subscription_change(self.db, self.settings, subscription, "autopay_stopped")
        return _ok("autopay_cancelled" if changed else "unchanged", subscription_id=subscription.id)

    def _subscription_cancelled(self, event: dict[str, Any]) -> dict[str, Any]:
        subscription = self._subscription_for_resource(self._resource(event))
        if subscription is None:
            return _ignored("subscription_not_found")
        return self._apply_cancellation(subscription, "gateway_cancelled")

    def _subscription_payment_failed(self, event: dict[str, Any]) -> dict[str, Any]:
        resource = self._resource(event)
        subscription = self._subscription_for_resource(resource)
        if subscription is None:
            return _ignored("subscription_not_found")
        last_failed = (resource.get("billing_info") or {}).get("last_failed_payment") or {}
        amount, currency = _paypal_amount(last_failed)
        return self._apply_failure(subscription, None, amount, currency, "recurring_payment_failed")


def verify_paypal_webhook(client: Any, headers: Any, event: dict[str, Any]) -> bool:
    """Ask PayPal to validate the transmission. Transport errors count as unverified."""
    try:
        return bool(client.verify_webhook_signature(headers, event))
    except BillingError as exc:
        logger.warning("PayPal webhook verification failed event_id=%s error=%s", event.get("id"), exc.detail)
        return False
