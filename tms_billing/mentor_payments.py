import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tms_billing.models import GATEWAY_PAYPAL, MentorPayment, MentorStartupAssignment, utcnow

logger = logging.getLogger(__name__)

MENTOR_PAYMENT_COMPLETED = "completed"
ASSIGNMENT_PENDING_PAYMENT = "pending_payment"
ASSIGNMENT_PENDING_PAYMENT_AND_AGREEMENT = "pending_payment_and_agreement"
ASSIGNMENT_READY = "ready_for_activation"
AGREEMENT_APPROVED = "approved"


def find_mentor_payment(
    db: Session,
    gateway: str,
    order_id: str | None = None,
    payment_id: str | None = None,
    assignment_id: int | None = None,
) -> MentorPayment | None:
    """Match by gateway order id first, then gateway payment id, then assignment."""
    order_id = (order_id or "").strip() or None
    payment_id = (payment_id or "").strip() or None

    if order_id:
        column = MentorPayment.paypal_order_id if gateway == GATEWAY_PAYPAL else MentorPayment.razorpay_order_id
        row = db.query(MentorPayment).filter(column == order_id).order_by(MentorPayment.id.desc()).first()
        if row:
            return row

    if payment_id:
        row = (
            db.query(MentorPayment)
            .filter(
                or_(
                    MentorPayment.razorpay_payment_id == payment_id,
                    MentorPayment.paypal_order_id == payment_id,
                )
            )
            .order_by(MentorPayment.id.desc())
            .first()
        )
        if row:
            return row

    if assignment_id:
        return (
            db.query(MentorPayment)
            .filter(MentorPayment.assignment_id == int(assignment_id))
            .order_by(MentorPayment.id.desc())
            .first()
        )
    return None


def _activate_assignment(assignment: MentorStartupAssignment) -> bool:
    status = (assignment.status or "").strip()
    agreement = (assignment.agreement_status or "").strip().lower()
    if status == ASSIGNMENT_PENDING_PAYMENT or (
        status == ASSIGNMENT_PENDING_PAYMENT_AND_AGREEMENT and agreement == AGREEMENT_APPROVED
    ):
        assignment.status = ASSIGNMENT_READY
        return True
    return False


def complete_mentor_payment(
    db: Session,
    mentor_payment: MentorPayment,
    payment_id: str | None,
    gateway: str,
    commit: bool = True,
) -> MentorPayment:
    if mentor_payment.payment_status == MENTOR_PAYMENT_COMPLETED:
        logger.info(
            "Mentor payment already completed mentor_payment_id=%s assignment_id=%s",
            mentor_payment.id,
            mentor_payment.assignment_id,
        )
        return mentor_payment

    mentor_payment.payment_status = MENTOR_PAYMENT_COMPLETED
    mentor_payment.payment_date = utcnow()
    mentor_payment.payment_gateway = gateway
    if payment_id and gateway != GATEWAY_PAYPAL:
        mentor_payment.razorpay_payment_id = payment_id

    assignment = mentor_payment.assignment
    activated = False
    if assignment is not None:
        assignment.payment_status = MENTOR_PAYMENT_COMPLETED
        activated = _activate_assignment(assignment)

    if commit:
        db.commit()
        db.refresh(mentor_payment)
    else:
        db.flush()

    logger.info(
        "Mentor payment completed mentor_payment_id=%s assignment_id=%s gateway=%s payment_id=%s activated=%s",
        mentor_payment.id,
        mentor_payment.assignment_id,
        gateway,
        payment_id,
        activated,
    )
    return mentor_payment
