import html
import logging
from datetime import datetime

import resend

from tms_billing.config import Settings

logger = logging.getLogger(__name__)

EVENT_SUBJECTS = {
    "subscription_activated": "Your TrackMyStartup subscription is active",
    "subscription_upgraded": "Your TrackMyStartup plan has been upgraded",
    "subscription_downgraded": "Your TrackMyStartup plan has been changed",
    "autopay_stopped": "Auto-pay has been stopped",
    "payment_failed": "We could not process your subscription payment",
}

EVENT_HEADLINES = {
    "subscription_activated": "Thank you! Your subscription is now active.",
    "subscription_upgraded": "Your plan upgrade is complete.",
    "subscription_downgraded": "Your plan change has been recorded.",
    "autopay_stopped": "Auto-pay has been stopped. Your subscription will continue until the current billing period ends.",
    "payment_failed": "Your latest recurring payment failed. Please update your payment method to keep your plan.",
}


def _format_amount(amount: float | None, currency: str | None) -> str:
    if amount is None:
        return "-"
    return f"{(currency or 'INR').upper()} {float(amount):.2f}"


def _format_date(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%d %b %Y")


def send_subscription_change_email(
    settings: Settings,
    *,
    email: str,
    full_name: str | None,
    event_type: str,
    plan_tier: str | None,
    status: str | None,
    amount: float | None = None,
    currency: str | None = None,
    access_until: datetime | None = None,
) -> bool:
    """
    Send a subscription lifecycle email through Resend.

    Returns False without sending when no API key is configured.
    """
    if not settings.resend_api_key:
        logger.info("Resend not configured, skipping email event_type=%s", event_type)
        return False

    resend.api_key = settings.resend_api_key

    subject = EVENT_SUBJECTS.get(event_type, "Your TrackMyStartup subscription was updated")
    headline = EVENT_HEADLINES.get(event_type, "Your subscription details have changed.")
    greeting = f"Hi {full_name}," if full_name else "Hi,"
    plan_label = (plan_tier or "free").title()
    billing_link = f"{settings.frontend_url}/billing"

    html_content = f"""
    <div style="font-family: Arial, sans-serif; max-width: 560px; margin: 0 auto; color: #1f2937;">
      <p>{html.escape(greeting)}</p>
      <p>{headline}</p>
      <table style="border-collapse: collapse; margin: 16px 0;">
        <tr><td style="padding: 4px 12px 4px 0;">Plan</td><td><strong>{plan_label}</strong></td></tr>
        <tr><td style="padding: 4px 12px 4px 0;">Status</td><td>{html.escape(status or "-")}</td></tr>
        <tr><td style="padding: 4px 12px 4px 0;">Amount</td><td>{_format_amount(amount, currency)}</td></tr>
        <tr><td style="padding: 4px 12px 4px 0;">Access until</td><td>{_format_date(access_until)}</td></tr>
      </table>
      <p><a href="{billing_link}">Manage your billing</a></p>
      <p style="color: #6b7280; font-size: 12px;">TrackMyStartup</p>
    </div>
    """

    text_content = f"""
    {greeting}

    {headline}

    Plan: {plan_label}
    Status: {status or "-"}
    Amount: {_format_amount(amount, currency)}
    Access until: {_format_date(access_until)}

    Manage your billing: {billing_link}
    """

    params = {
        "from": f"{settings.resend_from_name} <{settings.resend_from_email}>",
        "to": [email],
        "subject": subject,
        "html": html_content,
        "text": text_content,
    }

    response = resend.Emails.send(params)
    sent = bool(response and (getattr(response, "id", None) or (isinstance(response, dict) and response.get("id"))))
    if sent:
        logger.info("Subscription email sent event_type=%s", event_type)
    else:
        logger.warning("Subscription email not accepted event_type=%s", event_type)
    return sent
