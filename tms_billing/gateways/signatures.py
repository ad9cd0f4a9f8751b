import hashlib
import hmac
from typing import Union

FORMAT_PRIMARY = "primary"  # "<order_or_subscription_id>|<payment_id>"
FORMAT_PAYMENT_ONLY = "payment_only"  # "<payment_id>"
FORMAT_SWAPPED = "swapped"  # "<payment_id>|<order_or_subscription_id>"


def compute_signature(secret: str, message: Union[str, bytes]) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str | None) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected, provided.strip())


def verify_checkout_signature(
    secret: str,
    order_or_subscription_id: str,
    payment_id: str,
    signature: str | None,
    allow_alternate_formats: bool = False,
) -> str | None:
    """
    Return the name of the signing format that validated, or None.

    Alternate formats are only tried when `allow_alternate_formats` is set,
    which callers do for subscription payments.
    """
    candidates = [(FORMAT_PRIMARY, f"{order_or_subscription_id}|{payment_id}")]
    if allow_alternate_formats:
        candidates.append((FORMAT_PAYMENT_ONLY, payment_id))
        candidates.append((FORMAT_SWAPPED, f"{payment_id}|{order_or_subscription_id}"))

    for format_name, message in candidates:
        if signatures_match(compute_signature(secret, message), signature):
            return format_name
    return None


def verify_webhook_signature(secret: str, raw_body: bytes, signature: str | None) -> bool:
    if not secret:
        return False
    return signatures_match(compute_signature(secret, raw_body), signature)
