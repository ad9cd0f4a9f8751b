from tms_billing.gateways.signatures import (
    FORMAT_PAYMENT_ONLY,
    FORMAT_PRIMARY,
    FORMAT_SWAPPED,
    compute_signature,
    signatures_match,
    verify_checkout_signature,
    verify_webhook_signature,
)

SECRET = "shh"


def test_primary_format_is_order_then_payment():
    signature = compute_signature(SECRET, "order_1|pay_1")
    assert verify_checkout_signature(SECRET, "order_1", "pay_1", signature) == FORMAT_PRIMARY


def test_alternate_formats_rejected_for_orders():
    swapped = compute_signature(SECRET, "pay_1|order_1")
    assert verify_checkout_signature(SECRET, "order_1", "pay_1", swapped) is None


def test_alternate_formats_accepted_for_subscriptions():
    swapped = compute_signature(SECRET, "pay_1|sub_1")
    payment_only = compute_signature(SECRET, "pay_1")
    assert verify_checkout_signature(SECRET, "sub_1", "pay_1", swapped, allow_alternate_formats=True) == FORMAT_SWAPPED
    assert (
        verify_checkout_signature(SECRET, "sub_1", "pay_1", payment_only, allow_alternate_formats=True)
        == FORMAT_PAYMENT_ONLY
    )


def test_no_format_matches():
    assert verify_checkout_signature(SECRET, "sub_1", "pay_1", "deadbeef", allow_alternate_formats=True) is None
    assert verify_checkout_signature(SECRET, "sub_1", "pay_1", None, allow_alternate_formats=True) is None


def test_signatures_match_ignores_surrounding_whitespace():
    expected = compute_signature(SECRET, "x")
    assert signatures_match(expected, f"  {expected}\n")
    assert not signatures_match(expected, "")


def test_webhook_signature_over_raw_body():
    body = b'{"event":"payment.captured"}'
    signature = compute_signature(SECRET, body)
    assert verify_webhook_signature(SECRET, body, signature)
    assert not verify_webhook_signature(SECRET, body + b" ", signature)
    assert not verify_webhook_signature("", body, signature)


def _flip_one_character(signature, index):
    replacement = "0" if signature[index] != "0" else "1"
    return signature[:index] + replacement + signature[index + 1 :]


def test_single_character_change_rejected():
    signature = compute_signature(SECRET, "order_1|pay_1")
    body = b'{"event":"payment.captured"}'
    webhook_signature = compute_signature(SECRET, body)

    for index in (0, len(signature) // 2, len(signature) - 1):
        assert verify_checkout_signature(SECRET, "order_1", "pay_1", _flip_one_character(signature, index)) is None
        assert not verify_webhook_signature(SECRET, body, _flip_one_character(webhook_signature, index))
