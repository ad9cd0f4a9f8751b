from dataclasses import replace

import resend

from tms_billing.email_service import send_subscription_change_email


def test_profile_name_is_escaped_in_html(monkeypatch, settings):
    sent = []
    monkeypatch.setattr(resend.Emails, "send", lambda params: sent.append(params) or {"id": "email_1"})

    delivered = send_subscription_change_email(
        replace(settings, resend_api_key="re_test"),
        email="founder@example.test",
        full_name="<script>alert(1)</script> & Co",
        event_type="subscription_activated",
        plan_tier="basic",
        status="active",
        amount=299,
        currency="INR",
    )

    assert delivered is True
    assert "<script>" not in sent[0]["html"]
    assert "Hi &lt;script&gt;alert(1)&lt;/script&gt; &amp; Co," in sent[0]["html"]
    assert "Hi <script>alert(1)</script> & Co," in sent[0]["text"]


def test_email_skipped_without_api_key(monkeypatch, settings):
    sent = []
    monkeypatch.setattr(resend.Emails, "send", lambda params: sent.append(params))

    assert send_subscription_change_email(
        settings,
        email="founder@example.test",
        full_name=None,
        event_type="payment_failed",
        plan_tier=None,
        status=None,
    ) is False
    assert sent == []
