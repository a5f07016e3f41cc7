"""Invite email rendering and Resend delivery (HTTP mocked with httpx.MockTransport)."""

import json

import httpx

from biensperience.core.config import Settings
from biensperience.features.notifications.mailer import ResendMailer, build_invite_email, signup_url


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _mailer(handler, **kwargs):
    return ResendMailer(
        "re_test_key",
        from_email="invites@biensperience.test",
        frontend_url="https://app.biensperience.test/",
        client=_client(handler),
        **kwargs,
    )


def test_signup_url():
    assert signup_url("https://app.example/", "ABC-DEF-GHJ") == "https://app.example/signup?invite=ABC-DEF-GHJ"


def test_template_pluralizes_bundle_counts():
    one = build_invite_email("Alice", "ABC-DEF-GHJ", "https://x/signup", bundle_counts={"experiences": 1, "destinations": 1})
    assert one["subject"] == "Alice invited you to join Biensperience"
    assert "1 pre-configured experience ready to plan" in one["html"]
    assert "1 favorite destination to explore" in one["html"]

    many = build_invite_email("Alice", "ABC-DEF-GHJ", "https://x/signup", bundle_counts={"experiences": 3, "destinations": 0})
    assert "3 pre-configured experiences ready to plan" in many["html"]
    assert "destination" not in many["html"]


def test_template_escapes_user_text():
    message = build_invite_email(
        "<b>Mallory</b>",
        "ABC-DEF-GHJ",
        "https://x/signup",
        invitee_name="Bob",
        custom_message="<script>alert(1)</script>",
    )
    assert "<script>" not in message["html"]
    assert "&lt;script&gt;" in message["html"]
    assert "&lt;b&gt;Mallory&lt;/b&gt;" in message["html"]
    assert "Hello Bob," in message["text"]


def test_send_posts_to_resend():
    captured = {}

    def handler(request: httpx.Request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email_123"})

    result = _mailer(handler).send_invite_email(
        "bob@example.com",
        "Alice",
        "ABC-DEF-GHJ",
        invitee_name="Bob",
        bundle_counts={"experiences": 2},
    )

    assert result.sent is True
    assert result.message_id == "email_123"
    assert result.sent_at is not None
    assert captured["url"] == "https://api.resend.com/emails"
    assert captured["auth"] == "Bearer re_test_key"
    assert captured["body"]["to"] == ["bob@example.com"]
    assert captured["body"]["from"] == "invites@biensperience.test"
    assert "https://app.biensperience.test/signup?invite=ABC-DEF-GHJ" in captured["body"]["html"]


def test_provider_error_is_returned_not_raised():
    def handler(request):
        return httpx.Response(422, json={"message": "invalid from address"})

    result = _mailer(handler).send_invite_email("bob@example.com", "Alice", "ABC-DEF-GHJ")

    assert result.sent is False
    assert result.skipped is False
    assert "422" in result.error


def test_transport_failure_is_returned_not_raised():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = _mailer(handler).send_invite_email("bob@example.com", "Alice", "ABC-DEF-GHJ")

    assert result.sent is False
    assert "connection refused" in result.error


def test_unconfigured_mailer_skips():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    mailer = ResendMailer(None, client=_client(handler))
    result = mailer.send_invite_email("bob@example.com", "Alice", "ABC-DEF-GHJ")

    assert result.skipped is True
    assert result.sent is False
    assert calls == []


def test_disabled_by_settings():
    mailer = ResendMailer.from_settings(Settings(EMAIL_ENABLED=False, RESEND_API_KEY="re_key"))
    assert mailer.configured is False

    enabled = ResendMailer.from_settings(Settings(EMAIL_ENABLED=True, RESEND_API_KEY="re_key", FRONTEND_URL="https://f"))
    assert enabled.configured is True
    assert enabled.frontend_url == "https://f"
