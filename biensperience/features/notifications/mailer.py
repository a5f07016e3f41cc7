"""
Invite email delivery through the Resend HTTP API.

Best-effort: send_invite_email never raises. Failures come back as a
DispatchResult and are logged.
"""

import html
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import httpx

from biensperience.core.config import Settings, settings
from biensperience.models.notification import DispatchResult

logger = logging.getLogger(__name__)

APP_NAME = "Biensperience"


class InviteMailer(Protocol):
    def send_invite_email(
        self,
        to_email: str,
        inviter_name: str,
        code: str,
        invitee_name: Optional[str] = None,
        custom_message: Optional[str] = None,
        bundle_counts: Optional[Dict[str, int]] = None,
    ) -> DispatchResult:
        ...


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def signup_url(frontend_url: str, code: str) -> str:
    return f"{frontend_url.rstrip('/')}/signup?invite={code}"


def build_invite_email(
    inviter_name: str,
    code: str,
    url: str,
    invitee_name: Optional[str] = None,
    custom_message: Optional[str] = None,
    bundle_counts: Optional[Dict[str, int]] = None,
) -> Dict[str, str]:
    """Subject, HTML and text bodies for an invite email."""
    counts = bundle_counts or {}
    experiences = int(counts.get("experiences", 0) or 0)
    destinations = int(counts.get("destinations", 0) or 0)

    inviter = html.escape(inviter_name)
    greeting_name = f" {html.escape(invitee_name)}" if invitee_name else ""

    includes = []
    if experiences > 0:
        includes.append(f"{experiences} pre-configured experience{_plural(experiences)} ready to plan")
    if destinations > 0:
        includes.append(f"{destinations} favorite destination{_plural(destinations)} to explore")

    sections = [
        "<h1>You're Invited!</h1>",
        f"<p>Hello{greeting_name},</p>",
        f"<p>{inviter} has invited you to join {APP_NAME}.</p>",
    ]
    if custom_message:
        sections.append(f"<p><strong>Personal message from {inviter}:</strong></p>")
        sections.append(f"<blockquote>{html.escape(custom_message)}</blockquote>")
    if includes:
        items = "".join(f"<li>{html.escape(line)}</li>" for line in includes)
        sections.append(f"<p>This invite includes:</p><ul>{items}</ul>")
    sections.extend([
        "<p>Click the button below to create your account and start exploring:</p>",
        f'<p><a href="{html.escape(url, quote=True)}">Accept Invite &amp; Sign Up</a></p>',
        f"<p>Your invite code: <strong>{html.escape(code)}</strong><br>You'll need this code during signup</p>",
        f"<p>If the button doesn't work, copy this link into your browser: {html.escape(url)}</p>",
        f"<p>Best regards,<br>The {APP_NAME} Team</p>",
    ])

    text_lines = [
        "You're Invited!",
        f"Hello{' ' + invitee_name if invitee_name else ''},",
        f"{inviter_name} has invited you to join {APP_NAME}.",
    ]
    if custom_message:
        text_lines.append(f"Personal message from {inviter_name}: {custom_message}")
    if includes:
        text_lines.append("This invite includes: " + "; ".join(includes))
    text_lines.extend([
        f"Sign up: {url}",
        f"Your invite code: {code}",
    ])

    return {
        "subject": f"{inviter_name} invited you to join {APP_NAME}",
        "html": "\n".join(sections),
        "text": "\n".join(text_lines),
    }


class ResendMailer:
    """InviteMailer backed by Resend."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        from_email: str = "noreply@biensperience.com",
        frontend_url: str = "http://localhost:3000",
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 10.0,
        enabled: bool = True,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.frontend_url = frontend_url
        self.api_url = api_url
        self.timeout = timeout
        self.enabled = enabled
        self._client = client

    @classmethod
    def from_settings(cls, settings_obj: Optional[Settings] = None, client: Optional[httpx.Client] = None) -> "ResendMailer":
        cfg = settings_obj or settings
        return cls(
            cfg.RESEND_API_KEY,
            from_email=cfg.EMAIL_FROM,
            frontend_url=cfg.FRONTEND_URL,
            api_url=cfg.RESEND_API_URL,
            timeout=cfg.EMAIL_TIMEOUT_SECONDS,
            enabled=cfg.EMAIL_ENABLED,
            client=client,
        )

    @property
    def configured(self) -> bool:
        return self.enabled and bool(self.api_key)

    def _post(self, payload: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self._client is not None:
            return self._client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.api_url, json=payload, headers=headers)

    def send_invite_email(
        self,
        to_email: str,
        inviter_name: str,
        code: str,
        invitee_name: Optional[str] = None,
        custom_message: Optional[str] = None,
        bundle_counts: Optional[Dict[str, int]] = None,
    ) -> DispatchResult:
        if not self.configured:
            logger.info("[email] delivery not configured; invite email skipped", extra={"invite_code": code})
            return DispatchResult(sent=False, skipped=True, error="Email delivery not configured")

        message = build_invite_email(
            inviter_name,
            code,
            signup_url(self.frontend_url, code),
            invitee_name=invitee_name,
            custom_message=custom_message,
            bundle_counts=bundle_counts,
        )
        payload = {
            "from": self.from_email,
            "to": [to_email],
            "subject": message["subject"],
            "html": message["html"],
            "text": message["text"],
        }

        try:
            response = self._post(payload)
            response.raise_for_status()
            body = response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("[email] invite email failed", extra={"invite_code": code, "error": str(exc)})
            return DispatchResult(sent=False, error=str(exc) or type(exc).__name__)

        message_id = body.get("id") if isinstance(body, dict) else None
        logger.info("[email] invite email sent", extra={"invite_code": code, "message_id": message_id})
        return DispatchResult(sent=True, message_id=message_id, sent_at=datetime.now(timezone.utc))
