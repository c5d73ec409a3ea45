"""
GrowLokal — mailer.py
─────────────────────────────────────────────────────────────────
Transactional email via Resend.

    sender = EmailSender()
    result = await sender.send("verify_email", email, {"link": url})
    if not result.success: ...

Kinds: verify_email · password_reset · event_booking

Without RESEND_API_KEY nothing is sent: the link is logged
instead (dev only) and the send counts as a success.
─────────────────────────────────────────────────────────────────
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from growlokal.core.config import cfg

logger = logging.getLogger("growlokal.mailer")

RESEND_URL = "https://api.resend.com/emails"


@dataclass
class EmailResult:
    success:    bool
    message_id: Optional[str] = None
    error:      Optional[str] = None


# ─────────────────────────────────────────────
# Templates
# ─────────────────────────────────────────────
_WRAP = """
<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"></head>
<body style="margin:0;padding:0;background:#f7f3ec;font-family:Arial,sans-serif;">
<div style="max-width:480px;margin:48px auto;padding:0 24px;color:#3b2f22;">
  <div style="font-size:13px;letter-spacing:0.3em;text-transform:uppercase;color:#7a5c2e;margin-bottom:36px;">GrowLokal</div>
  {body}
  <div style="font-size:11px;color:#999;margin-top:48px;">GrowLokal · Support local makers</div>
</div>
</body>
</html>
"""

_BUTTON = (
    '<a href="{link}" style="display:inline-block;background:#7a5c2e;color:#fff;'
    'text-decoration:none;padding:12px 32px;font-size:12px;letter-spacing:0.15em;'
    'text-transform:uppercase;">{label}</a>'
)


def _render(kind: str, data: dict):
    """(subject, html) for a kind. Raises ValueError on unknown kinds."""
    if kind == "verify_email":
        hours = data.get("hours", cfg.VERIFICATION_HOURS)
        body = (
            "<h1 style='font-weight:400;'>Verify your email</h1>"
            "<p>Confirm this address to finish setting up your account.</p>"
            + _BUTTON.format(link=data["link"], label="Verify email")
            + f"<p style='font-size:12px;color:#777;'>This link expires in {hours} hour"
            + ("" if hours == 1 else "s") + ".</p>"
        )
        return "Verify your GrowLokal email", _WRAP.format(body=body)

    if kind == "password_reset":
        body = (
            "<h1 style='font-weight:400;'>Reset your password</h1>"
            "<p>Someone asked to reset the password on this account. "
            "If it wasn't you, ignore this email.</p>"
            + _BUTTON.format(link=data["link"], label="Choose a new password")
            + f"<p style='font-size:12px;color:#777;'>This link expires in "
              f"{cfg.RESET_TOKEN_HOURS} hour and can only be used once.</p>"
        )
        return "Reset your GrowLokal password", _WRAP.format(body=body)

    if kind == "event_booking":
        body = (
            "<h1 style='font-weight:400;'>You're booked!</h1>"
            f"<p>{data.get('event_title', 'Your event')} · {data.get('event_date', '')}</p>"
            f"<p>{data.get('location', '')}</p>"
        )
        return "Your GrowLokal event booking", _WRAP.format(body=body)

    raise ValueError(f"Unknown email kind: {kind}")


# ─────────────────────────────────────────────
# EmailSender
# ─────────────────────────────────────────────
class EmailSender:

    def __init__(self, api_key: str = None, transport: httpx.AsyncBaseTransport = None):
        self.api_key   = cfg.RESEND_API_KEY if api_key is None else api_key
        self.transport = transport

    async def send(self, kind: str, recipient: str, data: dict) -> EmailResult:
        subject, html = _render(kind, data)

        if not self.api_key:
            if cfg.is_dev:
                logger.info(f"[dev] {kind} email for {recipient}: {data.get('link', '')}")
            else:
                logger.warning(f"RESEND_API_KEY not set, {kind} email to {recipient} not sent")
            return EmailResult(success=True, message_id="dev-noop")

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=15) as client:
                r = await client.post(
                    RESEND_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "from":    f"GrowLokal <{cfg.EMAIL_FROM}>",
                        "to":      [recipient],
                        "subject": subject,
                        "html":    html,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Email send failed ({kind} → {recipient}): {e}")
            return EmailResult(success=False, error=str(e))

        if r.status_code >= 400:
            logger.error(f"Resend rejected {kind} email: {r.status_code} {r.text[:200]}")
            return EmailResult(success=False, error=f"HTTP {r.status_code}")

        message_id = r.json().get("id")
        logger.info(f"Email sent: {kind} → {recipient} ({message_id})")
        return EmailResult(success=True, message_id=message_id)
