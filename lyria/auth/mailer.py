from __future__ import annotations

import logging
from typing import Protocol

import requests

from lyria.auth.config import AuthConfig
from lyria.auth.errors import DeliveryError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

_SUBJECTS = {
    "sign-in": "Your LyriaSong sign-in code",
    "email-verification": "Verify your LyriaSong email",
    "forget-password": "Reset your LyriaSong password",
}


class Mailer(Protocol):
    def send(self, email: str, code: str, purpose: str) -> None:
        """
        Deliver a one-time code.

        Raises DeliveryError when the provider rejects the message or cannot be reached.
        """


def render_code_email(code: str, purpose: str, ttl_minutes: int) -> str:
    return f"""<!DOCTYPE html>
<html>
<body style="margin:0;padding:0;font-family:'Helvetica Neue',Arial,sans-serif;background:#ffffff;">
  <div style="max-width:440px;margin:48px auto;padding:0 24px;">
    <h1 style="font-size:22px;color:#202124;">{_SUBJECTS.get(purpose, "Your LyriaSong code")}</h1>
    <p style="font-size:14px;color:#5f6368;">Enter this code to continue:</p>
    <p style="font-size:32px;font-weight:700;letter-spacing:0.3em;color:#1a73e8;">{code}</p>
    <p style="font-size:12px;color:#80868b;">
      The code expires in {ttl_minutes} minutes and can only be used once.<br>
      If you didn't request it, you can safely ignore this email.
    </p>
  </div>
</body>
</html>
"""


class ResendMailer:
    """Sends codes through the Resend HTTP API."""

    def __init__(self, api_key: str, sender: str, *, timeout: float = 10.0, ttl_minutes: int = 5) -> None:
        self._api_key = api_key
        self._sender = sender
        self._timeout = timeout
        self._ttl_minutes = ttl_minutes

    def send(self, email: str, code: str, purpose: str) -> None:
        payload = {
            "from": self._sender,
            "to": [email],
            "subject": _SUBJECTS.get(purpose, "Your LyriaSong code"),
            "html": render_code_email(code, purpose, self._ttl_minutes),
        }
        try:
            r = requests.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=payload,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.warning("Mail delivery failed (purpose=%s): %s", purpose, type(e).__name__)
            raise DeliveryError() from e
        if r.status_code >= 400:
            # Avoid leaking provider responses to the client; log the status only.
            logger.warning("Mail delivery rejected (purpose=%s, status=%d)", purpose, r.status_code)
            raise DeliveryError()


class LogMailer:
    """Development mailer: writes the code to the log instead of sending it."""

    def send(self, email: str, code: str, purpose: str) -> None:
        logger.warning("[DEV] %s code for %s: %s", purpose, email, code)


def build_mailer(cfg: AuthConfig) -> Mailer:
    if cfg.resend_api_key:
        return ResendMailer(
            cfg.resend_api_key,
            cfg.email_from,
            timeout=cfg.http_timeout_seconds,
            ttl_minutes=max(1, cfg.otp_ttl_seconds // 60),
        )
    logger.warning("RESEND_API_KEY not set: one-time codes will be written to the log")
    return LogMailer()
