"""
core/notifier.py -- Email and SMS delivery for account notifications.

Both channels are optional. When a channel is not configured the send call
logs a warning and returns False so the calling flow (registration, password
reset, contact form) still completes. Transport failures on a configured
channel raise DeliveryError; the caller decides whether that aborts the
request.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from core.config import Settings
from core.errors import DeliveryError
from core.fetcher import send_twilio_sms

logger = logging.getLogger("farmassist.notifier")


class Notifier:
    """Sends mail over SMTP and SMS over Twilio using application settings."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def email_enabled(self) -> bool:
        return self._settings.smtp_configured

    @property
    def sms_enabled(self) -> bool:
        return self._settings.sms_configured

    def send_email(self, to: str, subject: str, text: str) -> bool:
        """Send a plain-text email. Returns False if SMTP is not configured."""
        s = self._settings
        if not self.email_enabled:
            logger.warning("SMTP not configured; skipping email to %s (%s)", to, subject)
            return False

        try:
            # Header assignment raises ValueError on embedded line breaks.
            msg = EmailMessage()
            msg["From"] = s.smtp_from or s.smtp_user
            msg["To"] = to
            msg["Subject"] = subject
            msg.set_content(text)
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.outbound_timeout_seconds) as smtp:
                if s.smtp_port != 25:
                    smtp.starttls()
                smtp.login(s.smtp_user, s.smtp_pass)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError, ValueError) as e:
            logger.warning("Email delivery to %s failed: %s", to, e)
            raise DeliveryError("Email delivery failed", detail=str(e)) from e
        logger.info("Email sent to %s (%s)", to, subject)
        return True

    def send_sms(self, to: str, body: str) -> bool:
        """Send an SMS. Returns False if the SMS provider is not configured."""
        s = self._settings
        if not self.sms_enabled:
            logger.warning("SMS provider not configured; skipping SMS to %s", to)
            return False
        send_twilio_sms(s.twilio_sid, s.twilio_token, s.twilio_from, to, body, s.outbound_timeout_seconds)
        logger.info("SMS sent to %s", to)
        return True


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------


def verification_email(client_url: str, first_name: str, token: str) -> tuple[str, str]:
    link = f"{client_url.rstrip('/')}/verify-email?token={token}"
    return (
        "Verify your FarmAssist account",
        f"Hello {first_name},\n\nPlease verify your email address by opening the link below:\n\n{link}\n",
    )


def reset_email(client_url: str, first_name: str, token: str, expire_minutes: int) -> tuple[str, str]:
    link = f"{client_url.rstrip('/')}/reset-password?token={token}"
    return (
        "Reset your FarmAssist password",
        f"Hello {first_name},\n\nA password reset was requested for your account. "
        f"The link below is valid for {expire_minutes} minutes:\n\n{link}\n\n"
        "If you did not request this, you can ignore this email.\n",
    )
