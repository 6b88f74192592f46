from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional, Protocol

import requests

from ..config import get_settings
from ..domain.otp import NotificationError, OtpPurpose
from ..observability.metrics import OTP_DISPATCH_FAILED

logger = logging.getLogger(__name__)

RESEND_ENDPOINT = "https://api.resend.com/emails"


@dataclass(frozen=True)
class OtpEmail:
    subject: str
    html: str
    text: str


class Notifier(Protocol):
    name: str

    async def send(self, *, to: str, subject: str, html: str, text: str) -> bool: ...


# ---------- templates ----------
_CODE_BLOCK = (
    '<div style="background: #f8f9fa; padding: 20px; margin: 20px 0; text-align: center; border-radius: 8px;">'
    '<h1 style="font-size: 32px; color: #007bff; margin: 0; letter-spacing: 8px;">{code}</h1>'
    "</div>"
)

_TEMPLATES: dict[str, tuple[str, str, str, Optional[str]]] = {
    # purpose: (subject, heading, intro, ignore-note)
    OtpPurpose.SIGNUP_VERIFICATION.value: (
        "Verify Your Account - OTP Code",
        "Welcome to {brand}!",
        "Thank you for signing up. To complete your registration, please enter this verification code:",
        "If you didn't create this account, please ignore this email.",
    ),
    OtpPurpose.EMAIL_CHANGE.value: (
        "Confirm Email Change - OTP Code",
        "Confirm Your New Email Address",
        "Please enter this verification code to confirm your email change:",
        "If you didn't request this email change, please contact support.",
    ),
    OtpPurpose.PASSWORD_RESET.value: (
        "Password Reset - OTP Code",
        "Reset Your Password",
        "Please enter this verification code to reset your password:",
        "If you didn't request a password reset, please ignore this email.",
    ),
}
_FALLBACK = ("Verification Code", "Verification Code", "Please enter this verification code:", None)


def render_otp_email(code: str, purpose: str, ttl_minutes: int = 10, *, brand: str = "Pulse") -> OtpEmail:
    subject, heading, intro, note = _TEMPLATES.get(purpose, _FALLBACK)
    heading = heading.format(brand=brand)
    expiry = f"This code will expire in {ttl_minutes} minutes."

    html_parts = [f"<h2>{heading}</h2>", f"<p>{intro}</p>", _CODE_BLOCK.format(code=code), f"<p>{expiry}</p>"]
    text_parts = [heading, "", intro, "", code, "", expiry]
    if note:
        html_parts.append(f"<p>{note}</p>")
        text_parts += ["", note]
    if purpose in _TEMPLATES:
        html_parts.append(f"<p>Best regards,<br>The {brand} Team</p>")
        text_parts += ["", "Best regards,", f"The {brand} Team"]

    return OtpEmail(subject=subject, html="\n".join(html_parts), text="\n".join(text_parts))


# ---------- transports ----------
class ConsoleNotifier:
    """DEV transport: logs the message instead of sending it."""

    name = "console"

    async def send(self, *, to: str, subject: str, html: str, text: str) -> bool:
        logger.info("[DEV] email to=%s subject=%s\n%s", to, subject, text)
        return True


class SmtpNotifier:
    """Plain SMTP (Mailpit in dev). smtplib blocks, so it runs in the default executor."""

    name = "smtp"

    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30,
    ) -> None:
        self._host = host
        self._port = port
        self._sender = sender
        self._username = username
        self._password = password
        self._timeout = timeout

    def _send_blocking(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._username and self._password:
                smtp.starttls()
                smtp.login(self._username, self._password)
            smtp.send_message(msg)

    async def send(self, *, to: str, subject: str, html: str, text: str) -> bool:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_blocking, msg)
            return True
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP send failed to=%s: %s", to, exc)
            return False


class ResendNotifier:
    """Resend HTTP API (production)."""

    name = "resend"

    def __init__(self, *, api_key: str, sender: str, timeout: float = 30) -> None:
        self._api_key = api_key
        self._sender = sender
        self._timeout = timeout

    def _post(self, payload: dict) -> requests.Response:
        return requests.post(
            RESEND_ENDPOINT,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=self._timeout,
        )

    async def send(self, *, to: str, subject: str, html: str, text: str) -> bool:
        payload = {"from": self._sender, "to": [to], "subject": subject, "html": html, "text": text}
        loop = asyncio.get_running_loop()
        try:
            resp = await loop.run_in_executor(None, self._post, payload)
        except requests.RequestException as exc:
            logger.warning("Resend request failed to=%s: %s", to, exc)
            return False
        if resp.status_code >= 300:
            logger.warning("Resend API error status=%s body=%s", resp.status_code, resp.text[:500])
            return False
        return True


def build_notifier() -> Notifier:
    settings = get_settings()
    sender = formataddr((settings.MAIL_SENDER_NAME, settings.MAIL_SENDER_ADDRESS))
    if settings.MAIL_TRANSPORT == "smtp":
        return SmtpNotifier(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            sender=sender,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            timeout=settings.SMTP_TIMEOUT_SEC,
        )
    if settings.MAIL_TRANSPORT == "resend":
        if not settings.RESEND_API_KEY:
            raise NotificationError("RESEND_API_KEY not configured")
        return ResendNotifier(api_key=settings.RESEND_API_KEY, sender=sender, timeout=settings.RESEND_TIMEOUT_SEC)
    return ConsoleNotifier()


async def send_otp_email(notifier: Notifier, *, to: str, code: str, purpose: str, ttl_minutes: int = 10) -> None:
    """Render the purpose-specific message and hand it to the notifier."""
    brand = get_settings().MAIL_SENDER_NAME
    mail = render_otp_email(code, purpose, ttl_minutes, brand=brand)
    logger.info("Sending OTP email to=%s purpose=%s transport=%s", to, purpose, notifier.name)
    ok = await notifier.send(to=to, subject=mail.subject, html=mail.html, text=mail.text)
    if not ok:
        OTP_DISPATCH_FAILED.labels(transport=notifier.name).inc()
        raise NotificationError(f"failed to send OTP email via {notifier.name}")
