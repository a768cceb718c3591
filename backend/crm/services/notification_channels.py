# Overview: Outbound delivery channels (WhatsApp via Twilio, email via SMTP).

"""
Every channel implements send(recipient, message) -> DeliveryResult.

Channels never raise for provider failures; they return a failed result
with the error text. A channel missing its credentials returns
"not configured" without contacting the provider.
"""

from __future__ import annotations

import re
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid

from flask import current_app
from twilio.rest import Client
from twilio.base.exceptions import TwilioException

from ..validation import E164_RE, EMAIL_RE


@dataclass(frozen=True)
class Message:
    body: str
    subject: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


class NotificationChannel:
    name = "base"

    def send(self, recipient: str, message: Message) -> DeliveryResult:
        raise NotImplementedError


def normalize_whatsapp_number(number: str | None) -> str | None:
    """Strip any whatsapp: prefix and separators, keeping a leading +."""
    if not number:
        return None
    clean = re.sub(r"^whatsapp:", "", number.strip(), flags=re.IGNORECASE).strip()
    if clean.startswith("+"):
        return "+" + re.sub(r"\D", "", clean[1:])
    return re.sub(r"\D", "", clean)


class WhatsAppChannel(NotificationChannel):
    name = "whatsapp"

    def __init__(self, account_sid: str | None, auth_token: str | None, from_number: str | None, client=None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        from_clean = normalize_whatsapp_number(from_number)
        self.from_number = f"whatsapp:{from_clean}" if from_clean else None
        self._client = client

    @classmethod
    def from_config(cls, config) -> "WhatsAppChannel":
        return cls(
            config.get("TWILIO_ACCOUNT_SID"),
            config.get("TWILIO_AUTH_TOKEN"),
            config.get("TWILIO_WHATSAPP_FROM"),
        )

    @property
    def configured(self) -> bool:
        return bool(self._client or (self.account_sid and self.auth_token)) and bool(self.from_number)

    def _get_client(self):
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def send(self, recipient: str, message: Message) -> DeliveryResult:
        if not self.configured:
            current_app.logger.warning("WhatsApp channel not configured; skipping send to %s", recipient)
            return DeliveryResult(success=False, error="WhatsApp channel not configured")

        to = normalize_whatsapp_number(recipient)
        if not to or not E164_RE.match(to):
            return DeliveryResult(
                success=False,
                error="Phone number must be in E.164 format (e.g., +1234567890)",
            )

        try:
            result = self._get_client().messages.create(
                body=message.body,
                from_=self.from_number,
                to=f"whatsapp:{to}",
            )
        except TwilioException as exc:
            current_app.logger.error("WhatsApp send to %s failed: %s", to, exc)
            return DeliveryResult(success=False, error=str(exc))

        current_app.logger.info("WhatsApp message sent to %s: %s", to, result.sid)
        return DeliveryResult(success=True, provider_message_id=result.sid)


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(
        self,
        host: str | None,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        from_address: str | None = None,
        timeout: int = 10,
    ):
        self.host = host
        self.port = int(port or 587)
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address or username
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "EmailChannel":
        return cls(
            host=config.get("EMAIL_HOST"),
            port=config.get("EMAIL_PORT", 587),
            username=config.get("EMAIL_USER"),
            password=config.get("EMAIL_PASS"),
            use_tls=config.get("EMAIL_USE_TLS", True),
            from_address=config.get("EMAIL_FROM"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_address)

    def _connect(self) -> smtplib.SMTP:
        # Port 465 is implicit TLS; anything else upgrades with STARTTLS
        if self.port == 465:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            try:
                smtp.starttls()
            except (smtplib.SMTPException, OSError):
                smtp.close()
                raise
        return smtp

    def send(self, recipient: str, message: Message) -> DeliveryResult:
        if not self.configured:
            current_app.logger.warning("Email channel not configured; skipping send to %s", recipient)
            return DeliveryResult(success=False, error="Email channel not configured")
        if not recipient or not EMAIL_RE.match(recipient):
            return DeliveryResult(success=False, error="Invalid email address")

        msg = EmailMessage()
        msg["Subject"] = message.subject or "Notification"
        msg["From"] = self.from_address
        msg["To"] = recipient
        msg["Message-ID"] = make_msgid()
        msg.set_content(message.body)

        try:
            with self._connect() as smtp:
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            current_app.logger.error("Email send to %s failed: %s", recipient, exc)
            return DeliveryResult(success=False, error=str(exc))

        current_app.logger.info("Email sent to %s: %s", recipient, msg["Message-ID"])
        return DeliveryResult(success=True, provider_message_id=msg["Message-ID"])


def build_channels(config) -> dict[str, NotificationChannel]:
    return {
        "whatsapp": WhatsAppChannel.from_config(config),
        "email": EmailChannel.from_config(config),
    }
