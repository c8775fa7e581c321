"""
notify/email.py -- Transactional email senders.

Two drivers share one interface, send(Message):
  ConsoleSender -- logs the message instead of delivering it (development,
                   the default when EMAIL_DRIVER is unset).
  SMTPSender    -- delivers over SMTP with STARTTLS or implicit TLS.

A delivery failure raises NotificationError. Callers that must not fail on
email (password reset, verification) run send() through
BackgroundDispatcher, which logs the error instead of propagating it.

Recipient addresses are redacted in every log line. Message bodies carry
one-time tokens, so they are never logged by the SMTP driver and only
logged by the console driver, which is development-only.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import TYPE_CHECKING, Protocol, Union

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("idcore.notify")


class NotificationError(Exception):
    """A message could not be delivered."""


@dataclass
class Message:
    to: str
    subject: str
    body: str = ""
    html: str = ""


class Sender(Protocol):
    def send(self, message: Message) -> None: ...


def redact_email(email: str) -> str:
    """Keep the first two characters of the local part: alice@x.com -> al***@x.com."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class ConsoleSender:
    """Writes messages to the log instead of sending them."""

    def send(self, message: Message) -> None:
        logger.info(
            "Email (console driver) to=%s subject=%r\n%s",
            redact_email(message.to),
            message.subject,
            message.html or message.body,
        )


class SMTPSender:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_address: str,
        from_name: str = "",
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout

    def _build(self, message: Message) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = formataddr((self.from_name, self.from_address)) if self.from_name else self.from_address
        mime["To"] = message.to
        if message.body:
            mime.attach(MIMEText(message.body, "plain", "utf-8"))
        if message.html:
            mime.attach(MIMEText(message.html, "html", "utf-8"))
        return mime

    def send(self, message: Message) -> None:
        mime = self._build(message)
        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.sendmail(self.from_address, [message.to], mime.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.sendmail(self.from_address, [message.to], mime.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "SMTP delivery to %s via %s:%d failed: %s",
                redact_email(message.to),
                self.host,
                self.port,
                type(exc).__name__,
            )
            raise NotificationError(f"failed to send email: {type(exc).__name__}") from exc
        logger.info("Email sent to %s subject=%r", redact_email(message.to), message.subject)


def build_sender(settings: Settings) -> Union[ConsoleSender, SMTPSender]:
    """Instantiate the driver named by EMAIL_DRIVER."""
    if settings.email_driver == "smtp":
        return SMTPSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    return ConsoleSender()
