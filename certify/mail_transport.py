"""
Mail Transport Adapters

The campaign dispatcher hands each rendered message to a transport with a
single send(message) -> message id call. Any delivery failure surfaces as
TransportError.
"""

import logging
import smtplib
import uuid
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional, Protocol

from .config import AppSettings, get_settings
from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class OutboundMessage:
    sender: str
    to: str
    subject: str
    html: str
    text: str


class MailTransport(Protocol):
    def send(self, message: OutboundMessage) -> str:
        ...


def build_email_message(message: OutboundMessage) -> EmailMessage:
    """Build a multipart/alternative message with text and HTML parts"""
    msg = EmailMessage()
    msg["From"] = message.sender
    msg["To"] = message.to
    msg["Subject"] = message.subject
    msg["Message-ID"] = make_msgid()
    msg.set_content(message.text)
    if message.html:
        msg.add_alternative(message.html, subtype="html")
    return msg


class SMTPTransport:
    """Deliver messages through an SMTP relay, one connection per message"""

    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 15
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, message: OutboundMessage) -> str:
        msg = build_email_message(message)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"SMTP delivery to {message.to} failed: {e}") from e
        return msg["Message-ID"]


class LoggingTransport:
    """Log messages instead of delivering them (local development)"""

    def send(self, message: OutboundMessage) -> str:
        message_id = f"log-{uuid.uuid4()}"
        logger.info(f"[mail] {message_id} to={message.to} subject={message.subject!r}")
        return message_id


def get_mail_transport(settings: Optional[AppSettings] = None) -> MailTransport:
    """Create the transport selected by MAIL_TRANSPORT"""
    settings = settings or get_settings()
    if settings.mail_transport == "smtp":
        return SMTPTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout=settings.smtp_timeout,
        )
    return LoggingTransport()
