import smtplib

import pytest

from certify.config import AppSettings
from certify.errors import TransportError
from certify.mail_transport import (
    LoggingTransport, OutboundMessage, SMTPTransport, build_email_message, get_mail_transport
)

MESSAGE = OutboundMessage(
    sender="Certify <no-reply@certify.test>",
    to="ana@x.com",
    subject="Certificado de Ana",
    html="Oi Ana<br>link",
    text="Oi Ana\nlink",
)


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        if msg["To"] == "bounce@x.com":
            raise smtplib.SMTPRecipientsRefused({msg["To"]: (550, b"no such user")})
        self.sent.append(msg)


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)


def test_build_email_message_has_text_and_html_parts():
    msg = build_email_message(MESSAGE)
    assert msg["To"] == "ana@x.com"
    assert msg["Message-ID"]
    assert msg.get_body(("plain",)).get_content().strip() == "Oi Ana\nlink"
    assert msg.get_body(("html",)).get_content().strip() == "Oi Ana<br>link"


def test_smtp_transport_sends_and_returns_message_id():
    transport = SMTPTransport("smtp.test", 2525, user="u", password="p")

    message_id = transport.send(MESSAGE)

    server = FakeSMTP.instances[0]
    assert (server.host, server.port) == ("smtp.test", 2525)
    assert server.started_tls
    assert server.logged_in == ("u", "p")
    assert server.sent[0]["Message-ID"] == message_id


def test_smtp_refusal_becomes_transport_error():
    transport = SMTPTransport("smtp.test", 25, use_tls=False)
    bounce = OutboundMessage(MESSAGE.sender, "bounce@x.com", MESSAGE.subject, MESSAGE.html, MESSAGE.text)

    with pytest.raises(TransportError):
        transport.send(bounce)


def test_logging_transport_returns_id():
    assert LoggingTransport().send(MESSAGE).startswith("log-")


def test_transport_selection(monkeypatch):
    monkeypatch.setenv("MAIL_TRANSPORT", "smtp")
    monkeypatch.setenv("SMTP_HOST", "smtp.test")
    assert isinstance(get_mail_transport(AppSettings()), SMTPTransport)

    monkeypatch.setenv("MAIL_TRANSPORT", "log")
    assert isinstance(get_mail_transport(AppSettings()), LoggingTransport)
