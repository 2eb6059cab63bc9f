import smtplib

import pytest

from hikariauth.service import email as email_module
from hikariauth.service.email import EmailService


class FakeSMTP:
    instances: list = []
    fail_with: Exception | None = None

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.sent.append(msg)


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(email_module.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def _service(**overrides) -> EmailService:
    params = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="pw",
        base_url="https://chat.example.com/",
    )
    params.update(overrides)
    return EmailService(**params)


def test_links_quote_the_token():
    service = _service()
    assert service.verification_link("a.b+c") == "https://chat.example.com/auth/verify?token=a.b%2Bc"
    assert service.reset_link("t") == "https://chat.example.com/auth/reset?token=t"


async def test_unconfigured_service_logs_instead_of_sending(smtp):
    service = EmailService(base_url="http://localhost:5173")

    assert not service.is_configured
    assert await service.send_email_verification("a@example.com", "tok") is True
    assert smtp.instances == []


async def test_verification_mail_goes_out_over_starttls(smtp):
    assert await _service().send_email_verification("a@example.com", "tok") is True

    (server,) = smtp.instances
    assert server.started_tls
    assert server.logged_in == ("mailer@example.com", "pw")
    msg = server.sent[0]
    assert msg["To"] == "a@example.com"
    assert msg["From"] == "Hikari Chat <mailer@example.com>"
    text_part = msg.get_body(preferencelist=("plain",))
    assert "https://chat.example.com/auth/verify?token=tok" in text_part.get_content()


async def test_implicit_tls_skips_starttls(smtp):
    assert await _service(smtp_use_tls=False, smtp_port=465).send_password_reset(
        "a@example.com", "tok"
    )
    assert not smtp.instances[0].started_tls


async def test_smtp_failures_are_reported_not_raised(smtp):
    smtp.fail_with = smtplib.SMTPAuthenticationError(535, b"bad credentials")

    assert await _service().send_password_reset("a@example.com", "tok") is False
