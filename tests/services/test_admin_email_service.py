import pytest

from app.services import admin_email_service
from core.settings import Settings


class _FakeSMTP:
    instances: list["_FakeSMTP"] = []

    def __init__(self, host, port, timeout):
        self.host, self.port, self.timeout = host, port, timeout
        self.sent = []
        self.logged_in = None
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def starttls(self):
        pass

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.sent.append(msg)


@pytest.fixture()
def smtp(monkeypatch):
    _FakeSMTP.instances = []
    monkeypatch.setattr(admin_email_service.smtplib, "SMTP", _FakeSMTP)
    return _FakeSMTP


@pytest.mark.asyncio
async def test_alert_goes_to_every_admin(monkeypatch, smtp):
    settings = Settings(
        smtp_host="mail.clinic.test",
        smtp_port=587,
        smtp_user="alerts@clinic.test",
        admin_email="ops@clinic.test, lead@clinic.test",
        smtp_timeout_seconds=5,
    )
    monkeypatch.setattr(admin_email_service, "get_settings", lambda: settings)

    sent = await admin_email_service.send_admin_alert_email(
        subject="2 therapists at critical capacity", body="details"
    )

    assert sent is True
    [conn] = smtp.instances
    assert (conn.host, conn.port, conn.timeout) == ("mail.clinic.test", 587, 5)
    assert conn.logged_in[0] == "alerts@clinic.test"
    [msg] = conn.sent
    assert msg["To"] == "ops@clinic.test, lead@clinic.test"
    assert msg["Subject"] == f"[{settings.app_name}] 2 therapists at critical capacity"


@pytest.mark.asyncio
async def test_unconfigured_mail_is_skipped(monkeypatch, smtp):
    monkeypatch.setattr(
        admin_email_service, "get_settings", lambda: Settings(smtp_host=None, admin_email=None)
    )

    sent = await admin_email_service.send_admin_alert_email(subject="x", body="y")

    assert sent is False
    assert smtp.instances == []
