import smtplib
from datetime import datetime, timezone

from rimadmin.service.email import EmailService

EXPIRES = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, from_addr, to_addr, message):
        FakeSMTP.sent.append((from_addr, to_addr, message))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, from_addr, to_addr, message):
        raise smtplib.SMTPRecipientsRefused({to_addr: (550, b"no such user")})


def test_unconfigured_service_logs_instead_of_sending():
    service = EmailService(frontend_url="https://admin.rim.ng/")

    assert service.is_configured is False
    assert service.send_password_reset("ops@example.com", "abc123", EXPIRES) is True


def test_reset_link_uses_frontend_url():
    service = EmailService(frontend_url="https://admin.rim.ng/")

    assert service.reset_link("abc123") == "https://admin.rim.ng/reset-password/abc123"


def test_send_over_smtp(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@rim.ng",
        frontend_url="https://admin.rim.ng",
    )

    assert service.send_password_reset("ops@example.com", "abc123", EXPIRES) is True

    from_addr, to_addr, message = FakeSMTP.sent[0]
    assert from_addr == "noreply@rim.ng"
    assert to_addr == "ops@example.com"
    assert "Password Reset Request - RIM Admin" in message


def test_smtp_failure_reported_as_false(monkeypatch):
    monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@rim.ng")

    assert service.send_password_reset("ops@example.com", "abc123", EXPIRES) is False


def test_redact_email():
    service = EmailService()

    assert service._redact_email("operations@example.com") == "op***@example.com"
    assert service._redact_email("broken") == "redacted"
