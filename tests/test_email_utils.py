import smtplib
import pytest
from school_app import email_utils


class FakeSMTP:
    sent = []

    def __init__(self, host, port):
        self.host, self.port = host, port
        self.calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def send_message(self, msg):
        FakeSMTP.sent.append((self, msg))


@pytest.fixture()
def smtp(app, monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(email_utils.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setitem(app.config, "MAIL_HOST", "smtp.gvs.test")
    monkeypatch.setitem(app.config, "MAIL_USER", "mailer@gvs.test")
    monkeypatch.setitem(app.config, "MAIL_PASSWORD", "secret")
    return FakeSMTP


def test_send_templated_email_over_tls(app, smtp):
    with app.test_request_context():
        assert email_utils.send_templated_email(
            "notification", "parent@gvs.test", title="Sports day", message="Friday 9am", campus_name="GVS")
    server, msg = smtp.sent[0]
    assert (server.host, server.port) == ("smtp.gvs.test", 587)
    assert server.calls == ["starttls", ("login", "mailer@gvs.test")]
    assert msg["Subject"] == "Sports day"
    assert msg["To"] == "parent@gvs.test"
    assert msg.is_multipart()


def test_delivery_failure_returns_false(app, smtp, monkeypatch):
    def refuse(self, msg):
        raise smtplib.SMTPRecipientsRefused({"x@gvs.test": (550, b"no such user")})

    monkeypatch.setattr(FakeSMTP, "send_message", refuse)
    with app.app_context():
        assert email_utils.send_email("Hello", "x@gvs.test", "body") is False


def test_no_mail_host_skips_delivery(app, smtp, monkeypatch):
    monkeypatch.setitem(app.config, "MAIL_HOST", None)
    with app.app_context():
        assert email_utils.send_email("Hello", "x@gvs.test", "body") is False
    assert smtp.sent == []


def test_unknown_template_is_rejected(app):
    with app.app_context(), pytest.raises(ValueError):
        email_utils.render_email("invoice")
