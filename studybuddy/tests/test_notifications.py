import boto3
import pytest
from botocore.stub import ANY, Stubber

from studybuddy.services import notification_service
from studybuddy.services.notification_service import (
    DisabledEmailSender,
    SesEmailSender,
    SmtpEmailSender,
    build_email_sender,
)


@pytest.fixture
def ses_client():
    return boto3.client(
        "ses",
        region_name="us-east-1",
        aws_access_key_id="test",
        aws_secret_access_key="test",
    )


class FakeSMTP:
    instances: list["FakeSMTP"] = []
    fail_with: Exception | None = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def starttls(self, context=None):
        pass

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, msg):
        self.messages.append(msg)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(notification_service.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_ses_sender_delivers_text_and_html(ses_client, settings):
    stubber = Stubber(ses_client)
    stubber.add_response(
        "send_email",
        {"MessageId": "msg-1"},
        {
            "Source": settings.mail_from,
            "Destination": {"ToAddresses": ["friend@example.com"]},
            "Message": {
                "Subject": {"Data": "Hello", "Charset": "UTF-8"},
                "Body": {
                    "Text": {"Data": "plain body", "Charset": "UTF-8"},
                    "Html": {"Data": "<p>html body</p>", "Charset": "UTF-8"},
                },
            },
        },
    )
    stubber.activate()

    try:
        sender = SesEmailSender(ses_client, settings)
        assert sender.send("friend@example.com", "Hello", "plain body", "<p>html body</p>")
        stubber.assert_no_pending_responses()
    finally:
        stubber.deactivate()


def test_ses_failure_is_reported_not_raised(ses_client, settings):
    stubber = Stubber(ses_client)
    stubber.add_client_error(
        "send_email",
        service_error_code="MessageRejected",
        expected_params={
            "Source": ANY,
            "Destination": ANY,
            "Message": ANY,
        },
    )
    stubber.activate()

    try:
        sender = SesEmailSender(ses_client, settings)
        assert sender.send("friend@example.com", "Hello", "body") is False
    finally:
        stubber.deactivate()


def test_smtp_sender_logs_in_and_sends(fake_smtp, settings):
    smtp_settings = settings.model_copy(
        update={
            "smtp_host": "smtp.example.com",
            "smtp_port": 2525,
            "smtp_username": "mailer",
            "smtp_password": "secret",
        }
    )

    sent = SmtpEmailSender(smtp_settings).send(
        "friend@example.com", "Welcome", "hi there", "<p>hi there</p>"
    )

    assert sent is True
    (smtp,) = fake_smtp.instances
    assert (smtp.host, smtp.port) == ("smtp.example.com", 2525)
    assert smtp.logged_in == ("mailer", "secret")
    (message,) = smtp.messages
    assert message["To"] == "friend@example.com"
    assert message["Subject"] == "Welcome"
    assert message.is_multipart()


def test_smtp_connection_errors_return_false(fake_smtp, settings):
    fake_smtp.fail_with = ConnectionRefusedError("no server")

    assert SmtpEmailSender(settings).send("friend@example.com", "Hi", "body") is False


def test_disabled_sender_drops_messages():
    assert DisabledEmailSender().send("friend@example.com", "Hi", "body") is False


def test_build_email_sender_picks_backend(settings, ses_client):
    assert isinstance(
        build_email_sender(settings.model_copy(update={"email_backend": "smtp"})),
        SmtpEmailSender,
    )
    assert isinstance(
        build_email_sender(
            settings.model_copy(update={"email_backend": "ses"}), ses_client
        ),
        SesEmailSender,
    )
    assert isinstance(
        build_email_sender(settings.model_copy(update={"email_backend": "disabled"})),
        DisabledEmailSender,
    )
    with pytest.raises(RuntimeError):
        build_email_sender(settings.model_copy(update={"email_backend": "ses"}))


def test_invitation_email_escapes_html():
    class Capture:
        def send(self, to, subject, text, html=None):
            self.message = (to, subject, text, html)
            return True

    capture = Capture()
    notification_service.send_invitation_email(
        capture,
        to="friend@example.com",
        inviter_name="<Cora>",
        inviter_email="creator@example.com",
        group_name="Algo & Data",
        concept="Graphs",
        link="https://app.example.com/accept-invitation?token=abc&email=x",
    )

    to, subject, text, html = capture.message
    assert to == "friend@example.com"
    assert "Algo & Data" in subject
    assert "token=abc" in text
    assert "&lt;Cora&gt;" in html
    assert "Algo &amp; Data" in html
