import logging
import smtplib
import ssl
from email.message import EmailMessage
from html import escape
from typing import Protocol

from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from studybuddy.core.config import Settings

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        """Deliver one message; report failure as ``False`` instead of raising."""
        ...


class SmtpEmailSender:
    def __init__(self, settings: Settings):
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.username = settings.smtp_username
        self.password = settings.smtp_password
        self.mail_from = settings.mail_from

    def send(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"StudyBuddy <{self.mail_from}>"
        msg["To"] = to
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=20) as smtp:
                smtp.ehlo()
                smtp.starttls(context=ssl.create_default_context())
                smtp.ehlo()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("SMTP delivery of %r to %s failed", subject, to)
            return False
        logger.info("Sent %r to %s via SMTP", subject, to)
        return True


class SesEmailSender:
    def __init__(self, client: BaseClient, settings: Settings):
        self.client = client
        self.mail_from = settings.mail_from

    def send(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        body = {"Text": {"Data": text, "Charset": "UTF-8"}}
        if html:
            body["Html"] = {"Data": html, "Charset": "UTF-8"}
        try:
            response = self.client.send_email(
                Source=self.mail_from,
                Destination={"ToAddresses": [to]},
                Message={
                    "Subject": {"Data": subject, "Charset": "UTF-8"},
                    "Body": body,
                },
            )
        except (ClientError, BotoCoreError):
            logger.exception("SES delivery of %r to %s failed", subject, to)
            return False
        logger.info("Sent %r to %s via SES (%s)", subject, to, response.get("MessageId"))
        return True


class DisabledEmailSender:
    def send(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        logger.info("Email delivery disabled; dropped %r to %s", subject, to)
        return False


def build_email_sender(
    settings: Settings, ses_client: BaseClient | None = None
) -> EmailSender:
    if settings.email_backend == "smtp":
        return SmtpEmailSender(settings)
    if settings.email_backend == "ses":
        if ses_client is None:
            raise RuntimeError("SES client is required for EMAIL_BACKEND=ses")
        return SesEmailSender(ses_client, settings)
    return DisabledEmailSender()


def send_invitation_email(
    sender: EmailSender,
    to: str,
    inviter_name: str,
    inviter_email: str,
    group_name: str,
    concept: str,
    link: str,
) -> bool:
    subject = f'You\'re invited to join "{group_name}" study group on StudyBuddy!'
    text = (
        f'You\'ve been invited to join "{group_name}" study group on StudyBuddy!\n\n'
        f"{inviter_name} ({inviter_email}) has invited you to join their study group.\n\n"
        f"Group: {group_name}\n"
        f"Subject: {concept}\n\n"
        f"Accept the invitation by visiting: {link}\n\n"
        "If you're new to StudyBuddy, the link will help you create an account "
        "and join the group.\n"
    )
    html = (
        f"<p><b>{escape(inviter_name)}</b> ({escape(inviter_email)}) has invited you "
        f"to join <b>{escape(group_name)}</b> on StudyBuddy.</p>"
        f"<p><strong>Subject:</strong> {escape(concept)}</p>"
        f'<p><a href="{escape(link)}">Accept the invitation</a></p>'
        "<p>If you did not expect this email, you can safely ignore it.</p>"
    )
    return sender.send(to, subject, text, html)


def send_group_decision_email(
    sender: EmailSender,
    to: str,
    group_name: str,
    approved: bool,
    reason: str | None = None,
) -> bool:
    if approved:
        subject = f'Your study group "{group_name}" has been approved'
        text = f'Good news! "{group_name}" is now live and open for members.\n'
    else:
        subject = f'Your study group "{group_name}" was not approved'
        text = f'"{group_name}" was rejected.\n\nReason: {reason}\n'
    return sender.send(to, subject, text)


def send_join_decision_email(
    sender: EmailSender,
    to: str,
    group_name: str,
    approved: bool,
    reason: str | None = None,
) -> bool:
    if approved:
        subject = f'You\'ve joined "{group_name}"'
        text = f'Your request to join "{group_name}" was approved. Welcome aboard!\n'
    else:
        subject = f'Your request to join "{group_name}"'
        text = (
            f'Your request to join "{group_name}" was declined.\n\nReason: {reason}\n'
        )
    return sender.send(to, subject, text)
