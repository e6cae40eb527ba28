"""Mail senders. The pipeline only relies on ``send`` returning a bool."""

import logging
from abc import ABC, abstractmethod

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from edusense.config import Settings
from edusense.email_templates import strip_html
from edusense.models import EmailMessage

logger = logging.getLogger(__name__)


class MailSender(ABC):
    @abstractmethod
    def send(self, message: EmailMessage) -> bool:
        """Deliver one message. Returns False on failure instead of raising."""


class SendGridMailSender(MailSender):
    def __init__(self, api_key: str, from_email: str):
        self.client = SendGridAPIClient(api_key)
        self.from_email = from_email

    def send(self, message: EmailMessage) -> bool:
        mail = Mail(
            from_email=self.from_email,
            to_emails=message.to,
            subject=message.subject,
            html_content=message.html,
            plain_text_content=message.text or strip_html(message.html),
        )
        try:
            response = self.client.send(mail)
        except Exception as e:
            logger.error("Error sending email via SendGrid to %s: %s", message.to, e)
            return False
        if response.status_code >= 400:
            logger.error("SendGrid rejected email to %s: HTTP %s", message.to, response.status_code)
            return False
        logger.info("Email sent to %s: %s", message.to, message.subject)
        return True


class LoggingMailSender(MailSender):
    """Development sender that only logs what would have been sent."""

    def send(self, message: EmailMessage) -> bool:
        logger.info("Email (not sent, no mail transport configured) to %s: %s", message.to, message.subject)
        return True


def build_mail_sender(settings: Settings) -> MailSender:
    if settings.sendgrid_api_key:
        return SendGridMailSender(settings.sendgrid_api_key, settings.email_from)
    logger.warning("SENDGRID_API_KEY not set; emails will be logged, not delivered")
    return LoggingMailSender()
