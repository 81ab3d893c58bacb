"""Plain-text e-mail to the configured destination address over SMTP."""

import logging
import smtplib
from collections.abc import Callable
from email.message import EmailMessage

from aicli.config import ServicesConfig
from aicli.tools import HandlerError

logger = logging.getLogger(__name__)

SMTP_PORT = 25
SMTP_TIMEOUT = 5.0


class EmailSender:
    """Sends mail through the SMTP server named in the config."""

    def __init__(
        self,
        config: ServicesConfig,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.config = config
        self._smtp_factory = smtp_factory

    def send_email(self, subject: str, body: str) -> str:
        recipient = self.config.destination_email
        if not recipient:
            raise HandlerError(
                "DESTINATION_EMAIL not set in config. Please set it to the recipient's email address."
            )
        sender = self.config.sender_email or recipient
        server = self.config.smtp_server

        message = EmailMessage()
        message["From"] = sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        logger.debug(f"Sending email via {server}: subject={subject!r}, {len(body)} chars")
        try:
            with self._smtp_factory(server, SMTP_PORT, timeout=SMTP_TIMEOUT) as smtp:
                if self.config.smtp_username and self.config.smtp_password and server != "localhost":
                    smtp.ehlo()
                    if smtp.has_extn("starttls"):
                        smtp.starttls()
                        smtp.ehlo()
                    smtp.login(self.config.smtp_username, self.config.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Email send failed: {e}")
            raise HandlerError(f"Failed to send email: {e}") from e

        logger.info(f"Email sent to {recipient} via {server}")
        return f"Email sent successfully to {recipient} via {server}"
