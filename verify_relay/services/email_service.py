"""
Email service — SMTP delivery of customer notifications.

Sends synchronously so the caller knows whether the message left. A
failure raises DeliveryFailed; the caller decides whether that matters
(for the welcome email it does not: the fulfillment is already stored).

Usage:
    notifier = SmtpNotifier.from_config(app.config)
    notifier.send("user@example.com", "Hello", "<p>Hi</p>")
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from verify_relay.errors import DeliveryFailed

logger = logging.getLogger(__name__)


class SmtpNotifier:
    """Sends one HTML email per call over SMTP (implicit TLS or STARTTLS)."""

    def __init__(self, host, port=465, username=None, password=None,
                 from_address=None, from_name=None, use_ssl=True, timeout=30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address or username
        self.from_name = from_name
        self.use_ssl = use_ssl
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            host=config.get("MAIL_SMTP_HOST"),
            port=config.get("MAIL_SMTP_PORT", 465),
            username=config.get("MAIL_USERNAME"),
            password=config.get("MAIL_PASSWORD"),
            from_address=config.get("MAIL_FROM_ADDRESS"),
            from_name=config.get("MAIL_FROM_NAME"),
            use_ssl=config.get("MAIL_USE_SSL", True),
            timeout=config.get("MAIL_TIMEOUT", 30),
        )

    def build_message(self, to, subject, html):
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        if self.from_name:
            msg["From"] = f"{self.from_name} <{self.from_address}>"
        else:
            msg["From"] = self.from_address
        msg["To"] = to
        msg.attach(MIMEText(html, "html"))
        return msg

    def send(self, to, subject, html):
        """Send an HTML email. Raises DeliveryFailed if it cannot be handed off."""
        if not self.host or not self.from_address:
            raise DeliveryFailed("MAIL_SMTP_HOST or MAIL_FROM_ADDRESS not configured")

        msg = self.build_message(to, subject, html)

        try:
            if self.use_ssl:
                server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with server:
                if not self.use_ssl:
                    server.ehlo()
                    server.starttls()
                    server.ehlo()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailed(f"Failed to send email to {to}: {e}") from e

        logger.info(f"Email sent to {to} — {subject}")
