"""Tests for the SMTP notifier."""

import smtplib
from unittest.mock import patch

import pytest

from verify_relay.errors import DeliveryFailed
from verify_relay.services.email_service import SmtpNotifier

SMTP_SSL = "verify_relay.services.email_service.smtplib.SMTP_SSL"
SMTP = "verify_relay.services.email_service.smtplib.SMTP"


def _notifier(**overrides):
    options = dict(
        host="smtp.test",
        port=465,
        username="verify@example.test",
        password="pw",
        from_address="verify@example.test",
        from_name="Verification Desk",
        use_ssl=True,
        timeout=30,
    )
    options.update(overrides)
    return SmtpNotifier(**options)


class TestSend:

    @patch(SMTP_SSL)
    def test_sends_over_implicit_tls(self, mock_smtp):
        _notifier().send("joe@example.com", "Hello", "<p>Hi</p>")

        mock_smtp.assert_called_once_with("smtp.test", 465, timeout=30)
        server = mock_smtp.return_value
        server.login.assert_called_once_with("verify@example.test", "pw")
        server.starttls.assert_not_called()

        msg = server.send_message.call_args[0][0]
        assert msg["To"] == "joe@example.com"
        assert msg["From"] == "Verification Desk <verify@example.test>"
        assert msg["Subject"] == "Hello"
        assert msg.get_payload()[0].get_content_type() == "text/html"

    @patch(SMTP)
    def test_sends_with_starttls(self, mock_smtp):
        _notifier(port=587, use_ssl=False).send("joe@example.com", "Hello", "<p>Hi</p>")

        mock_smtp.assert_called_once_with("smtp.test", 587, timeout=30)
        server = mock_smtp.return_value
        server.starttls.assert_called_once()
        server.send_message.assert_called_once()

    @patch(SMTP_SSL)
    def test_no_login_without_credentials(self, mock_smtp):
        _notifier(username=None, password=None).send("joe@example.com", "Hello", "<p>Hi</p>")
        mock_smtp.return_value.login.assert_not_called()
        mock_smtp.return_value.send_message.assert_called_once()

    @patch(SMTP_SSL)
    def test_smtp_error_raises_delivery_failed(self, mock_smtp):
        mock_smtp.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad")
        with pytest.raises(DeliveryFailed):
            _notifier().send("joe@example.com", "Hello", "<p>Hi</p>")

    @patch(SMTP_SSL)
    def test_connection_error_raises_delivery_failed(self, mock_smtp):
        mock_smtp.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(DeliveryFailed):
            _notifier().send("joe@example.com", "Hello", "<p>Hi</p>")

    @patch(SMTP_SSL)
    def test_unconfigured_raises_delivery_failed(self, mock_smtp):
        with pytest.raises(DeliveryFailed):
            _notifier(host=None).send("joe@example.com", "Hello", "<p>Hi</p>")
        mock_smtp.assert_not_called()

    def test_from_address_defaults_to_username(self):
        notifier = _notifier(from_address=None, from_name=None)
        msg = notifier.build_message("joe@example.com", "Hello", "<p>Hi</p>")
        assert msg["From"] == "verify@example.test"

    def test_from_config(self, app):
        notifier = SmtpNotifier.from_config(app.config)
        assert notifier.host == "smtp.test"
        assert notifier.port == 465
        assert notifier.use_ssl is True
