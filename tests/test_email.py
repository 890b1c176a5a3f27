"""Transactional email composition and delivery failure handling."""

import smtplib
from unittest.mock import MagicMock, patch

from cronostudio.service.email import EmailService


def _configured(**overrides):
    values = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer@example.com",
        smtp_password="pw",
        from_email="noreply@example.com",
        base_url="https://studio.example.com/",
    )
    values.update(overrides)
    return EmailService(**values)


class TestDevMode:
    def test_unconfigured_logs_instead_of_sending(self):
        service = EmailService()
        assert not service.is_configured
        with patch("cronostudio.service.email.smtplib.SMTP") as smtp:
            assert service.send_password_reset("user@example.com", "tok") is True
        smtp.assert_not_called()

    def test_redaction(self):
        assert EmailService()._redact_email("someone@example.com") == "so***@example.com"
        assert EmailService()._redact_email("garbage") == "redacted"


class TestDelivery:
    def test_reset_link(self):
        service = _configured()
        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_password_reset("user@example.com", "abc123")
        to, subject, html_body, text_body = send.call_args[0]
        assert to == "user@example.com"
        assert "https://studio.example.com/reset-password?token=abc123" in text_body
        assert "https://studio.example.com/reset-password?token=abc123" in html_body

    def test_verification_link(self):
        service = _configured()
        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_email_verification("user@example.com", "xyz")
        assert "/verify-email?token=xyz" in send.call_args[0][3]

    def test_starttls_and_login(self):
        service = _configured()
        server = MagicMock()
        with patch("cronostudio.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send_password_reset("user@example.com", "tok") is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@example.com", "pw")
        server.sendmail.assert_called_once()

    def test_auth_failure_returns_false(self):
        service = _configured()
        server = MagicMock()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad creds")
        with patch("cronostudio.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send_password_reset("user@example.com", "tok") is False

    def test_connection_failure_returns_false(self):
        service = _configured()
        with patch(
            "cronostudio.service.email.smtplib.SMTP", side_effect=OSError("unreachable")
        ):
            assert service.send_email_verification("user@example.com", "tok") is False
