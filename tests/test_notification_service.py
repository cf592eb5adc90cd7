"""
Tests for the dispatch gateway and its SMTP/Twilio implementation.
No network access: providers are either unconfigured (simulation) or mocked.
"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest
from twilio.base.exceptions import TwilioRestException

from careremind.models.reminder import Channel
from careremind.services.notification_service import NotificationService
from careremind.utils.errors import InvalidRecipient, ProviderUnavailable


@pytest.fixture
def service(tmp_path):
    svc = NotificationService(logs_dir=str(tmp_path / "logs"))
    svc.email_user = svc.email_password = None
    svc.twilio_sid = svc.twilio_token = None
    return svc


@pytest.fixture
def twilio_service(tmp_path):
    client = MagicMock()
    svc = NotificationService(logs_dir=str(tmp_path / "logs"), twilio_client=client)
    svc.twilio_sid = "AC123"
    svc.twilio_token = "token"
    svc.twilio_phone = "+15550001111"
    svc.twilio_whatsapp = "+15550002222"
    return svc


class TestRecipientValidation:
    @pytest.mark.parametrize("recipient,channel", [
        ("", Channel.SMS),
        (None, Channel.EMAIL),
        ("not-an-email", Channel.EMAIL),
        ("12", Channel.WHATSAPP),
    ])
    def test_invalid_recipient(self, service, recipient, channel):
        with pytest.raises(InvalidRecipient):
            service.send(recipient, channel, "s", "b")


class TestSimulation:
    def test_email_simulated_and_logged(self, service):
        result = service.send("asha@example.com", Channel.EMAIL, "Subject", "Body")
        assert result.delivered_ok is True
        assert result.external_id.startswith("sim-")
        with open(service.notifications_log, encoding="utf-8") as f:
            assert "EMAIL SIMULATION" in f.read()

    def test_sms_simulated(self, service):
        result = service.send("+91 98765 43210", "sms", None, "Body")
        assert result.delivered_ok is True
        with open(service.notifications_log, encoding="utf-8") as f:
            assert "SMS SIMULATION: To: +919876543210" in f.read()


class TestTwilio:
    def test_sms_sent(self, twilio_service):
        twilio_service.twilio_client.messages.create.return_value = MagicMock(sid="SM123")
        result = twilio_service.send("+919876543210", Channel.SMS, None, "Hello")
        assert result.external_id == "SM123"
        twilio_service.twilio_client.messages.create.assert_called_once_with(
            body="Hello", from_="+15550001111", to="+919876543210"
        )

    def test_whatsapp_prefix(self, twilio_service):
        twilio_service.twilio_client.messages.create.return_value = MagicMock(sid="SM456")
        twilio_service.send("+919876543210", Channel.WHATSAPP, None, "Hello")
        kwargs = twilio_service.twilio_client.messages.create.call_args.kwargs
        assert kwargs["to"] == "whatsapp:+919876543210"
        assert kwargs["from_"] == "whatsapp:+15550002222"

    def test_rejected_number_is_invalid_recipient(self, twilio_service):
        twilio_service.twilio_client.messages.create.side_effect = TwilioRestException(
            400, "/Messages", msg="Invalid 'To' Phone Number", code=21211
        )
        with pytest.raises(InvalidRecipient):
            twilio_service.send("+919876543210", Channel.SMS, None, "Hello")

    def test_other_errors_are_provider_unavailable(self, twilio_service):
        twilio_service.twilio_client.messages.create.side_effect = TwilioRestException(
            503, "/Messages", msg="Service unavailable", code=20503
        )
        with pytest.raises(ProviderUnavailable):
            twilio_service.send("+919876543210", Channel.SMS, None, "Hello")


class TestSmtp:
    @pytest.fixture
    def smtp_service(self, service):
        service.email_user = "clinic@example.com"
        service.email_password = "secret"
        service.from_email = "clinic@example.com"
        return service

    def test_email_sent(self, smtp_service):
        with patch("careremind.services.notification_service.smtplib.SMTP") as smtp:
            result = smtp_service.send("asha@example.com", Channel.EMAIL, "Subject", "Body")
        server = smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.send_message.assert_called_once()
        assert result.delivered_ok is True

    def test_connection_failure(self, smtp_service):
        with patch("careremind.services.notification_service.smtplib.SMTP", side_effect=OSError("refused")):
            with pytest.raises(ProviderUnavailable):
                smtp_service.send("asha@example.com", Channel.EMAIL, "Subject", "Body")

    def test_recipient_refused(self, smtp_service):
        with patch("careremind.services.notification_service.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            server.send_message.side_effect = smtplib.SMTPRecipientsRefused({"asha@example.com": (550, b"no")})
            with pytest.raises(InvalidRecipient):
                smtp_service.send("asha@example.com", Channel.EMAIL, "Subject", "Body")
