"""
Dispatch gateway: one best-effort send over email, SMS or WhatsApp.

The core only sees DispatchGateway.send(). NotificationService is the
production implementation (SMTP for email, Twilio for SMS/WhatsApp); when a
provider has no credentials configured it runs in simulation mode and only
logs the message, as the clinic's demo deployments do.
"""
import os
import uuid
import smtplib
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional

from twilio.rest import Client
from twilio.base.exceptions import TwilioException, TwilioRestException

from ..models.reminder import Channel, DispatchResult
from ..utils.config import config
from ..utils.errors import InvalidRecipient, ProviderUnavailable
from ..utils.validation import validate_recipient, sanitize_phone

logger = logging.getLogger(__name__)

# Twilio error codes that mean the destination itself is unusable
TWILIO_RECIPIENT_ERRORS = {21211, 21214, 21408, 21610, 21614, 63003}


class DispatchGateway(ABC):
    """Single-attempt send; retries are the caller's business"""

    def validate_recipient(self, recipient: Optional[str], channel: Channel):
        channel = Channel(channel)
        if not validate_recipient(channel.value, recipient):
            raise InvalidRecipient(f"Invalid {channel.value} recipient: {recipient!r}")

    def send(self, recipient: str, channel: Channel, subject: Optional[str], body: str) -> DispatchResult:
        channel = Channel(channel)
        self.validate_recipient(recipient, channel)
        return self._send(recipient.strip(), channel, subject or "", body)

    @abstractmethod
    def _send(self, recipient: str, channel: Channel, subject: str, body: str) -> DispatchResult:
        """Deliver one message; raise ProviderUnavailable or InvalidRecipient on failure"""


class NotificationService(DispatchGateway):
    def __init__(self, logs_dir: Optional[str] = None, twilio_client: Optional[Client] = None):
        self.logs_dir = logs_dir or config.LOGS_PATH
        
        # Email configuration
        self.smtp_server = config.EMAIL_HOST
        self.smtp_port = config.EMAIL_PORT
        self.email_user = config.EMAIL_USER
        self.email_password = config.EMAIL_PASSWORD
        self.from_email = config.FROM_EMAIL or self.email_user
        
        # SMS / WhatsApp configuration (Twilio)
        self.twilio_sid = config.TWILIO_SID
        self.twilio_token = config.TWILIO_TOKEN
        self.twilio_phone = config.TWILIO_PHONE
        self.twilio_whatsapp = config.TWILIO_WHATSAPP or config.TWILIO_PHONE
        self._twilio_client = twilio_client
        
        self.notifications_log = os.path.join(self.logs_dir, "notifications.log")
        os.makedirs(self.logs_dir, exist_ok=True)

    def _log_notification(self, message: str, level: str = "INFO"):
        """Append one line per attempt to logs/notifications.log"""
        timestamp = datetime.now().isoformat()
        log_message = f"[{timestamp}] [{level}] {message}"
        
        try:
            with open(self.notifications_log, "a", encoding="utf-8") as f:
                f.write(log_message + "\n")
        except OSError as e:
            logger.warning(f"Could not write notification log: {e}")
        
        if level == "ERROR":
            logger.error(message)
        else:
            logger.info(message)

    @property
    def twilio_client(self) -> Client:
        if self._twilio_client is None:
            self._twilio_client = Client(self.twilio_sid, self.twilio_token)
        return self._twilio_client

    def _send(self, recipient: str, channel: Channel, subject: str, body: str) -> DispatchResult:
        if channel == Channel.EMAIL:
            return self.send_email(recipient, subject, body)
        return self.send_message(recipient, body, channel)

    def send_email(self, to_email: str, subject: str, body: str,
                   html_body: Optional[str] = None) -> DispatchResult:
        """Send email notification"""
        if not self.email_user or not self.email_password:
            self._log_notification(f"EMAIL SIMULATION: To: {to_email}, Subject: {subject}", "SIMULATION")
            return DispatchResult(external_id=f"sim-{uuid.uuid4().hex[:12]}", delivered_ok=True)
        
        msg = MIMEMultipart('alternative')
        msg['From'] = self.from_email
        msg['To'] = to_email
        msg['Subject'] = subject
        msg['Message-ID'] = f"<{uuid.uuid4().hex}@{self.smtp_server}>"
        msg.attach(MIMEText(body, 'plain', 'utf-8'))
        if html_body:
            msg.attach(MIMEText(html_body, 'html', 'utf-8'))
        
        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30) as server:
                server.starttls()
                server.login(self.email_user, self.email_password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            self._log_notification(f"Email recipient refused {to_email}: {e}", "ERROR")
            raise InvalidRecipient(f"Email recipient refused: {to_email}") from e
        except (smtplib.SMTPException, OSError) as e:
            self._log_notification(f"Failed to send email to {to_email}: {e}", "ERROR")
            raise ProviderUnavailable(f"Email provider unavailable: {e}") from e
        
        self._log_notification(f"Email sent to {to_email}: {subject}")
        return DispatchResult(external_id=msg['Message-ID'], delivered_ok=True)

    def send_message(self, to_phone: str, message: str, channel: Channel = Channel.SMS) -> DispatchResult:
        """Send SMS or WhatsApp message through Twilio"""
        channel = Channel(channel)
        phone = sanitize_phone(to_phone.replace("whatsapp:", ""))
        label = "WHATSAPP" if channel == Channel.WHATSAPP else "SMS"
        
        if not self.twilio_sid or not self.twilio_token:
            self._log_notification(f"{label} SIMULATION: To: {phone}, Message: {message[:50]}...", "SIMULATION")
            return DispatchResult(external_id=f"sim-{uuid.uuid4().hex[:12]}", delivered_ok=True)
        
        if channel == Channel.WHATSAPP:
            to_addr = f"whatsapp:{phone}"
            from_addr = f"whatsapp:{sanitize_phone(self.twilio_whatsapp or '')}"
        else:
            to_addr = phone
            from_addr = self.twilio_phone
        
        try:
            twilio_message = self.twilio_client.messages.create(
                body=message,
                from_=from_addr,
                to=to_addr
            )
        except TwilioRestException as e:
            self._log_notification(f"Failed to send {label} to {phone}: {e.code} {e.msg}", "ERROR")
            if e.code in TWILIO_RECIPIENT_ERRORS:
                raise InvalidRecipient(f"{label} recipient rejected: {phone}") from e
            raise ProviderUnavailable(f"Twilio error {e.code}: {e.msg}") from e
        except (TwilioException, OSError) as e:
            self._log_notification(f"Failed to send {label} to {phone}: {e}", "ERROR")
            raise ProviderUnavailable(f"Twilio unavailable: {e}") from e
        
        self._log_notification(f"{label} sent to {phone}: {message[:50]}...")
        return DispatchResult(external_id=twilio_message.sid, delivered_ok=True)
