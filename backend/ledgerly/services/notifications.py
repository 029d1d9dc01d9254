"""Outbound delivery of one-time codes over SMS and email."""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

import httpx

from ledgerly.config import Settings
from ledgerly.services.activity import mask_target

logger = logging.getLogger(__name__)


class CodeNotifier(Protocol):
    """Anything that can hand a raw code to the user."""

    def send_code(self, channel: str, target: str, code: str) -> None: ...


def send_email_notification(
    settings: Settings,
    to_email: str,
    subject: str,
    text_content: str,
) -> bool:
    """Send an email using SMTP. Returns False when SMTP is not configured or fails."""
    if not settings.smtp_host:
        logger.info("SMTP not configured, skipping email")
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_email
    msg["To"] = to_email
    msg.attach(MIMEText(text_content, "plain"))

    try:
        with smtplib.SMTP(
            settings.smtp_host,
            settings.smtp_port,
            timeout=settings.notification_timeout_seconds,
        ) as server:
            server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {mask_target('EMAIL', to_email)}: {e}")
        return False


def send_sms_notification(settings: Settings, phone: str, message: str) -> bool:
    """Send an SMS through the configured HTTP gateway."""
    if not settings.sms_gateway_url:
        logger.info("SMS gateway not configured, skipping SMS")
        return False

    headers = {}
    if settings.sms_gateway_api_key:
        headers["Authorization"] = f"Bearer {settings.sms_gateway_api_key}"

    try:
        response = httpx.post(
            settings.sms_gateway_url,
            json={"to": phone, "sender": settings.sms_sender_id, "message": message},
            headers=headers,
            timeout=settings.notification_timeout_seconds,
        )
        response.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.error(f"Failed to send SMS to {mask_target('PHONE', phone)}: {e}")
        return False


class NotificationDispatcher:
    """Routes codes to SMS or email. Delivery failures are logged, never raised."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def send_code(self, channel: str, target: str, code: str) -> None:
        ttl = self.settings.otp_ttl_minutes
        if channel == "PHONE":
            message = f"Your {self.settings.app_name} OTP is {code}. It expires in {ttl} minutes."
            delivered = send_sms_notification(self.settings, target, message)
        else:
            delivered = send_email_notification(
                self.settings,
                target,
                f"Your {self.settings.app_name} OTP",
                f"OTP: {code} (valid {ttl} minutes)",
            )

        if self.settings.expose_otp_codes:
            logger.debug(f"[diagnostic] OTP for {mask_target(channel, target)}: {code}")
        if not delivered:
            logger.warning(f"OTP delivery to {mask_target(channel, target)} via {channel} did not complete")
