"""Email notifications for approved and rejected slot requests."""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Optional

from parking_backend.utils.config import Settings, get_settings
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)

APPROVAL_SUBJECT = "Parking slot request approved"
REJECTION_SUBJECT = "Parking slot request rejected"


def render_approval(slot_number: str, vehicle_info: dict[str, str], location: str) -> str:
    plate = vehicle_info.get("plate_number", "your vehicle")
    return (
        "Hello,\n\n"
        f"Your parking slot request for vehicle {plate} has been approved.\n"
        f"Assigned slot: {slot_number}\n"
        f"Location: {location}\n\n"
        "Please park only in the assigned slot.\n"
    )


def render_rejection(vehicle_info: dict[str, str], location: str, reason: str) -> str:
    plate = vehicle_info.get("plate_number", "your vehicle")
    return (
        "Hello,\n\n"
        f"Your parking slot request for vehicle {plate} has been rejected.\n"
        f"Requested area: {location}\n"
        f"Reason: {reason}\n\n"
        "You may submit a new request at any time.\n"
    )


class SmtpNotificationGateway:
    """Sends notifications over SMTP; any failure is raised to the caller."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        if not self._settings.smtp_host:
            raise ValueError("SMTP_HOST must be configured for SMTP notifications")

    def send_approval(
        self,
        recipient: str,
        slot_number: str,
        vehicle_info: dict[str, str],
        location: str,
    ) -> None:
        self._send(recipient, APPROVAL_SUBJECT, render_approval(slot_number, vehicle_info, location))

    def send_rejection(
        self,
        recipient: str,
        vehicle_info: dict[str, str],
        location: str,
        reason: str,
    ) -> None:
        self._send(recipient, REJECTION_SUBJECT, render_rejection(vehicle_info, location, reason))

    def _send(self, recipient: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self._settings.smtp_sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(
            self._settings.smtp_host,
            self._settings.smtp_port,
            timeout=self._settings.smtp_timeout_seconds,
        ) as client:
            if self._settings.smtp_use_tls:
                client.starttls()
            if self._settings.smtp_username and self._settings.smtp_password:
                client.login(self._settings.smtp_username, self._settings.smtp_password)
            client.send_message(message)
        logger.info("Email sent | recipient=%s | subject=%s", recipient, subject)


class LoggingNotificationGateway:
    """Writes notifications to the log; used when no SMTP server is configured."""

    def send_approval(
        self,
        recipient: str,
        slot_number: str,
        vehicle_info: dict[str, str],
        location: str,
    ) -> None:
        logger.info(
            "Email (log only) | recipient=%s | subject=%s\n%s",
            recipient,
            APPROVAL_SUBJECT,
            render_approval(slot_number, vehicle_info, location),
        )

    def send_rejection(
        self,
        recipient: str,
        vehicle_info: dict[str, str],
        location: str,
        reason: str,
    ) -> None:
        logger.info(
            "Email (log only) | recipient=%s | subject=%s\n%s",
            recipient,
            REJECTION_SUBJECT,
            render_rejection(vehicle_info, location, reason),
        )


def build_notification_gateway(
    settings: Optional[Settings] = None,
) -> SmtpNotificationGateway | LoggingNotificationGateway:
    resolved = settings or get_settings()
    if resolved.smtp_host:
        return SmtpNotificationGateway(resolved)
    logger.warning("SMTP_HOST not configured; notifications will only be logged")
    return LoggingNotificationGateway()
