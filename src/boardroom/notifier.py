"""Reminder and booking email delivery.

Every notifier exposes ``send_reminder(booking, recipients)`` and raises
``NotificationError`` when delivery failed. The reminder scheduler calls the
same method from both its polling and its one-shot path. ``EmailNotifier``
also sends the confirmation, invitation and cancellation emails for bookings.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, Literal, Protocol

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from . import dal
from .config import Settings
from .models import Booking, ExternalAttendee, Person

if TYPE_CHECKING:
    from mypy_boto3_events import EventBridgeClient
    from mypy_boto3_sesv2 import SESV2Client
else:
    EventBridgeClient = Any  # type: ignore[assignment]
    SESV2Client = Any  # type: ignore[assignment]

logger = Logger()

Recipient = Person | ExternalAttendee
BookingEmailKind = Literal["created", "cancelled"]


class NotificationError(RuntimeError):
    pass


class Notifier(Protocol):
    def send_reminder(self, booking: Booking, recipients: Sequence[Recipient]) -> None: ...


def reminder_recipients(booking: Booking) -> list[Recipient]:
    """Internal attendees followed by external ones, one entry per email."""
    seen: set[str] = set()
    recipients: list[Recipient] = []
    for person in [*booking.attendees, *booking.external_attendees]:
        key = str(person.email).lower()
        if key in seen:
            continue
        seen.add(key)
        recipients.append(person)
    return recipients


def _format_reminder(booking: Booking, recipient: Recipient) -> tuple[str, str]:
    start = booking.start_time.strftime("%Y-%m-%d %H:%M %Z")
    end = booking.end_time.strftime("%H:%M %Z")
    subject = f"Meeting Reminder: {booking.purpose}"
    body = (
        f"Hello {recipient.name},\n\n"
        f"Your meeting \"{booking.purpose}\" starts soon.\n\n"
        f"Room: {booking.room.name} ({booking.room.location})\n"
        f"Time: {start} - {end}\n"
        f"Organizer: {booking.organizer.name} <{booking.organizer.email}>\n"
    )
    if booking.room.amenities:
        body += f"Amenities: {', '.join(booking.room.amenities)}\n"
    if booking.notes:
        body += f"\nNotes: {booking.notes}\n"
    body += "\nBoardroom Booking System\n"
    return subject, body


def _format_booking_notification(booking: Booking, recipient: Person, kind: BookingEmailKind) -> tuple[str, str]:
    start = booking.start_time.strftime("%Y-%m-%d %H:%M %Z")
    end = booking.end_time.strftime("%H:%M %Z")
    is_organizer = recipient.user_id == booking.organizer.user_id
    if kind == "cancelled":
        subject = f"Meeting Cancelled: {booking.purpose}"
        intro = f"The meeting \"{booking.purpose}\" has been cancelled."
    elif is_organizer:
        subject = f"Booking Confirmed: {booking.purpose}"
        intro = f"Your booking \"{booking.purpose}\" is confirmed."
    else:
        subject = f"Meeting Invitation: {booking.purpose}"
        intro = f"{booking.organizer.name} invited you to \"{booking.purpose}\"."
    body = (
        f"Hello {recipient.name},\n\n"
        f"{intro}\n\n"
        f"Room: {booking.room.name} ({booking.room.location})\n"
        f"Time: {start} - {end}\n"
        f"Organizer: {booking.organizer.name} <{booking.organizer.email}>\n"
        "\nBoardroom Booking System\n"
    )
    return subject, body


class EmailNotifier:
    def __init__(self, sender: str, client: SESV2Client | None = None) -> None:
        self._sender = sender
        self._client: SESV2Client = client or boto3.client("sesv2")

    def _send(self, to_address: str, subject: str, body: str) -> None:
        self._client.send_email(
            FromEmailAddress=self._sender,
            Destination={"ToAddresses": [to_address]},
            Content={
                "Simple": {
                    "Subject": {"Data": subject},
                    "Body": {"Text": {"Data": body}},
                }
            },
        )

    def send_booking_notification(self, booking: Booking, recipient: Person, kind: BookingEmailKind) -> None:
        """Confirmation, invitation or cancellation email for one internal user."""
        subject, body = _format_booking_notification(booking, recipient, kind)
        try:
            self._send(str(recipient.email), subject, body)
        except (ClientError, BotoCoreError) as exc:
            raise NotificationError(f"Booking email failed for {recipient.email}") from exc

    def send_reminder(self, booking: Booking, recipients: Sequence[Recipient]) -> None:
        failed: list[str] = []
        for recipient in recipients:
            subject, body = _format_reminder(booking, recipient)
            try:
                self._send(str(recipient.email), subject, body)
            except (ClientError, BotoCoreError):
                logger.exception(
                    "Reminder email failed",
                    extra={"booking_id": booking.booking_id, "recipient": str(recipient.email)},
                )
                failed.append(str(recipient.email))
        if failed:
            raise NotificationError(f"Reminder email failed for {', '.join(failed)}")
        logger.info(
            "Reminder emails sent",
            extra={"booking_id": booking.booking_id, "recipients": len(recipients)},
        )


class EventNotifier:
    def __init__(self, event_bus_name: str = "default", client: EventBridgeClient | None = None) -> None:
        self._event_bus_name = event_bus_name
        self._client: EventBridgeClient = client or boto3.client("events")

    def send_reminder(self, booking: Booking, recipients: Sequence[Recipient]) -> None:
        detail = {
            "version": "1.0",
            "type": "ReminderDue",
            "booking_id": booking.booking_id,
            "room_id": booking.room.room_id,
            "start_time": booking.start_time.isoformat(),
            "purpose": booking.purpose,
            "recipients": [str(r.email) for r in recipients],
        }
        logger.info("Emitting reminder event", extra={"booking_id": booking.booking_id})
        try:
            resp = self._client.put_events(
                Entries=[
                    {
                        "Source": "booking.reminder",
                        "DetailType": "ReminderDue",
                        "Detail": json.dumps(detail),
                        "EventBusName": self._event_bus_name,
                    }
                ]
            )
        except (ClientError, BotoCoreError) as exc:
            raise NotificationError("Reminder event could not be published") from exc
        if resp.get("FailedEntryCount"):
            raise NotificationError("Reminder event was rejected by the event bus")


class InAppNotifier:
    """Writes a notification record for each internal attendee."""

    def send_reminder(self, booking: Booking, recipients: Sequence[Recipient]) -> None:
        start = booking.start_time.strftime("%H:%M %Z")
        message = f'Reminder: "{booking.purpose}" in {booking.room.name} starts at {start}'
        for recipient in recipients:
            if isinstance(recipient, Person):
                dal.create_notification(recipient.user_id, message, booking_id=booking.booking_id)


class CompositeNotifier:
    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self._notifiers = list(notifiers)

    def send_reminder(self, booking: Booking, recipients: Sequence[Recipient]) -> None:
        # Every channel gets its attempt even when an earlier one failed
        failed: list[str] = []
        for notifier in self._notifiers:
            try:
                notifier.send_reminder(booking, recipients)
            except Exception:
                logger.exception(
                    "Reminder channel failed",
                    extra={"booking_id": booking.booking_id, "channel": type(notifier).__name__},
                )
                failed.append(type(notifier).__name__)
        if failed:
            raise NotificationError(f"Reminder channels failed: {', '.join(failed)}")


def build_notifier(settings: Settings) -> CompositeNotifier:
    notifiers: list[Notifier] = []
    if settings.email_enabled:
        notifiers.append(EmailNotifier(settings.email_sender))
    if settings.events_enabled:
        notifiers.append(EventNotifier(settings.event_bus_name))
    if settings.in_app_enabled:
        notifiers.append(InAppNotifier())
    return CompositeNotifier(notifiers)
