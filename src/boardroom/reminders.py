"""Meeting reminder scheduler.

Polls the booking store every few minutes for confirmed bookings that start
15-20 minutes from now and sends each of them a single reminder. Sent
reminders are remembered per ``(booking_id, start_time)`` so a rescheduled
booking is reminded again for its new time. The memory is process-local and
is lost on restart.

``schedule_reminder`` is an additional one-shot path used when a booking is
created. It does not share the polling loop's memory, so a booking handled by
both paths can be reminded twice.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Protocol

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from aws_lambda_powertools import Logger
from aws_lambda_powertools.metrics import Metrics, MetricUnit

from . import dal
from .config import Settings
from .models import Booking, BookingStatus
from .notifier import Notifier, build_notifier, reminder_recipients

logger = Logger()
metrics = Metrics(namespace="BoardroomBooking")

POLL_INTERVAL = timedelta(minutes=5)
WINDOW_START = timedelta(minutes=15)
WINDOW_END = timedelta(minutes=20)
RETENTION = timedelta(hours=1)
DEFAULT_REMINDER_MINUTES = 15

ReminderKey = tuple[str, datetime]


class BookingStore(Protocol):
    def find_bookings(
        self, status: BookingStatus, start_from: datetime, start_until: datetime
    ) -> Sequence[Booking]: ...

    def get_booking(self, booking_id: str) -> Booking: ...


class ReminderScheduler:
    def __init__(
        self,
        store: BookingStore,
        notifier: Notifier,
        poll_interval: timedelta = POLL_INTERVAL,
        window_start: timedelta = WINDOW_START,
        window_end: timedelta = WINDOW_END,
        retention: timedelta = RETENTION,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._poll_interval = poll_interval
        self._window_start = window_start
        self._window_end = window_end
        self._retention = retention
        self._scheduler = scheduler or AsyncIOScheduler(timezone=UTC)
        self._sent: dict[ReminderKey, bool] = {}

    @property
    def sent_keys(self) -> set[ReminderKey]:
        return set(self._sent)

    def start(self) -> None:
        self._scheduler.add_job(
            self.check_upcoming_meetings,
            "interval",
            seconds=int(self._poll_interval.total_seconds()),
            id="check_upcoming_meetings",
            max_instances=2,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Meeting reminder scheduler started", extra={"interval": str(self._poll_interval)})

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        # Outside Lambda nothing else flushes the buffered reminder metrics
        metrics.flush_metrics()
        logger.info("Meeting reminder scheduler stopped")

    async def check_upcoming_meetings(self, now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        window_start = now + self._window_start
        window_end = now + self._window_end

        try:
            bookings = await asyncio.to_thread(
                self._store.find_bookings, "confirmed", window_start, window_end
            )
        except Exception:
            logger.exception("Error checking upcoming meetings")
            return

        for booking in bookings:
            key = (booking.booking_id, booking.start_time)
            if key in self._sent:
                continue
            # Recorded before dispatch so an overlapping tick skips it, and kept
            # on failure so a broken notifier is not retried every tick
            self._sent[key] = True
            await self._send_meeting_reminder(booking)

        self._purge(now)

    def _purge(self, now: datetime) -> None:
        cutoff = now - self._retention
        expired = [key for key in self._sent if key[1] < cutoff]
        for key in expired:
            del self._sent[key]
        if expired:
            logger.debug("Purged reminder keys", extra={"count": len(expired)})

    async def _send_meeting_reminder(self, booking: Booking) -> None:
        logger.info(
            "Sending reminder for meeting",
            extra={"booking_id": booking.booking_id, "purpose": booking.purpose},
        )
        try:
            await asyncio.to_thread(self._notifier.send_reminder, booking, reminder_recipients(booking))
        except Exception:
            metrics.add_metric(name="ReminderFailed", unit=MetricUnit.Count, value=1)
            logger.exception(
                f"Failed to send reminder for meeting {booking.purpose}",
                extra={"booking_id": booking.booking_id},
            )
            return
        metrics.add_metric(name="ReminderSent", unit=MetricUnit.Count, value=1)
        logger.info("Reminder sent for meeting", extra={"booking_id": booking.booking_id, "purpose": booking.purpose})

    def schedule_reminder(
        self,
        booking: Booking,
        reminder_minutes: int = DEFAULT_REMINDER_MINUTES,
        now: datetime | None = None,
    ) -> Job | None:
        """Arrange a one-shot reminder ``reminder_minutes`` before the booking starts.

        Returns the APScheduler job, which can be removed to revoke the reminder,
        or ``None`` when the reminder time has already passed.
        """
        now = now or datetime.now(UTC)
        fire_at = booking.start_time - timedelta(minutes=reminder_minutes)
        if fire_at <= now:
            return None

        job = self._scheduler.add_job(
            self._fire_scheduled_reminder,
            "date",
            run_date=fire_at,
            args=[booking.booking_id],
        )
        logger.info(
            "Reminder scheduled",
            extra={"booking_id": booking.booking_id, "purpose": booking.purpose, "fire_at": fire_at.isoformat()},
        )
        return job

    async def _fire_scheduled_reminder(self, booking_id: str) -> None:
        try:
            booking = await asyncio.to_thread(self._store.get_booking, booking_id)
        except KeyError:
            logger.debug("Scheduled reminder skipped, booking is gone", extra={"booking_id": booking_id})
            return
        except Exception:
            logger.exception("Error in scheduled reminder", extra={"booking_id": booking_id})
            return

        if booking.status != "confirmed":
            logger.debug(
                "Scheduled reminder skipped, booking not confirmed",
                extra={"booking_id": booking_id, "status": booking.status},
            )
            return
        await self._send_meeting_reminder(booking)


def build_reminder_scheduler(settings: Settings) -> ReminderScheduler:
    return ReminderScheduler(
        store=dal,
        notifier=build_notifier(settings),
        poll_interval=timedelta(minutes=settings.reminder_poll_minutes),
        window_start=timedelta(minutes=settings.reminder_window_start_minutes),
        window_end=timedelta(minutes=settings.reminder_window_end_minutes),
        retention=timedelta(minutes=settings.reminder_retention_minutes),
    )
