from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from boardroom import reminders
from boardroom.models import Booking
from boardroom.reminders import ReminderScheduler

NOW = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)


class FakeStore:
    def __init__(self, *bookings: Booking):
        self.bookings = {b.booking_id: b for b in bookings}
        self.queries: list[tuple[str, datetime, datetime]] = []
        self.fail = False
        # Returned regardless of the window, to mimic query edge cases
        self.always: list[Booking] = []

    def find_bookings(self, status, start_from, start_until):
        self.queries.append((status, start_from, start_until))
        if self.fail:
            raise ConnectionError("store unreachable")
        matches = [
            b for b in self.bookings.values() if b.status == status and start_from <= b.start_time <= start_until
        ]
        return matches + [b for b in self.always if b not in matches]

    def get_booking(self, booking_id):
        try:
            return self.bookings[booking_id]
        except KeyError as exc:
            raise KeyError("Booking not found") from exc


class FakeNotifier:
    def __init__(self, failing: set[str] | None = None):
        self.failing = failing or set()
        self.sent: list[tuple[str, list[str]]] = []

    def send_reminder(self, booking, recipients):
        self.sent.append((booking.booking_id, [str(r.email) for r in recipients]))
        if booking.booking_id in self.failing:
            raise RuntimeError("smtp down")


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


def tick(scheduler: ReminderScheduler, now: datetime = NOW) -> None:
    asyncio.run(scheduler.check_upcoming_meetings(now=now))


def test_tick_queries_confirmed_bookings_in_window(notifier) -> None:
    store = FakeStore()
    tick(ReminderScheduler(store, notifier))
    assert store.queries == [("confirmed", NOW + timedelta(minutes=15), NOW + timedelta(minutes=20))]


def test_booking_in_window_gets_one_reminder(make_booking, notifier) -> None:
    store = FakeStore(make_booking(booking_id="b1", start_time=NOW + timedelta(minutes=17)))
    tick(ReminderScheduler(store, notifier))
    assert notifier.sent == [("b1", ["ada@example.com", "grace@example.com"])]


def test_window_edges_are_inclusive(make_booking, notifier) -> None:
    store = FakeStore(
        make_booking(booking_id="early", start_time=NOW + timedelta(minutes=15)),
        make_booking(booking_id="late", start_time=NOW + timedelta(minutes=20)),
        make_booking(booking_id="outside", start_time=NOW + timedelta(minutes=21)),
    )
    tick(ReminderScheduler(store, notifier))
    assert sorted(b for b, _ in notifier.sent) == ["early", "late"]


def test_unconfirmed_bookings_are_not_reminded(make_booking, notifier) -> None:
    store = FakeStore(
        make_booking(booking_id="p", status="pending", start_time=NOW + timedelta(minutes=17)),
        make_booking(booking_id="c", status="cancelled", start_time=NOW + timedelta(minutes=17)),
    )
    tick(ReminderScheduler(store, notifier))
    assert notifier.sent == []


def test_repeated_tick_is_idempotent(make_booking, notifier) -> None:
    store = FakeStore(make_booking(booking_id="b1", start_time=NOW + timedelta(minutes=17)))
    scheduler = ReminderScheduler(store, notifier)
    tick(scheduler)
    tick(scheduler)
    assert len(notifier.sent) == 1


def test_rescheduled_booking_is_reminded_again(make_booking, notifier) -> None:
    first = make_booking(booking_id="b1", start_time=NOW + timedelta(minutes=16))
    store = FakeStore(first)
    scheduler = ReminderScheduler(store, notifier)
    tick(scheduler)

    store.bookings["b1"] = make_booking(booking_id="b1", start_time=NOW + timedelta(minutes=19))
    tick(scheduler)

    assert [b for b, _ in notifier.sent] == ["b1", "b1"]
    assert scheduler.sent_keys == {
        ("b1", NOW + timedelta(minutes=16)),
        ("b1", NOW + timedelta(minutes=19)),
    }


def test_old_dedup_entries_are_purged(notifier) -> None:
    scheduler = ReminderScheduler(FakeStore(), notifier)
    scheduler._sent[("stale", NOW - timedelta(minutes=61))] = True
    scheduler._sent[("recent", NOW - timedelta(minutes=59))] = True
    tick(scheduler)
    assert scheduler.sent_keys == {("recent", NOW - timedelta(minutes=59))}


def test_failure_for_one_booking_does_not_block_others(make_booking) -> None:
    notifier = FakeNotifier(failing={"a"})
    store = FakeStore(
        make_booking(booking_id="a", start_time=NOW + timedelta(minutes=16)),
        make_booking(booking_id="b", start_time=NOW + timedelta(minutes=18)),
    )
    scheduler = ReminderScheduler(store, notifier)
    tick(scheduler)
    assert sorted(b for b, _ in notifier.sent) == ["a", "b"]

    # The failed reminder is still marked as sent and not retried
    tick(scheduler)
    assert len(notifier.sent) == 2  # noqa: PLR2004


def test_store_failure_is_swallowed_and_next_tick_recovers(make_booking, notifier) -> None:
    store = FakeStore(make_booking(booking_id="b1", start_time=NOW + timedelta(minutes=17)))
    store.fail = True
    scheduler = ReminderScheduler(store, notifier)
    tick(scheduler)
    assert notifier.sent == []

    store.fail = False
    tick(scheduler, NOW + timedelta(minutes=1))
    assert [b for b, _ in notifier.sent] == ["b1"]


def test_booking_is_not_reminded_again_while_key_is_retained(make_booking, notifier) -> None:
    booking = make_booking(booking_id="b1", start_time=NOW + timedelta(minutes=17))
    store = FakeStore(booking)
    scheduler = ReminderScheduler(store, notifier)

    tick(scheduler)
    tick(scheduler, NOW + timedelta(minutes=5))
    assert len(notifier.sent) == 1

    # Even if the query hands it back again, the retained key blocks a resend
    store.always.append(booking)
    tick(scheduler, NOW + timedelta(minutes=10))
    assert len(notifier.sent) == 1


def test_schedule_reminder_in_the_past_does_nothing(make_booking, notifier) -> None:
    scheduler = ReminderScheduler(FakeStore(), notifier)
    booking = make_booking(start_time=NOW + timedelta(minutes=10))
    assert scheduler.schedule_reminder(booking, 15, now=NOW) is None
    assert scheduler.schedule_reminder(booking, 10, now=NOW) is None
    assert scheduler._scheduler.get_jobs() == []
    assert notifier.sent == []


def test_schedule_reminder_registers_cancellable_job(make_booking, notifier) -> None:
    scheduler = ReminderScheduler(FakeStore(), notifier)
    booking = make_booking(booking_id="b1", start_time=NOW + timedelta(hours=1))

    job = scheduler.schedule_reminder(booking, 15, now=NOW)

    assert job is not None
    assert job.args == ("b1",)
    assert job.trigger.run_date == NOW + timedelta(minutes=45)
    assert len(scheduler._scheduler.get_jobs()) == 1

    job.remove()
    assert scheduler._scheduler.get_jobs() == []


def test_scheduled_reminder_refetches_and_sends_when_confirmed(make_booking, notifier) -> None:
    booking = make_booking(booking_id="b1", start_time=NOW + timedelta(hours=1))
    scheduler = ReminderScheduler(FakeStore(booking), notifier)

    asyncio.run(scheduler._fire_scheduled_reminder("b1"))

    assert [b for b, _ in notifier.sent] == ["b1"]
    # The one-shot path keeps its own bookkeeping
    assert scheduler.sent_keys == set()


def test_scheduled_reminder_skips_cancelled_booking(make_booking, notifier) -> None:
    store = FakeStore(make_booking(booking_id="b1"))
    scheduler = ReminderScheduler(store, notifier)
    store.bookings["b1"] = make_booking(booking_id="b1", status="cancelled")

    asyncio.run(scheduler._fire_scheduled_reminder("b1"))
    assert notifier.sent == []


def test_scheduled_reminder_skips_deleted_booking(notifier) -> None:
    scheduler = ReminderScheduler(FakeStore(), notifier)
    asyncio.run(scheduler._fire_scheduled_reminder("gone"))
    assert notifier.sent == []


def test_scheduled_reminder_swallows_notifier_failure(make_booking) -> None:
    notifier = FakeNotifier(failing={"b1"})
    scheduler = ReminderScheduler(FakeStore(make_booking(booking_id="b1")), notifier)
    asyncio.run(scheduler._fire_scheduled_reminder("b1"))
    assert len(notifier.sent) == 1


def test_start_registers_polling_job(notifier) -> None:
    scheduler = ReminderScheduler(FakeStore(), notifier)

    async def run() -> list[str]:
        scheduler.start()
        try:
            return [job.id for job in scheduler._scheduler.get_jobs()]
        finally:
            scheduler.stop()

    assert asyncio.run(run()) == ["check_upcoming_meetings"]


class SlowNotifier(FakeNotifier):
    def send_reminder(self, booking, recipients):
        time.sleep(0.05)
        super().send_reminder(booking, recipients)


def test_overlapping_ticks_send_a_single_reminder(make_booking) -> None:
    notifier = SlowNotifier()
    store = FakeStore(make_booking(booking_id="b1", start_time=NOW + timedelta(minutes=17)))
    scheduler = ReminderScheduler(store, notifier)

    async def run_both() -> None:
        await asyncio.gather(
            scheduler.check_upcoming_meetings(now=NOW),
            scheduler.check_upcoming_meetings(now=NOW),
        )

    asyncio.run(run_both())
    assert len(store.queries) == 2  # noqa: PLR2004
    assert [b for b, _ in notifier.sent] == ["b1"]


def test_stop_flushes_reminder_metrics(notifier, monkeypatch: pytest.MonkeyPatch) -> None:
    fake_metrics = MagicMock()
    monkeypatch.setattr(reminders, "metrics", fake_metrics)
    ReminderScheduler(FakeStore(), notifier).stop()
    fake_metrics.flush_metrics.assert_called_once()
