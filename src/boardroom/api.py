from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from functools import lru_cache

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import FastAPI, HTTPException, Query, Request
from starlette.responses import Response

from boardroom import dal
from boardroom.config import get_settings
from boardroom.models import (
    Booking,
    BookingCreate,
    BookingStatus,
    BookingUpdate,
    Notification,
    OptOut,
    Room,
    RoomCreate,
    RoomUpdate,
)
from boardroom.notifier import BookingEmailKind, EmailNotifier, NotificationError
from boardroom.reminders import ReminderScheduler, build_reminder_scheduler

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="BoardroomBooking")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    if settings.reminders_enabled:
        app.state.reminder_scheduler = build_reminder_scheduler(settings)
        app.state.reminder_scheduler.start()
    yield
    scheduler: ReminderScheduler | None = getattr(app.state, "reminder_scheduler", None)
    if scheduler is not None:
        scheduler.stop()


app = FastAPI(title="Boardroom Booking API", version="0.1.0", lifespan=lifespan)


def _not_found(exc: KeyError) -> HTTPException:
    return HTTPException(status_code=404, detail=exc.args[0] if exc.args else "Not found")


def _conflict(exc: dal.BookingConflictError) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={
            "message": str(exc),
            "conflictingBooking": {
                "purpose": exc.conflicting.purpose,
                "startTime": exc.conflicting.start_time.isoformat(),
                "endTime": exc.conflicting.end_time.isoformat(),
            },
        },
    )


@lru_cache
def get_booking_mailer() -> EmailNotifier | None:
    settings = get_settings()
    return EmailNotifier(settings.email_sender) if settings.email_enabled else None


def _send_booking_emails(booking: Booking, kind: BookingEmailKind) -> None:
    # Email problems never fail the request
    mailer = get_booking_mailer()
    if mailer is None:
        return
    for person in booking.attendees:
        try:
            mailer.send_booking_notification(booking, person, kind)
        except NotificationError:
            logger.exception(
                "Booking email failed",
                extra={"booking_id": booking.booking_id, "kind": kind, "recipient": str(person.email)},
            )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# region Rooms


@tracer.capture_method
@app.post("/rooms", response_model=Room, status_code=201)
def create_room(payload: RoomCreate) -> Room:
    return dal.create_room(payload)


@tracer.capture_method
@app.get("/rooms", response_model=list[Room])
def list_rooms(include_inactive: bool = False) -> list[Room]:
    return dal.list_rooms(include_inactive=include_inactive)


@tracer.capture_method
@app.get("/rooms/{room_id}", response_model=Room)
def get_room(room_id: str) -> Room:
    try:
        return dal.get_room(room_id)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.put("/rooms/{room_id}", response_model=Room)
def update_room(room_id: str, payload: RoomUpdate) -> Room:
    try:
        return dal.update_room(room_id, payload)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.delete("/rooms/{room_id}", response_model=Room)
def deactivate_room(room_id: str) -> Room:
    try:
        return dal.deactivate_room(room_id)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.get("/rooms/{room_id}/availability", response_model=list[Booking])
def room_availability(room_id: str, day: date = Query(alias="date")) -> list[Booking]:
    return dal.room_availability(room_id, day)


# endregion

# region Bookings


@tracer.capture_method
@app.post("/bookings", response_model=Booking, status_code=201)
def create_booking(payload: BookingCreate, request: Request) -> Booking:
    try:
        booking = dal.create_booking(payload)
    except dal.BookingConflictError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    metrics.add_metric(name="CreateBooking", value=1, unit=MetricUnit.Count)

    for attendee in booking.attendees:
        if attendee.user_id == booking.organizer.user_id:
            continue
        dal.create_notification(
            attendee.user_id,
            f'You have been invited to "{booking.purpose}" in {booking.room.name}',
            booking_id=booking.booking_id,
        )
    _send_booking_emails(booking, "created")

    scheduler: ReminderScheduler | None = getattr(request.app.state, "reminder_scheduler", None)
    if scheduler is not None:
        scheduler.schedule_reminder(booking, get_settings().reminder_lead_minutes)
    return booking


@tracer.capture_method
@app.get("/bookings", response_model=list[Booking])
def list_bookings(
    status: BookingStatus | None = None,
    room_id: str | None = None,
    limit: int | None = None,
) -> list[Booking]:
    return dal.list_bookings(status=status, room_id=room_id, limit=limit)


@tracer.capture_method
@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(booking_id: str) -> Booking:
    try:
        return dal.get_booking(booking_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Booking not found") from exc


@tracer.capture_method
@app.get("/users/{user_id}/bookings", response_model=list[Booking])
def list_user_bookings(user_id: str) -> list[Booking]:
    return dal.list_bookings_for_user(user_id)


@tracer.capture_method
@app.put("/bookings/{booking_id}", response_model=Booking)
def update_booking(booking_id: str, payload: BookingUpdate) -> Booking:
    try:
        return dal.update_booking(booking_id, payload)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Booking not found") from exc
    except dal.BookingConflictError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@tracer.capture_method
@app.delete("/bookings/{booking_id}")
def delete_booking(booking_id: str) -> Response:
    dal.delete_booking(booking_id)
    return Response(status_code=204)


@tracer.capture_method
@app.post("/bookings/{booking_id}/cancel", response_model=Booking)
def cancel_booking(booking_id: str) -> Booking:
    try:
        booking = dal.cancel_booking(booking_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Booking not found") from exc

    for attendee in booking.attendees:
        if attendee.user_id == booking.organizer.user_id:
            continue
        dal.create_notification(
            attendee.user_id,
            f'Meeting "{booking.purpose}" in {booking.room.name} has been cancelled',
            booking_id=booking.booking_id,
        )
    _send_booking_emails(booking, "cancelled")
    return booking


@tracer.capture_method
@app.post("/bookings/{booking_id}/opt-out", response_model=Booking)
def opt_out(booking_id: str, payload: OptOut) -> Booking:
    try:
        booking = dal.opt_out(booking_id, payload.user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Booking not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    dal.create_notification(
        booking.organizer.user_id,
        f'{payload.user_id} opted out of your meeting "{booking.purpose}" in {booking.room.name}',
        booking_id=booking.booking_id,
    )
    return booking


# endregion

# region Notifications


@tracer.capture_method
@app.get("/users/{user_id}/notifications", response_model=list[Notification])
def list_notifications(user_id: str) -> list[Notification]:
    return dal.list_notifications(user_id)


@tracer.capture_method
@app.post("/users/{user_id}/notifications/{notification_id}/read", response_model=Notification)
def mark_notification_read(user_id: str, notification_id: str) -> Notification:
    try:
        return dal.mark_notification_read(user_id, notification_id)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.delete("/users/{user_id}/notifications/{notification_id}")
def delete_notification(user_id: str, notification_id: str) -> Response:
    try:
        dal.delete_notification(user_id, notification_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return Response(status_code=204)


@tracer.capture_method
@app.delete("/users/{user_id}/notifications")
def delete_all_notifications(user_id: str) -> dict[str, int]:
    return {"deleted": dal.delete_all_notifications(user_id)}


# endregion
