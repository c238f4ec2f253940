from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from .config import get_settings
from .models import (
    Booking,
    BookingCreate,
    BookingStatus,
    BookingUpdate,
    Notification,
    Person,
    Room,
    RoomCreate,
    RoomSummary,
    RoomUpdate,
)

logger = Logger()
_settings = get_settings()

_dynamodb: DynamoDBServiceResource = boto3.resource("dynamodb")
_table: DynamoDBTable = _dynamodb.Table(_settings.bookings_table)
_rooms_table: DynamoDBTable = _dynamodb.Table(_settings.rooms_table)
_notifications_table: DynamoDBTable = _dynamodb.Table(_settings.notifications_table)

BOOKING_NOT_FOUND = "Booking not found"
ROOM_NOT_FOUND = "Room not found"
NOTIFICATION_NOT_FOUND = "Notification not found"


class InvalidBookingError(ValueError):
    pass


class RoomUnavailableError(ValueError):
    pass


class BookingConflictError(ValueError):
    def __init__(self, conflicting: Booking) -> None:
        super().__init__("Boardroom is already booked for this time slot")
        self.conflicting = conflicting


class BookingItem(TypedDict, total=False):
    booking_id: str
    user_id: str
    organizer: dict[str, Any]
    room_id: str
    room: dict[str, Any]
    start_time: str
    end_time: str
    purpose: str
    attendees: list[dict[str, Any]]
    attendee_ids: list[str]
    external_attendees: list[dict[str, Any]]
    status: str
    notes: str
    created_at: str
    modified_at: str


class RoomItem(TypedDict, total=False):
    room_id: str
    name: str
    location: str
    capacity: int
    amenities: list[str]
    description: str
    is_active: bool
    created_at: str


class NotificationItem(TypedDict, total=False):
    notification_id: str
    user_id: str
    message: str
    booking_id: str
    read: bool
    created_at: str


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _dt_to_iso(dt: datetime) -> str:
    return _as_utc(dt).isoformat()


def _iso_to_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _now() -> datetime:
    return datetime.now(UTC)


def _collect(operation: Callable[..., Any], **kwargs: Any) -> list[dict[str, Any]]:
    """Run a query/scan and follow LastEvaluatedKey until exhausted."""
    items: list[dict[str, Any]] = []
    while True:
        resp = cast(dict[str, Any], operation(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def _with_organizer(organizer: Person, attendees: list[Person]) -> list[Person]:
    if any(a.user_id == organizer.user_id for a in attendees):
        return list(attendees)
    return [*attendees, organizer]


# region Rooms


def create_room(payload: RoomCreate) -> Room:
    room_id = str(uuid.uuid4())
    item: RoomItem = {
        "room_id": room_id,
        "name": payload.name,
        "location": payload.location,
        "capacity": payload.capacity,
        "amenities": list(payload.amenities),
        "description": payload.description,
        "is_active": True,
        "created_at": _dt_to_iso(_now()),
    }
    logger.info("Creating room", extra={"room_id": room_id, "room_name": payload.name})
    _rooms_table.put_item(Item=item)  # type: ignore
    return _room_to_model(item)


def get_room(room_id: str) -> Room:
    resp = cast(dict[str, Any], _rooms_table.get_item(Key={"room_id": room_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(ROOM_NOT_FOUND)
    return _room_to_model(cast(RoomItem, item))


def list_rooms(include_inactive: bool = False) -> list[Room]:
    rooms = [_room_to_model(cast(RoomItem, it)) for it in _collect(_rooms_table.scan)]
    if not include_inactive:
        rooms = [r for r in rooms if r.is_active]
    return sorted(rooms, key=lambda r: r.name)


def update_room(room_id: str, payload: RoomUpdate) -> Room:
    current = get_room(room_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        return current
    updated = current.model_copy(update=changes)
    item = _room_to_item(updated)
    _rooms_table.put_item(Item=item)  # type: ignore
    return updated


def deactivate_room(room_id: str) -> Room:
    return update_room(room_id, RoomUpdate(is_active=False))


def _room_to_item(room: Room) -> RoomItem:
    return {
        "room_id": room.room_id,
        "name": room.name,
        "location": room.location,
        "capacity": room.capacity,
        "amenities": list(room.amenities),
        "description": room.description,
        "is_active": room.is_active,
        "created_at": _dt_to_iso(room.created_at),
    }


def _room_to_model(item: RoomItem) -> Room:
    return Room(
        room_id=item["room_id"],
        name=item["name"],
        location=item["location"],
        # DynamoDB hands numbers back as Decimal
        capacity=int(item["capacity"]),
        amenities=list(item.get("amenities", [])),
        description=item.get("description", ""),
        is_active=item.get("is_active", True),
        created_at=_iso_to_dt(item["created_at"]),
    )


# endregion

# region Bookings


def find_conflict(
    room_id: str,
    start_time: datetime,
    end_time: datetime,
    exclude_booking_id: str | None = None,
) -> Booking | None:
    """Return a confirmed booking of the room overlapping [start_time, end_time)."""
    items = _collect(
        _table.query,
        IndexName="room_start_index",
        KeyConditionExpression="room_id = :r AND start_time < :end",
        FilterExpression="#s = :s AND end_time > :start",
        ExpressionAttributeNames={"#s": "status"},
        ExpressionAttributeValues={
            ":r": room_id,
            ":s": "confirmed",
            ":start": _dt_to_iso(start_time),
            ":end": _dt_to_iso(end_time),
        },
    )
    for it in items:
        if it.get("booking_id") != exclude_booking_id:
            return _to_model(cast(BookingItem, it))
    return None


def create_booking(payload: BookingCreate, now: datetime | None = None) -> Booking:
    now = now or _now()
    if _as_utc(payload.start_time) <= _as_utc(now):
        raise InvalidBookingError("Start time must be in the future")

    try:
        room = get_room(payload.room_id)
    except KeyError as exc:
        raise RoomUnavailableError("Boardroom not found or inactive") from exc
    if not room.is_active:
        raise RoomUnavailableError("Boardroom not found or inactive")

    conflict = find_conflict(room.room_id, payload.start_time, payload.end_time)
    if conflict is not None:
        raise BookingConflictError(conflict)

    booking_id = str(uuid.uuid4())
    attendees = _with_organizer(payload.organizer, payload.attendees)
    stamp = _dt_to_iso(now)
    item: BookingItem = {
        "booking_id": booking_id,
        "user_id": payload.organizer.user_id,
        "organizer": payload.organizer.model_dump(),
        "room_id": room.room_id,
        "room": RoomSummary.model_validate(room.model_dump()).model_dump(),
        "start_time": _dt_to_iso(payload.start_time),
        "end_time": _dt_to_iso(payload.end_time),
        "purpose": payload.purpose,
        "attendees": [a.model_dump() for a in attendees],
        "attendee_ids": [a.user_id for a in attendees],
        "external_attendees": [e.model_dump() for e in payload.external_attendees],
        "status": "confirmed",
        "notes": payload.notes,
        "created_at": stamp,
        "modified_at": stamp,
    }

    logger.info("Creating booking", extra={"booking_id": booking_id, "room_id": room.room_id})
    _table.put_item(Item=item)  # type: ignore
    return get_booking(booking_id)


def get_booking(booking_id: str) -> Booking:
    resp = cast(dict[str, Any], _table.get_item(Key={"booking_id": booking_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(BOOKING_NOT_FOUND)
    return _to_model(cast(BookingItem, item))


def list_bookings_for_user(user_id: str) -> list[Booking]:
    items = _collect(
        _table.scan,
        FilterExpression="contains(attendee_ids, :uid)",
        ExpressionAttributeValues={":uid": user_id},
    )
    bookings = [_to_model(cast(BookingItem, it)) for it in items]
    return sorted(bookings, key=lambda b: b.start_time, reverse=True)


def list_bookings(
    status: BookingStatus | None = None,
    room_id: str | None = None,
    limit: int | None = None,
) -> list[Booking]:
    filters: list[str] = []
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    if status is not None:
        filters.append("#s = :s")
        names["#s"] = "status"
        values[":s"] = status
    if room_id is not None:
        filters.append("room_id = :r")
        values[":r"] = room_id

    kwargs: dict[str, Any] = {}
    if filters:
        kwargs["FilterExpression"] = " AND ".join(filters)
        kwargs["ExpressionAttributeValues"] = values
    if names:
        kwargs["ExpressionAttributeNames"] = names

    bookings = [_to_model(cast(BookingItem, it)) for it in _collect(_table.scan, **kwargs)]
    bookings.sort(key=lambda b: b.start_time, reverse=True)
    return bookings[:limit] if limit is not None else bookings


def find_bookings(status: BookingStatus, start_from: datetime, start_until: datetime) -> list[Booking]:
    """Bookings with the given status whose start_time lies in [start_from, start_until]."""
    items = _collect(
        _table.query,
        IndexName="status_start_index",
        KeyConditionExpression="#s = :s AND start_time BETWEEN :from AND :until",
        ExpressionAttributeNames={"#s": "status"},
        ExpressionAttributeValues={
            ":s": status,
            ":from": _dt_to_iso(start_from),
            ":until": _dt_to_iso(start_until),
        },
    )
    return [_to_model(cast(BookingItem, it)) for it in items]


def room_availability(room_id: str, day: date) -> list[Booking]:
    day_start = datetime.combine(day, time.min, tzinfo=UTC)
    day_end = day_start + timedelta(days=1) - timedelta(microseconds=1)
    items = _collect(
        _table.query,
        IndexName="room_start_index",
        KeyConditionExpression="room_id = :r AND start_time BETWEEN :from AND :until",
        FilterExpression="#s = :s",
        ExpressionAttributeNames={"#s": "status"},
        ExpressionAttributeValues={
            ":r": room_id,
            ":s": "confirmed",
            ":from": _dt_to_iso(day_start),
            ":until": _dt_to_iso(day_end),
        },
    )
    bookings = [_to_model(cast(BookingItem, it)) for it in items]
    return sorted(bookings, key=lambda b: b.start_time)


def update_booking(booking_id: str, payload: BookingUpdate) -> Booking:
    # Fetch existing, then update selectively
    current = get_booking(booking_id)
    new_start = _as_utc(payload.start_time or current.start_time)
    new_end = _as_utc(payload.end_time or current.end_time)
    if new_end <= new_start:
        raise InvalidBookingError("end_time must be after start_time")

    room = current.room
    if payload.room_id is not None and payload.room_id != current.room.room_id:
        try:
            new_room = get_room(payload.room_id)
        except KeyError as exc:
            raise RoomUnavailableError("Boardroom not found or inactive") from exc
        if not new_room.is_active:
            raise RoomUnavailableError("Boardroom not found or inactive")
        room = RoomSummary.model_validate(new_room.model_dump())

    new_status = payload.status or current.status
    if new_status == "confirmed":
        conflict = find_conflict(room.room_id, new_start, new_end, exclude_booking_id=booking_id)
        if conflict is not None:
            raise BookingConflictError(conflict)

    # Build update expression
    set_parts: list[str] = []
    names: dict[str, str] = {}
    values: dict[str, Any] = {}

    def set_attr(name: str, value: Any) -> None:
        names[f"#_{name}"] = name
        values[f":{name}"] = value
        set_parts.append(f"#_{name} = :{name}")

    if room.room_id != current.room.room_id:
        set_attr("room_id", room.room_id)
        set_attr("room", room.model_dump())
    if payload.start_time is not None:
        set_attr("start_time", _dt_to_iso(payload.start_time))
    if payload.end_time is not None:
        set_attr("end_time", _dt_to_iso(payload.end_time))
    if payload.purpose is not None:
        set_attr("purpose", payload.purpose)
    if payload.attendees is not None:
        attendees = _with_organizer(current.organizer, payload.attendees)
        set_attr("attendees", [a.model_dump() for a in attendees])
        set_attr("attendee_ids", [a.user_id for a in attendees])
    if payload.external_attendees is not None:
        set_attr("external_attendees", [e.model_dump() for e in payload.external_attendees])
    if payload.notes is not None:
        set_attr("notes", payload.notes)
    if payload.status is not None:
        set_attr("status", payload.status)

    # No fields -> no-op
    if not set_parts:
        return current
    set_attr("modified_at", _dt_to_iso(_now()))

    resp = cast(
        dict[str, Any],
        _table.update_item(
            Key={"booking_id": booking_id},
            UpdateExpression="SET " + ", ".join(set_parts),
            ReturnValues="ALL_NEW",
            ConditionExpression="attribute_exists(booking_id)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        ),
    )
    attrs = cast(dict[str, Any], resp.get("Attributes") or {})
    logger.info("Updated booking", extra={"booking_id": booking_id, "fields": sorted(names.values())})
    return _to_model(cast(BookingItem, attrs))


def delete_booking(booking_id: str) -> None:
    _table.delete_item(Key={"booking_id": booking_id})


def cancel_booking(booking_id: str) -> Booking:
    get_booking(booking_id)
    resp = cast(
        dict[str, Any],
        _table.update_item(
            Key={"booking_id": booking_id},
            UpdateExpression="SET #s = :s, modified_at = :m",
            ExpressionAttributeNames={"#s": "status"},
            ExpressionAttributeValues={":s": "cancelled", ":m": _dt_to_iso(_now())},
            ReturnValues="ALL_NEW",
        ),
    )
    attrs = cast(dict[str, Any], resp.get("Attributes") or {})
    logger.info("Cancelled booking", extra={"booking_id": booking_id})
    return _to_model(cast(BookingItem, attrs))


def opt_out(booking_id: str, user_id: str) -> Booking:
    booking = get_booking(booking_id)
    if not any(a.user_id == user_id for a in booking.attendees):
        raise InvalidBookingError("You are not an attendee of this booking")
    if booking.organizer.user_id == user_id:
        raise InvalidBookingError("As the organizer, you cannot opt out. Please cancel the booking instead.")

    remaining = [a for a in booking.attendees if a.user_id != user_id]
    resp = cast(
        dict[str, Any],
        _table.update_item(
            Key={"booking_id": booking_id},
            UpdateExpression="SET attendees = :a, attendee_ids = :ids, modified_at = :m",
            ExpressionAttributeValues={
                ":a": [a.model_dump() for a in remaining],
                ":ids": [a.user_id for a in remaining],
                ":m": _dt_to_iso(_now()),
            },
            ReturnValues="ALL_NEW",
        ),
    )
    attrs = cast(dict[str, Any], resp.get("Attributes") or {})
    return _to_model(cast(BookingItem, attrs))


def _to_model(item: BookingItem) -> Booking:
    room = dict(item["room"])
    room["capacity"] = int(room["capacity"])
    return Booking(
        booking_id=item["booking_id"],
        organizer=Person.model_validate(item["organizer"]),
        room=RoomSummary.model_validate(room),
        start_time=_iso_to_dt(item["start_time"]),
        end_time=_iso_to_dt(item["end_time"]),
        purpose=item["purpose"],
        attendees=[Person.model_validate(a) for a in item.get("attendees", [])],
        external_attendees=item.get("external_attendees", []),  # type: ignore[arg-type]
        status=item.get("status", "confirmed"),  # type: ignore[arg-type]
        notes=item.get("notes", ""),
        created_at=_iso_to_dt(item["created_at"]),
        modified_at=_iso_to_dt(item.get("modified_at", item["created_at"])),
    )


# endregion

# region Notifications


def create_notification(user_id: str, message: str, booking_id: str | None = None) -> Notification:
    item: NotificationItem = {
        "notification_id": str(uuid.uuid4()),
        "user_id": user_id,
        "message": message,
        "read": False,
        "created_at": _dt_to_iso(_now()),
    }
    if booking_id is not None:
        item["booking_id"] = booking_id
    _notifications_table.put_item(Item=item)  # type: ignore
    return _notification_to_model(item)


def list_notifications(user_id: str) -> list[Notification]:
    items = _collect(
        _notifications_table.query,
        IndexName="user_id_index",
        KeyConditionExpression="user_id = :uid",
        ExpressionAttributeValues={":uid": user_id},
        ScanIndexForward=False,
    )
    notifications = [_notification_to_model(cast(NotificationItem, it)) for it in items]
    return sorted(notifications, key=lambda n: n.created_at, reverse=True)


def _get_own_notification(user_id: str, notification_id: str) -> Notification:
    resp = cast(
        dict[str, Any],
        _notifications_table.get_item(Key={"notification_id": notification_id}),
    )
    item = resp.get("Item")
    if not isinstance(item, dict) or item.get("user_id") != user_id:
        raise KeyError(NOTIFICATION_NOT_FOUND)
    return _notification_to_model(cast(NotificationItem, item))


def mark_notification_read(user_id: str, notification_id: str) -> Notification:
    _get_own_notification(user_id, notification_id)
    resp = cast(
        dict[str, Any],
        _notifications_table.update_item(
            Key={"notification_id": notification_id},
            UpdateExpression="SET #r = :r",
            ExpressionAttributeNames={"#r": "read"},
            ExpressionAttributeValues={":r": True},
            ReturnValues="ALL_NEW",
        ),
    )
    attrs = cast(dict[str, Any], resp.get("Attributes") or {})
    return _notification_to_model(cast(NotificationItem, attrs))


def delete_notification(user_id: str, notification_id: str) -> None:
    _get_own_notification(user_id, notification_id)
    _notifications_table.delete_item(Key={"notification_id": notification_id})


def delete_all_notifications(user_id: str) -> int:
    notifications = list_notifications(user_id)
    for n in notifications:
        _notifications_table.delete_item(Key={"notification_id": n.notification_id})
    return len(notifications)


def _notification_to_model(item: NotificationItem) -> Notification:
    return Notification(
        notification_id=item["notification_id"],
        user_id=item["user_id"],
        message=item["message"],
        booking_id=item.get("booking_id"),
        read=item.get("read", False),
        created_at=_iso_to_dt(item["created_at"]),
    )


# endregion
