from __future__ import annotations

import copy
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

# boto3 resources are created at import time and need a region
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

from boardroom import api, dal  # noqa: E402
from boardroom.models import Booking, Person, RoomSummary  # noqa: E402
from boardroom.notifier import EmailNotifier  # noqa: E402


class FakeTable:
    """In-memory stand-in for the handful of DynamoDB calls the DAL makes."""

    def __init__(self, key: str):
        self.key = key
        self.items: dict[str, dict[str, Any]] = {}

    def put_item(self, Item, **kwargs):  # noqa NOSONAR
        self.items[Item[self.key]] = copy.deepcopy(dict(Item))

    def get_item(self, Key):  # noqa NOSONAR
        item = self.items.get(Key[self.key])
        return {"Item": copy.deepcopy(item)} if item else {}

    def update_item(self, **kwargs):
        key = kwargs["Key"][self.key]
        attrs = self.items[key]
        eav = kwargs.get("ExpressionAttributeValues") or {}
        ean = kwargs.get("ExpressionAttributeNames") or {}
        set_part = kwargs["UpdateExpression"].split("SET", 1)[1]
        for assign in [s.strip() for s in set_part.split(",") if s.strip()]:
            name, val = [s.strip() for s in assign.split("=")]
            attrs[ean.get(name, name)] = copy.deepcopy(eav[val])
        return {"Attributes": copy.deepcopy(attrs)}

    def delete_item(self, Key):  # noqa NOSONAR
        self.items.pop(Key[self.key], None)

    def query(self, **kwargs):
        index = kwargs.get("IndexName")
        v = kwargs["ExpressionAttributeValues"]
        items = list(self.items.values())
        if index == "status_start_index":
            items = [it for it in items if it["status"] == v[":s"] and v[":from"] <= it["start_time"] <= v[":until"]]
        elif index == "room_start_index":
            items = [it for it in items if it["room_id"] == v[":r"] and it["status"] == v[":s"]]
            if ":end" in v:
                items = [it for it in items if it["start_time"] < v[":end"] and it["end_time"] > v[":start"]]
            else:
                items = [it for it in items if v[":from"] <= it["start_time"] <= v[":until"]]
        elif index == "user_id_index":
            items = [it for it in items if it["user_id"] == v[":uid"]]
        else:
            raise AssertionError(f"unexpected index {index}")
        return {"Items": copy.deepcopy(items)}

    def scan(self, **kwargs):
        v = kwargs.get("ExpressionAttributeValues") or {}
        items = list(self.items.values())
        if ":uid" in v:
            items = [it for it in items if v[":uid"] in it.get("attendee_ids", [])]
        if ":s" in v:
            items = [it for it in items if it.get("status") == v[":s"]]
        if ":r" in v:
            items = [it for it in items if it.get("room_id") == v[":r"]]
        return {"Items": copy.deepcopy(items)}


@pytest.fixture(autouse=True)
def tables(monkeypatch: pytest.MonkeyPatch) -> dict[str, FakeTable]:
    fakes = {
        "bookings": FakeTable("booking_id"),
        "rooms": FakeTable("room_id"),
        "notifications": FakeTable("notification_id"),
    }
    monkeypatch.setattr(dal, "_table", fakes["bookings"])
    monkeypatch.setattr(dal, "_rooms_table", fakes["rooms"])
    monkeypatch.setattr(dal, "_notifications_table", fakes["notifications"])
    return fakes


@pytest.fixture(autouse=True)
def mail_client(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """SES client behind the booking emails sent by the API."""
    client = MagicMock()
    monkeypatch.setattr(api, "get_booking_mailer", lambda: EmailNotifier("rooms@example.com", client=client))
    return client


@pytest.fixture()
def make_booking() -> Callable[..., Booking]:
    def factory(**overrides: Any) -> Booking:
        start = overrides.pop("start_time", datetime(2030, 1, 1, 12, 0, tzinfo=UTC))
        base: dict[str, Any] = dict(
            booking_id="b-123",
            organizer=Person(user_id="u-1", name="Ada", email="ada@example.com"),
            room=RoomSummary(room_id="r-1", name="Everest", location="Floor 3", capacity=8),
            start_time=start,
            end_time=start + timedelta(hours=1),
            purpose="Sprint review",
            attendees=[
                Person(user_id="u-1", name="Ada", email="ada@example.com"),
                Person(user_id="u-2", name="Grace", email="grace@example.com"),
            ],
            status="confirmed",
            created_at=datetime(2029, 12, 1, tzinfo=UTC),
            modified_at=datetime(2029, 12, 1, tzinfo=UTC),
        )
        base.update(overrides)
        return Booking(**base)

    return factory
