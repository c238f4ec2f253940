from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, model_validator

BookingStatus = Literal["pending", "confirmed", "cancelled"]


class Person(BaseModel):
    user_id: str = Field(..., min_length=1)
    name: str
    email: EmailStr


class ExternalAttendee(BaseModel):
    email: EmailStr
    name: str | None = None

    @model_validator(mode="after")
    def _default_name(self) -> ExternalAttendee:
        self.email = self.email.strip().lower()
        if not self.name:
            self.name = self.email.split("@")[0]
        return self


class RoomCreate(BaseModel):
    name: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    capacity: int = Field(..., ge=1)
    amenities: list[str] = Field(default_factory=list)
    description: str = ""


class RoomUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    location: str | None = Field(default=None, min_length=1)
    capacity: int | None = Field(default=None, ge=1)
    amenities: list[str] | None = None
    description: str | None = None
    is_active: bool | None = None


class RoomSummary(BaseModel):
    room_id: str
    name: str
    location: str
    capacity: int
    amenities: list[str] = Field(default_factory=list)


class Room(RoomSummary):
    description: str = ""
    is_active: bool = True
    created_at: datetime


class BookingCreate(BaseModel):
    organizer: Person
    room_id: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    purpose: str = Field(..., min_length=1)
    attendees: list[Person] = Field(default_factory=list)
    external_attendees: list[ExternalAttendee] = Field(default_factory=list)
    notes: str = ""

    @model_validator(mode="after")
    def _check_times(self) -> BookingCreate:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class BookingUpdate(BaseModel):
    room_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    purpose: str | None = Field(default=None, min_length=1)
    attendees: list[Person] | None = None
    external_attendees: list[ExternalAttendee] | None = None
    notes: str | None = None
    status: BookingStatus | None = None


class Booking(BaseModel):
    booking_id: str
    organizer: Person
    room: RoomSummary
    start_time: datetime
    end_time: datetime
    purpose: str
    attendees: list[Person] = Field(default_factory=list)
    external_attendees: list[ExternalAttendee] = Field(default_factory=list)
    status: BookingStatus = "confirmed"
    notes: str = ""
    created_at: datetime
    modified_at: datetime


class OptOut(BaseModel):
    user_id: str = Field(..., min_length=1)


class Notification(BaseModel):
    notification_id: str
    user_id: str
    message: str
    booking_id: str | None = None
    read: bool = False
    created_at: datetime
