from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BOARDROOM_")

    # DynamoDB tables
    bookings_table: str = "bookings"
    rooms_table: str = "rooms"
    notifications_table: str = "notifications"

    # Notifier channels
    email_enabled: bool = True
    email_sender: str = "no-reply@boardroom.local"
    events_enabled: bool = False
    event_bus_name: str = "default"
    in_app_enabled: bool = True

    # Reminder scheduling (minutes)
    reminders_enabled: bool = True
    reminder_poll_minutes: int = 5
    reminder_window_start_minutes: int = 15
    reminder_window_end_minutes: int = 20
    reminder_retention_minutes: int = 60
    reminder_lead_minutes: int = 15


@lru_cache
def get_settings() -> Settings:
    return Settings()
