"""Domain models for the event lifecycle and notification system."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class EventStatus(StrEnum):
    UNLISTED = "unlisted"
    ANNOUNCED = "announced"
    PRELIMINARY = "preliminary"
    STARTED = "started"
    CONCLUDED = "concluded"
    CANCELED = "canceled"


# Statuses in which an event may hold scheduler triggers.
SCHEDULABLE_STATUSES = frozenset({EventStatus.ANNOUNCED, EventStatus.PRELIMINARY})
TERMINAL_STATUSES = frozenset({EventStatus.CONCLUDED, EventStatus.CANCELED})


class EntityType(StrEnum):
    UNKNOWN = "unknown"
    USER = "user"
    GROUP = "group"
    EVENT = "event"


class EventStarStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ReminderWindow(StrEnum):
    ONE_DAY = "OneDay"
    ONE_HOUR = "OneHour"
    THIRTY_MINUTES = "ThirtyMinutes"

    @property
    def offset(self) -> timedelta:
        return _REMINDER_OFFSETS[self]

    @property
    def phrase(self) -> str:
        return _REMINDER_PHRASES[self]


_REMINDER_OFFSETS = {
    ReminderWindow.ONE_DAY: timedelta(days=1),
    ReminderWindow.ONE_HOUR: timedelta(hours=1),
    ReminderWindow.THIRTY_MINUTES: timedelta(minutes=30),
}

_REMINDER_PHRASES = {
    ReminderWindow.ONE_DAY: "one day",
    ReminderWindow.ONE_HOUR: "one hour",
    ReminderWindow.THIRTY_MINUTES: "30 minutes",
}


class TriggerPurpose(StrEnum):
    START = "start"
    END = "end"
    REMIND_ONE_DAY = "remind_one_day"
    REMIND_ONE_HOUR = "remind_one_hour"
    REMIND_THIRTY_MINUTES = "remind_thirty_minutes"

    @property
    def window(self) -> ReminderWindow | None:
        return _PURPOSE_WINDOWS.get(self)


_PURPOSE_WINDOWS = {
    TriggerPurpose.REMIND_ONE_DAY: ReminderWindow.ONE_DAY,
    TriggerPurpose.REMIND_ONE_HOUR: ReminderWindow.ONE_HOUR,
    TriggerPurpose.REMIND_THIRTY_MINUTES: ReminderWindow.THIRTY_MINUTES,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class User(BaseModel):
    id: str = Field(default_factory=_new_id)
    username: str
    social_id: str | None = None
    email: str | None = None


class Group(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""


class EventStar(BaseModel):
    user_id: str
    title: str | None = None
    status: EventStarStatus = EventStarStatus.PENDING


class Event(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    group_id: str
    status: EventStatus = EventStatus.UNLISTED
    start_time: datetime | None = None
    end_time: datetime | None = None
    auto_start: bool = False
    stars: list[EventStar] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @model_validator(mode="after")
    def _end_after_start(self) -> Event:
        if (
            self.start_time is not None
            and self.end_time is not None
            and self.end_time <= self.start_time
        ):
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def is_scheduled(self) -> bool:
        return self.start_time is not None and self.end_time is not None

    def star(self, user_id: str) -> EventStar | None:
        return next((s for s in self.stars if s.user_id == user_id), None)


class NotificationPreferences(BaseModel):
    """Per-follow switches for which moments a follower wants to hear about."""

    at_start: bool = True
    at_thirty_minutes: bool = False
    at_one_hour: bool = False
    at_one_day: bool = False


class Follow(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    entity_id: str
    entity_type: EntityType
    followed_at: datetime = Field(default_factory=utcnow)
    preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    user_id: str
    key: str
    title: str
    description: str
    entity_id: str | None = None
    entity_type: EntityType | None = None
    created_at: datetime = Field(default_factory=utcnow)
    read: bool = False


class WebPushSubscription(BaseModel):
    endpoint: str
    p256dh: str
    auth: str
    user_id: str
    created_at: datetime = Field(default_factory=utcnow)


class Trigger(BaseModel):
    """A scheduled (event, purpose, fire instant) timer entry."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    purpose: TriggerPurpose
    fire_at: datetime

    @property
    def key(self) -> str:
        return trigger_key(self.event_id, self.purpose)


def trigger_key(event_id: str, purpose: TriggerPurpose) -> str:
    """Return the unique scheduler key for an event's trigger."""
    if purpose is TriggerPurpose.START:
        return f"event-starting.{event_id}"
    if purpose is TriggerPurpose.END:
        return f"event-ending.{event_id}"
    return f"event-reminder.{event_id}.{purpose.window}"


class NotificationPage(BaseModel):
    notifications: list[Notification]
    next_cursor: str | None = None
    unread: int = 0


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class CreateUserRequest(BaseModel):
    username: str = Field(min_length=1)
    social_id: str | None = None
    email: str | None = None


class CreateGroupRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class CreateEventRequest(BaseModel):
    name: str = Field(min_length=1)
    group_id: str
    description: str = ""
    auto_start: bool = False


class UpdateEventRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    auto_start: bool | None = None


class ScheduleEventRequest(BaseModel):
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Naive times are taken as UTC.
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def _end_after_start(self) -> ScheduleEventRequest:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class FollowRequest(BaseModel):
    user_id: str
    entity_id: str
    entity_type: EntityType
    preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)


class StarInvitationRequest(BaseModel):
    user_id: str
    inviter_id: str
    title: str | None = None


class PushSubscriptionRequest(BaseModel):
    user_id: str
    endpoint: str = Field(min_length=1)
    p256dh: str
    auth: str
