"""Domain messages published on the event bus.

Messages are immutable and carry identifiers plus the minimal payload their
subscribers need; handlers re-fetch anything authoritative from the store.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from atlas.domain.models import EventStatus, Notification, ReminderWindow, User


class DomainMessage(BaseModel):
    model_config = ConfigDict(frozen=True)


class EventCreated(DomainMessage):
    """Fired when a new Event is persisted."""

    event_id: str
    group_id: str


class EventScheduled(DomainMessage):
    """Fired whenever an event's start/end times are (re)written."""

    event_id: str


class EventStatusUpdated(DomainMessage):
    """Fired after a lifecycle transition has been committed."""

    event_id: str
    status: EventStatus


class EventReminderDue(DomainMessage):
    """Fired by the reminder job when a reminder window is reached."""

    event_id: str
    window: ReminderWindow


class EventStarInvited(DomainMessage):
    event_id: str
    star_id: str


class EventStarAccepted(DomainMessage):
    event_id: str
    star_id: str


class EventStarRejected(DomainMessage):
    event_id: str
    star_id: str


class NotificationCreated(DomainMessage):
    """Fired once per persisted notification row, after commit."""

    notification: Notification
    recipient: User
