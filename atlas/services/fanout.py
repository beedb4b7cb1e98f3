"""Audience resolution and wording for each kind of fan-out.

Each function returns the batches to persist for one triggering message; a
batch with no recipients is skipped by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from atlas.domain.models import (
    EntityType,
    Event,
    EventStar,
    EventStarStatus,
    EventStatus,
    Group,
    ReminderWindow,
)
from atlas.repos.memory import UnitOfWork
from atlas.services.notifications import NotificationKeys

# Follow preference consulted for each reminder window.
REMINDER_PREFERENCES = {
    ReminderWindow.ONE_DAY: "at_one_day",
    ReminderWindow.ONE_HOUR: "at_one_hour",
    ReminderWindow.THIRTY_MINUTES: "at_thirty_minutes",
}


@dataclass(frozen=True)
class FanOut:
    key: str
    title: str
    template: str
    recipients: list[str] = field(default_factory=list)


def event_started(uow: UnitOfWork, event: Event, group: Group) -> list[FanOut]:
    recipients = uow.follows.follower_ids(event.id, EntityType.EVENT, preference="at_start")
    return [
        FanOut(
            key=NotificationKeys.EVENT_STARTED,
            title=f"Event Starting Now - {event.name}",
            template=f"The event {event.name} by {group.name} is starting now! Hope to see you there!",
            recipients=recipients,
        )
    ]


def event_cancelled(uow: UnitOfWork, event: Event, group: Group) -> list[FanOut]:
    # Everyone following the event hears about a cancellation, whatever their preferences.
    recipients = uow.follows.follower_ids(event.id, EntityType.EVENT)
    return [
        FanOut(
            key=NotificationKeys.EVENT_CANCELLED,
            title=f"Event Cancelled - {event.name}",
            template=f"The event {event.name} was cancelled by {group.name}.",
            recipients=recipients,
        )
    ]


def event_announced(uow: UnitOfWork, event: Event, group: Group) -> list[FanOut]:
    """Followers of confirmed stars first, then group followers not yet reached."""
    confirmed = [s for s in event.stars if s.status is EventStarStatus.CONFIRMED]
    star_followers = uow.follows.follower_ids([s.user_id for s in confirmed], EntityType.USER)
    group_followers = [
        uid
        for uid in uow.follows.follower_ids(group.id, EntityType.GROUP)
        if uid not in star_followers
    ]

    title = f"Event Announced - {event.name} by {group.name}"
    names = join_names([star_display_name(uow, s) for s in confirmed])
    return [
        FanOut(
            key=NotificationKeys.EVENT_ANNOUNCEMENT,
            title=title,
            template=f"See {names} star at {event.name} hosted by {group.name}.",
            recipients=star_followers,
        ),
        FanOut(
            key=NotificationKeys.EVENT_ANNOUNCEMENT,
            title=title,
            template=f"{group.name} is hosting {event.name}.",
            recipients=group_followers,
        ),
    ]


def event_reminder(
    uow: UnitOfWork, event: Event, group: Group, window: ReminderWindow
) -> list[FanOut]:
    recipients = uow.follows.follower_ids(
        event.id, EntityType.EVENT, preference=REMINDER_PREFERENCES[window]
    )
    starts_in = window.phrase
    return [
        FanOut(
            key=NotificationKeys.EVENT_REMINDER,
            title=f"{event.name} starts in {starts_in}!",
            template=(
                f"The event {event.name} hosted by {group.name} begins in {starts_in} "
                "(subject to change). Hope to see you there!"
            ),
            recipients=recipients,
        )
    ]


def star_invited(uow: UnitOfWork, event: Event, group: Group, star_id: str) -> list[FanOut]:
    return [
        FanOut(
            key=NotificationKeys.EVENT_STAR_INVITED,
            title=f"Invitation - Star at {event.name}",
            template=f"You've been invited to star at {event.name} (hosted by {group.name}).",
            recipients=[star_id],
        )
    ]


def star_confirmed(uow: UnitOfWork, event: Event, group: Group, star_id: str) -> list[FanOut]:
    # Only broadcast once the event is public.
    if event.status is EventStatus.UNLISTED:
        return []
    user = uow.users.get(star_id)
    if user is None:
        return []
    recipients = uow.follows.follower_ids(star_id, EntityType.USER)
    return [
        FanOut(
            key=NotificationKeys.EVENT_STAR_CONFIRMED,
            title=f"{user.username} is at {event.name}",
            template=f"{user.username} is a star at {event.name} hosted by {group.name}",
            recipients=recipients,
        )
    ]


def star_display_name(uow: UnitOfWork, star: EventStar) -> str:
    user = uow.users.get(star.user_id)
    username = user.username if user else star.user_id
    if not star.title or not star.title.strip():
        return username
    return f"{username} ({star.title})"


def join_names(names: list[str]) -> str:
    """'A', 'A and B', 'A, B, and C'."""
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return ", ".join(names[:-1]) + f", and {names[-1]}"
