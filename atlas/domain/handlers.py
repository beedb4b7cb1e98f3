"""Bus listeners, wired into the subscription table at application startup.

Every listener is built per delivery with that delivery's scope and re-reads
what it needs from the store; messages only carry identifiers.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from atlas.domain.bus import SubscriptionBuilder, Subscriptions
from atlas.domain.errors import ReferentialInconsistencyError
from atlas.domain.events import (
    EventReminderDue,
    EventScheduled,
    EventStarAccepted,
    EventStarInvited,
    EventStatusUpdated,
    NotificationCreated,
)
from atlas.domain.models import EntityType, Event, EventStatus, Group
from atlas.services import fanout
from atlas.services.delivery import HubNotificationListener, PushNotificationListener
from atlas.services.fanout import FanOut

if TYPE_CHECKING:
    from atlas.container import Scope

logger = logging.getLogger(__name__)


class TriggerSchedulingListener:
    """Keeps the scheduler's triggers in line with the stored event."""

    def __init__(self, scope: Scope) -> None:
        self.uow = scope.uow
        self.scheduler = scope.scheduler

    def handle(self, message: EventScheduled | EventStatusUpdated) -> None:
        # Read and replace under one lock: whichever delivery runs last sees the
        # newest committed schedule.
        with self.scheduler.exclusive():
            event = self.uow.events.get(message.event_id)
            if event is None:
                raise ReferentialInconsistencyError(
                    f"Event {message.event_id} referenced by {type(message).__name__} does not exist"
                )
            triggers = self.scheduler.sync(event)
        logger.info(
            "Event %s (%s) now has %d triggers", event.id, event.status, len(triggers)
        )


class _FanOutListener:
    def __init__(self, scope: Scope) -> None:
        self.uow = scope.uow
        self.notifications = scope.notifications()

    def _load(self, event_id: str) -> tuple[Event, Group]:
        event = self.uow.events.get(event_id)
        if event is None:
            raise ReferentialInconsistencyError(f"Event {event_id} does not exist")
        group = self.uow.groups.get(event.group_id)
        if group is None:
            raise ReferentialInconsistencyError(
                f"Group {event.group_id} of event {event_id} does not exist"
            )
        return event, group

    def _send(self, event: Event, batches: list[FanOut]) -> None:
        # All batches of one message are stored in a single commit.
        staged = 0
        for batch in batches:
            if not batch.recipients:
                logger.debug("No recipients for %s on event %s", batch.key, event.id)
                continue
            staged += len(
                self.notifications.stage_notifications(
                    entity_id=event.id,
                    entity_type=EntityType.EVENT,
                    key=batch.key,
                    title=batch.title,
                    template=batch.template,
                    targets=batch.recipients,
                )
            )
        if staged:
            self.uow.commit()


class _StatusFanOutListener(_FanOutListener):
    status: EventStatus
    audience: Callable[..., list[FanOut]]

    def handle(self, message: EventStatusUpdated) -> None:
        if message.status is not self.status:
            return
        event, group = self._load(message.event_id)
        self._send(event, type(self).audience(self.uow, event, group))


class EventStartListener(_StatusFanOutListener):
    status = EventStatus.STARTED
    audience = fanout.event_started


class EventCancellationListener(_StatusFanOutListener):
    status = EventStatus.CANCELED
    audience = fanout.event_cancelled


class EventAnnouncementListener(_StatusFanOutListener):
    status = EventStatus.ANNOUNCED
    audience = fanout.event_announced


class EventReminderListener(_FanOutListener):
    def handle(self, message: EventReminderDue) -> None:
        event, group = self._load(message.event_id)
        self._send(event, fanout.event_reminder(self.uow, event, group, message.window))


class EventStarInvitationListener(_FanOutListener):
    def handle(self, message: EventStarInvited) -> None:
        event, group = self._load(message.event_id)
        self._send(event, fanout.star_invited(self.uow, event, group, message.star_id))


class EventStarConfirmationListener(_FanOutListener):
    def handle(self, message: EventStarAccepted) -> None:
        event, group = self._load(message.event_id)
        self._send(event, fanout.star_confirmed(self.uow, event, group, message.star_id))


def build_subscriptions() -> Subscriptions:
    """The process-wide subscription table; order within a message type is run order."""
    return (
        SubscriptionBuilder()
        .register(EventScheduled, TriggerSchedulingListener)
        .register(EventStatusUpdated, TriggerSchedulingListener)
        .register(EventStatusUpdated, EventStartListener)
        .register(EventStatusUpdated, EventCancellationListener)
        .register(EventStatusUpdated, EventAnnouncementListener)
        .register(EventReminderDue, EventReminderListener)
        .register(EventStarInvited, EventStarInvitationListener)
        .register(EventStarAccepted, EventStarConfirmationListener)
        .register(NotificationCreated, HubNotificationListener)
        .register(NotificationCreated, PushNotificationListener)
        .build()
    )
