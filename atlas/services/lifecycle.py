"""Lifecycle state machine for schedulable events.

Unlisted -> Announced -> (Preliminary) -> Started -> Concluded, with Canceled
reachable from any non-terminal state. Every transition validates first, then
persists and emits in one unit of work; a rejected transition changes nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Callable

from atlas.config import Settings
from atlas.domain.errors import EntityNotFoundError, PreconditionError
from atlas.domain.events import EventCreated, EventScheduled, EventStatusUpdated
from atlas.domain.models import TERMINAL_STATUSES, Event, EventStatus
from atlas.repos.memory import UnitOfWork

logger = logging.getLogger(__name__)


class Transition(StrEnum):
    SCHEDULE = "schedule"
    ANNOUNCE = "announce"
    START = "start"
    CONCLUDE = "conclude"
    CANCEL = "cancel"


# Statuses each transition may be requested from.
ALLOWED_FROM: dict[Transition, frozenset[EventStatus]] = {
    Transition.SCHEDULE: frozenset({EventStatus.UNLISTED, EventStatus.ANNOUNCED}),
    Transition.ANNOUNCE: frozenset({EventStatus.UNLISTED}),
    Transition.START: frozenset({EventStatus.ANNOUNCED, EventStatus.PRELIMINARY}),
    Transition.CONCLUDE: frozenset({EventStatus.STARTED}),
    Transition.CANCEL: frozenset(set(EventStatus) - TERMINAL_STATUSES),
}

# Status an event lands in after a status-changing transition.
RESULTING_STATUS: dict[Transition, EventStatus] = {
    Transition.ANNOUNCE: EventStatus.ANNOUNCED,
    Transition.START: EventStatus.STARTED,
    Transition.CONCLUDE: EventStatus.CONCLUDED,
    Transition.CANCEL: EventStatus.CANCELED,
}


def can_transition(status: EventStatus, transition: Transition) -> bool:
    return status in ALLOWED_FROM[transition]


class EventLifecycle:
    """Validates and applies lifecycle transitions within one unit of work."""

    def __init__(
        self,
        uow: UnitOfWork,
        clock: Callable[[], datetime],
        settings: Settings,
    ) -> None:
        self.uow = uow
        self.clock = clock
        self.settings = settings

    # ------------------------------------------------------------------
    # Non-transition operations
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        group_id: str,
        description: str = "",
        auto_start: bool = False,
    ) -> Event:
        if self.uow.groups.get(group_id) is None:
            raise EntityNotFoundError("Group", group_id)

        event = Event(
            name=name,
            group_id=group_id,
            description=description,
            auto_start=auto_start,
            created_at=self.clock(),
        )
        self.uow.events.add(event)
        self.uow.collect(EventCreated(event_id=event.id, group_id=group_id))
        self.uow.commit()
        logger.info("Created event %s (%s) for group %s", event.id, name, group_id)
        return event

    def update(
        self,
        event_id: str,
        name: str | None = None,
        description: str | None = None,
        auto_start: bool | None = None,
    ) -> Event:
        event = self._load(event_id)
        if event.status in TERMINAL_STATUSES:
            raise PreconditionError(f"Event {event_id} is {event.status} and can no longer be edited")

        if name is not None:
            event.name = name
        if description is not None:
            event.description = description
        if auto_start is not None:
            event.auto_start = auto_start
        return self._commit(event)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def schedule(self, event_id: str, start_time: datetime, end_time: datetime) -> Event:
        """Write new start/end times, fully replacing any previous schedule."""
        event = self._load(event_id)
        self._require(event, Transition.SCHEDULE)

        earliest = self.clock() + timedelta(minutes=self.settings.schedule_min_lead_minutes)
        if start_time < earliest:
            raise PreconditionError(
                f"Event {event_id} must start at or after {earliest.isoformat()}"
            )
        if end_time <= start_time:
            raise PreconditionError("end_time must be after start_time")

        event.start_time = start_time
        event.end_time = end_time
        self.uow.collect(EventScheduled(event_id=event.id))
        event = self._commit(event)
        logger.info(
            "Scheduled event %s from %s to %s",
            event_id,
            start_time.isoformat(),
            end_time.isoformat(),
        )
        return event

    def announce(self, event_id: str) -> Event:
        return self._transition(event_id, Transition.ANNOUNCE)

    def start(self, event_id: str) -> Event:
        event = self._load(event_id)
        self._require(event, Transition.START)
        if event.start_time is None:
            raise PreconditionError(f"Event {event_id} has no start time")
        if self.clock() < event.start_time:
            raise PreconditionError(
                f"Event {event_id} cannot start before {event.start_time.isoformat()}"
            )
        return self._apply(event, Transition.START)

    def conclude(self, event_id: str) -> Event:
        return self._transition(event_id, Transition.CONCLUDE)

    def cancel(self, event_id: str) -> Event:
        return self._transition(event_id, Transition.CANCEL)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, event_id: str) -> Event:
        event = self.uow.events.get(event_id)
        if event is None:
            raise EntityNotFoundError("Event", event_id)
        return event

    def _require(self, event: Event, transition: Transition) -> None:
        if not can_transition(event.status, transition):
            logger.info(
                "Rejected %s for event %s in status %s", transition, event.id, event.status
            )
            raise PreconditionError(
                f"Cannot {transition} event {event.id} while it is {event.status}"
            )

    def _transition(self, event_id: str, transition: Transition) -> Event:
        event = self._load(event_id)
        self._require(event, transition)
        return self._apply(event, transition)

    def _apply(self, event: Event, transition: Transition) -> Event:
        event.status = RESULTING_STATUS[transition]
        self.uow.collect(EventStatusUpdated(event_id=event.id, status=event.status))
        event = self._commit(event)
        logger.info("Event %s is now %s", event.id, event.status)
        return event

    def _commit(self, event: Event) -> Event:
        self.uow.events.save(event)
        self.uow.commit()
        return event.model_copy(update={"version": event.version + 1})
