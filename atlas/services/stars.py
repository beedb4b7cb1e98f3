"""Event star invitations."""

from __future__ import annotations

import logging

from atlas.domain.errors import EntityNotFoundError, PreconditionError
from atlas.domain.events import EventStarAccepted, EventStarInvited, EventStarRejected
from atlas.domain.models import TERMINAL_STATUSES, Event, EventStar, EventStarStatus
from atlas.repos.memory import UnitOfWork

logger = logging.getLogger(__name__)


class EventStarService:
    def __init__(self, uow: UnitOfWork) -> None:
        self.uow = uow

    def invite(
        self,
        event_id: str,
        user_id: str,
        inviter_id: str,
        title: str | None = None,
    ) -> EventStar:
        """Add *user_id* as a star of the event.

        Inviting yourself skips the invitation step and confirms right away.
        """
        event = self._load(event_id)
        if event.status in TERMINAL_STATUSES:
            raise PreconditionError(f"Event {event_id} is {event.status}")
        if self.uow.users.get(user_id) is None:
            raise EntityNotFoundError("User", user_id)
        if event.star(user_id) is not None:
            raise PreconditionError(f"User {user_id} is already a star of event {event_id}")

        status = EventStarStatus.CONFIRMED if inviter_id == user_id else EventStarStatus.PENDING
        star = EventStar(user_id=user_id, title=(title or "").strip() or None, status=status)
        event.stars.append(star)
        self.uow.events.save(event)

        if status is EventStarStatus.CONFIRMED:
            self.uow.collect(EventStarAccepted(event_id=event_id, star_id=user_id))
        else:
            self.uow.collect(EventStarInvited(event_id=event_id, star_id=user_id))
        self.uow.commit()

        logger.info("User %s added as %s star of event %s", user_id, status, event_id)
        return star

    def accept(self, event_id: str, user_id: str) -> bool:
        return self._respond(event_id, user_id, EventStarStatus.CONFIRMED)

    def reject(self, event_id: str, user_id: str) -> bool:
        return self._respond(event_id, user_id, EventStarStatus.REJECTED)

    def _respond(self, event_id: str, user_id: str, status: EventStarStatus) -> bool:
        logger.info("User %s is responding %s to the invite for event %s", user_id, status, event_id)
        event = self.uow.events.get(event_id)
        if event is None:
            logger.warning("Could not find event %s when %s responded to an invite", event_id, user_id)
            return False

        star = event.star(user_id)
        if star is None or star.status is not EventStarStatus.PENDING:
            logger.warning("Could not find pending invite for %s in event %s", user_id, event_id)
            return False

        star.status = status
        self.uow.events.save(event)
        if status is EventStarStatus.CONFIRMED:
            self.uow.collect(EventStarAccepted(event_id=event_id, star_id=user_id))
        else:
            self.uow.collect(EventStarRejected(event_id=event_id, star_id=user_id))
        self.uow.commit()
        return True

    def _load(self, event_id: str) -> Event:
        event = self.uow.events.get(event_id)
        if event is None:
            raise EntityNotFoundError("Event", event_id)
        return event
