"""Persisting notifications and reading them back."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from atlas.domain.events import NotificationCreated
from atlas.domain.models import EntityType, Notification, NotificationPage, User
from atlas.repos.memory import UnitOfWork

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


class NotificationKeys:
    EVENT_STARTED = "EVENT_STARTED"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    EVENT_ANNOUNCEMENT = "EVENT_ANNOUNCEMENT"
    EVENT_REMINDER = "EVENT_REMINDER"
    EVENT_STAR_INVITED = "EVENT_STAR_INVITED"
    EVENT_STAR_CONFIRMED = "EVENT_STAR_CONFIRMED"


USERNAME_TOKEN = "{User.Username}"


class NotificationService:
    def __init__(self, uow: UnitOfWork, clock: Callable[[], datetime]) -> None:
        self.uow = uow
        self.clock = clock

    def create_notifications(
        self,
        entity_id: str,
        entity_type: EntityType,
        key: str,
        title: str,
        template: str,
        targets: Iterable[str],
    ) -> list[Notification]:
        """Persist one notification per resolvable target, then announce each.

        ``{User.Username}`` in *template* is replaced with the recipient's
        username. Nothing is written or published when no target resolves.
        """
        created = self.stage_notifications(entity_id, entity_type, key, title, template, targets)
        if created:
            # Messages staged above are published only once the batch is stored.
            self.uow.commit()
        return created

    def stage_notifications(
        self,
        entity_id: str,
        entity_type: EntityType,
        key: str,
        title: str,
        template: str,
        targets: Iterable[str],
    ) -> list[Notification]:
        """Like :meth:`create_notifications` but leaves the commit to the caller."""
        created: list[tuple[Notification, User]] = []
        seen: set[str] = set()
        now = self.clock()

        for target in targets:
            if target in seen:
                continue
            seen.add(target)

            user = self.uow.users.get(target)
            if user is None:
                logger.warning("Skipping notification %s for unknown user %s", key, target)
                continue

            notification = Notification(
                user_id=user.id,
                key=key,
                title=title,
                description=template.replace(USERNAME_TOKEN, user.username),
                entity_id=entity_id,
                entity_type=entity_type,
                created_at=now,
            )
            created.append((notification, user))

        if not created:
            return []

        self.uow.notifications.add_many([n for n, _ in created])
        for notification, user in created:
            self.uow.collect(NotificationCreated(notification=notification, recipient=user))

        logger.info(
            "Staged %d notifications for %s (%s) with key %s",
            len(created),
            entity_id,
            entity_type,
            key,
        )
        return [n for n, _ in created]

    def exists(self, notification_id: str) -> bool:
        return self.uow.notifications.get(notification_id) is not None

    def mark_as_read(self, notification_id: str) -> bool:
        """Flip the read flag. Returns False if the notification doesn't exist."""
        if not self.exists(notification_id):
            return False
        self.uow.notifications.mark_read(notification_id)
        self.uow.commit()
        return True

    def query(
        self,
        user_id: str,
        cursor: str | None = None,
        is_read: bool | None = None,
        count: int = 5,
    ) -> NotificationPage:
        """Page through a user's notifications, newest first.

        *cursor* is the id of the first notification of the page; the returned
        ``next_cursor`` points at the first notification of the following page.
        """
        count = max(1, min(count, MAX_PAGE_SIZE))
        notifications = self.uow.notifications.list_for_user(user_id)
        unread = sum(1 for n in notifications if not n.read)

        if cursor is not None:
            ids = [n.id for n in notifications]
            if cursor in ids:
                notifications = notifications[ids.index(cursor):]

        if is_read is not None:
            notifications = [n for n in notifications if n.read == is_read]

        # Grab an extra element to get the next cursor.
        page = notifications[: count + 1]
        next_cursor = page[-1].id if len(page) > count else None
        return NotificationPage(notifications=page[:count], next_cursor=next_cursor, unread=unread)
