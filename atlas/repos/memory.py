"""In-memory store, repositories and unit of work.

Reads hand out copies; writes are staged on the unit of work and applied to
the shared store in one step on ``commit()``.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from atlas.domain.errors import ConcurrencyError
from atlas.domain.models import (
    EntityType,
    Event,
    EventStatus,
    Follow,
    Group,
    Notification,
    NotificationPreferences,
    User,
    WebPushSubscription,
    utcnow,
)

if TYPE_CHECKING:
    from atlas.domain.bus import EventBus


class MemoryStore:
    """Dict-backed tables shared by every unit of work in the process."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.events: dict[str, Event] = {}
        self.groups: dict[str, Group] = {}
        self.users: dict[str, User] = {}
        self.follows: dict[str, Follow] = {}
        self.notifications: dict[str, Notification] = {}
        self.push_subscriptions: dict[str, WebPushSubscription] = {}

    def clear(self) -> None:
        with self.lock:
            self.events.clear()
            self.groups.clear()
            self.users.clear()
            self.follows.clear()
            self.notifications.clear()
            self.push_subscriptions.clear()


class _Repository:
    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow
        self._store = uow.store


class EventRepository(_Repository):
    def get(self, event_id: str) -> Event | None:
        with self._store.lock:
            event = self._store.events.get(event_id)
            return event.model_copy(deep=True) if event else None

    def add(self, event: Event) -> None:
        stored = event.model_copy(deep=True)
        self._uow.stage(lambda store: store.events.__setitem__(stored.id, stored))

    def save(self, event: Event) -> None:
        """Stage an update; fails on commit if someone else saved first."""
        read_version = event.version
        updated = event.model_copy(deep=True, update={"version": read_version + 1})

        def apply(store: MemoryStore) -> None:
            current = store.events.get(event.id)
            if current is None or current.version != read_version:
                raise ConcurrencyError(f"Event {event.id} was modified concurrently")
            store.events[event.id] = updated

        self._uow.stage(apply, check=True)

    def list_all(self, status: EventStatus | None = None) -> list[Event]:
        with self._store.lock:
            events = [e.model_copy(deep=True) for e in self._store.events.values()]
        if status is not None:
            events = [e for e in events if e.status == status]
        return events


class GroupRepository(_Repository):
    def get(self, group_id: str) -> Group | None:
        with self._store.lock:
            group = self._store.groups.get(group_id)
            return group.model_copy() if group else None

    def add(self, group: Group) -> None:
        self._uow.stage(lambda store: store.groups.__setitem__(group.id, group))


class UserRepository(_Repository):
    def get(self, user_id: str) -> User | None:
        with self._store.lock:
            user = self._store.users.get(user_id)
            return user.model_copy() if user else None

    def add(self, user: User) -> None:
        self._uow.stage(lambda store: store.users.__setitem__(user.id, user))


class FollowRepository(_Repository):
    def add(self, follow: Follow) -> None:
        self._uow.stage(lambda store: store.follows.__setitem__(follow.id, follow))

    def find(self, user_id: str, entity_id: str) -> Follow | None:
        with self._store.lock:
            return next(
                (
                    f.model_copy()
                    for f in self._store.follows.values()
                    if f.user_id == user_id and f.entity_id == entity_id
                ),
                None,
            )

    def remove(self, follow_id: str) -> None:
        self._uow.stage(lambda store: store.follows.pop(follow_id, None))

    def follower_ids(
        self,
        entity_ids: str | list[str],
        entity_type: EntityType,
        preference: str | None = None,
    ) -> list[str]:
        """Return distinct follower user ids of the given entities, in follow order.

        *preference* names a ``NotificationPreferences`` flag the follow must
        have switched on.
        """
        if preference is not None and preference not in NotificationPreferences.model_fields:
            raise ValueError(f"Unknown notification preference {preference!r}")
        wanted = {entity_ids} if isinstance(entity_ids, str) else set(entity_ids)

        with self._store.lock:
            follows = sorted(self._store.follows.values(), key=lambda f: f.followed_at)

        user_ids: list[str] = []
        for follow in follows:
            if follow.entity_type != entity_type or follow.entity_id not in wanted:
                continue
            if preference is not None and not getattr(follow.preferences, preference):
                continue
            if follow.user_id not in user_ids:
                user_ids.append(follow.user_id)
        return user_ids


class NotificationRepository(_Repository):
    def get(self, notification_id: str) -> Notification | None:
        with self._store.lock:
            return self._store.notifications.get(notification_id)

    def add_many(self, notifications: list[Notification]) -> None:
        def apply(store: MemoryStore) -> None:
            for notification in notifications:
                store.notifications[notification.id] = notification

        self._uow.stage(apply)

    def mark_read(self, notification_id: str) -> None:
        def apply(store: MemoryStore) -> None:
            current = store.notifications.get(notification_id)
            if current is not None:
                store.notifications[notification_id] = current.model_copy(
                    update={"read": True}
                )

        self._uow.stage(apply)

    def list_for_user(self, user_id: str) -> list[Notification]:
        """Return the user's notifications, newest first."""
        with self._store.lock:
            notifications = [
                n for n in self._store.notifications.values() if n.user_id == user_id
            ]
        return sorted(notifications, key=lambda n: n.created_at, reverse=True)

    def count_unread(self, user_id: str) -> int:
        return sum(1 for n in self.list_for_user(user_id) if not n.read)


class PushSubscriptionRepository(_Repository):
    def add(self, subscription: WebPushSubscription) -> None:
        self._uow.stage(
            lambda store: store.push_subscriptions.__setitem__(
                subscription.endpoint, subscription
            )
        )

    def remove(self, endpoint: str) -> None:
        self._uow.stage(lambda store: store.push_subscriptions.pop(endpoint, None))

    def get(self, endpoint: str) -> WebPushSubscription | None:
        with self._store.lock:
            return self._store.push_subscriptions.get(endpoint)

    def list_for_user(self, user_id: str) -> list[WebPushSubscription]:
        with self._store.lock:
            return [
                s for s in self._store.push_subscriptions.values() if s.user_id == user_id
            ]


class UnitOfWork:
    """Stages writes and messages for one transaction.

    Messages collected with ``collect`` are published on the bus only after
    ``commit`` has applied every staged write.
    """

    def __init__(self, store: MemoryStore, bus: EventBus | None = None) -> None:
        self.store = store
        self.bus = bus
        self._checks: list[Callable[[MemoryStore], None]] = []
        self._writes: list[Callable[[MemoryStore], None]] = []
        self._messages: list[Any] = []

        self.events = EventRepository(self)
        self.groups = GroupRepository(self)
        self.users = UserRepository(self)
        self.follows = FollowRepository(self)
        self.notifications = NotificationRepository(self)
        self.push_subscriptions = PushSubscriptionRepository(self)

    def stage(self, write: Callable[[MemoryStore], None], check: bool = False) -> None:
        (self._checks if check else self._writes).append(write)

    def collect(self, message: Any) -> None:
        self._messages.append(message)

    @property
    def has_pending_work(self) -> bool:
        return bool(self._checks or self._writes or self._messages)

    def commit(self) -> None:
        """Apply all staged writes atomically, then publish collected messages."""
        checks, writes = self._checks, self._writes
        messages = self._messages
        self._checks, self._writes, self._messages = [], [], []

        with self.store.lock:
            # Version-checked writes go first so a conflict leaves the store untouched.
            snapshot = dict(self.store.events)
            try:
                for write in checks:
                    write(self.store)
            except ConcurrencyError:
                self.store.events.clear()
                self.store.events.update(snapshot)
                raise
            for write in writes:
                write(self.store)

        if self.bus is not None:
            for message in messages:
                self.bus.publish(message)

    def rollback(self) -> None:
        self._checks.clear()
        self._writes.clear()
        self._messages.clear()

    def __enter__(self) -> UnitOfWork:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        # Anything not committed explicitly is discarded.
        self.rollback()


# ---------------------------------------------------------------------------
# Seed data for local runs
# ---------------------------------------------------------------------------


def seed_store(store: MemoryStore, now: datetime | None = None) -> None:
    now = now or utcnow()
    with store.lock:
        host = User(username="atlas-host", social_id="discord|100")
        fan = User(username="night-owl", social_id="discord|200")
        dj = User(username="dj-lumen", social_id="discord|300")
        for user in (host, fan, dj):
            store.users[user.id] = user

        group = Group(name="Club Atlas", description="Weekly VR club nights")
        store.groups[group.id] = group

        event = Event(
            name="Friday Night Set",
            group_id=group.id,
            status=EventStatus.UNLISTED,
            start_time=now + timedelta(days=2),
            end_time=now + timedelta(days=2, hours=3),
            auto_start=True,
        )
        store.events[event.id] = event

        follow = Follow(
            user_id=fan.id,
            entity_id=group.id,
            entity_type=EntityType.GROUP,
            preferences=NotificationPreferences(at_start=True, at_one_hour=True),
        )
        store.follows[follow.id] = follow
