"""Shared fixtures: a fixed clock and a fresh service container per test."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from atlas.config import Settings
from atlas.container import Services, build_services
from atlas.domain.models import (
    EntityType,
    Event,
    EventStatus,
    Follow,
    Group,
    Notification,
    NotificationPreferences,
    User,
)

NOW = datetime(2030, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class World:
    """Builds users, groups, events and follows straight into a container."""

    def __init__(self, services: Services) -> None:
        self.services = services

    def settle(self) -> None:
        assert self.services.bus.join(timeout=5), "event bus did not drain"

    def user(self, username: str) -> User:
        user = User(username=username, social_id=f"discord|{username}")
        with self.services.open_scope() as scope:
            scope.uow.users.add(user)
            scope.uow.commit()
        return user

    def group(self, name: str = "Club Atlas") -> Group:
        group = Group(name=name)
        with self.services.open_scope() as scope:
            scope.uow.groups.add(group)
            scope.uow.commit()
        return group

    def follow(self, user: User, entity_id: str, entity_type: EntityType, **prefs) -> Follow:
        follow = Follow(
            user_id=user.id,
            entity_id=entity_id,
            entity_type=entity_type,
            preferences=NotificationPreferences(**prefs),
        )
        with self.services.open_scope() as scope:
            scope.uow.follows.add(follow)
            scope.uow.commit()
        return follow

    def event(
        self,
        group: Group,
        name: str = "Friday Night Set",
        auto_start: bool = True,
        starts_in: timedelta | None = None,
        duration: timedelta = timedelta(hours=3),
        announce: bool = False,
    ) -> Event:
        """Create an event, optionally scheduling and announcing it, and wait for listeners."""
        with self.services.open_scope() as scope:
            event = scope.lifecycle().create(name=name, group_id=group.id, auto_start=auto_start)
        if starts_in is not None:
            start = self.services.clock() + starts_in
            with self.services.open_scope() as scope:
                scope.lifecycle().schedule(event.id, start, start + duration)
        if announce:
            with self.services.open_scope() as scope:
                scope.lifecycle().announce(event.id)
        self.settle()
        return self.get_event(event.id)

    def set_status(self, event_id: str, status: EventStatus) -> None:
        with self.services.store.lock:
            event = self.services.store.events[event_id]
            self.services.store.events[event_id] = event.model_copy(update={"status": status})

    def get_event(self, event_id: str) -> Event:
        with self.services.open_scope() as scope:
            return scope.uow.events.get(event_id)

    def notifications_for(self, user: User) -> list[Notification]:
        with self.services.open_scope() as scope:
            return scope.uow.notifications.list_for_user(user.id)

    def all_notifications(self) -> list[Notification]:
        with self.services.store.lock:
            return list(self.services.store.notifications.values())


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture()
def settings() -> Settings:
    return Settings(_env_file=None, bus_max_workers=4, schedule_min_lead_minutes=1)


@pytest.fixture()
def services(settings, clock):
    """Container with the scheduler started paused; triggers only fire when a test fires them."""
    services = build_services(settings, clock=clock)
    services.start(paused=True)
    yield services
    services.shutdown()


@pytest.fixture()
def world(services) -> World:
    return World(services)
