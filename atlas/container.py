"""Process-wide wiring: singletons built once at startup and per-dispatch scopes."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator

from atlas.config import Settings
from atlas.domain.bus import EventBus, Subscriptions
from atlas.domain.handlers import build_subscriptions
from atlas.domain.models import utcnow
from atlas.repos.memory import MemoryStore, UnitOfWork
from atlas.services.delivery import LoggingPushTransport, NotificationHub, PushTransport
from atlas.services.lifecycle import EventLifecycle
from atlas.services.notifications import NotificationService
from atlas.services.scheduler import JobTable, TriggerScheduler
from atlas.services.stars import EventStarService

Clock = Callable[[], datetime]


class SimulatedClock:
    """UTC wall clock that can be pushed forward to drive triggers by hand."""

    def __init__(self) -> None:
        self._offset = timedelta(0)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        return utcnow() + self._offset

    def advance_to(self, instant: datetime) -> datetime:
        """Move the clock to *instant* unless it already reads later."""
        with self._lock:
            ahead = instant - utcnow()
            if ahead > self._offset:
                self._offset = ahead
        return self()

    def reset(self) -> None:
        with self._lock:
            self._offset = timedelta(0)


class Scope:
    """Isolated execution context for one message delivery or one job run.

    Owns a fresh unit of work; process-wide collaborators are reached through
    ``services``.
    """

    def __init__(self, services: Services) -> None:
        self.services = services
        self.uow = UnitOfWork(services.store, services.bus)

    @property
    def bus(self) -> EventBus:
        return self.services.bus

    @property
    def clock(self) -> Clock:
        return self.services.clock

    @property
    def settings(self) -> Settings:
        return self.services.settings

    @property
    def scheduler(self) -> TriggerScheduler:
        return self.services.scheduler

    def lifecycle(self) -> EventLifecycle:
        return EventLifecycle(self.uow, self.clock, self.settings)

    def notifications(self) -> NotificationService:
        return NotificationService(self.uow, self.clock)

    def stars(self) -> EventStarService:
        return EventStarService(self.uow)


class Services:
    """Singletons shared by every scope in the process."""

    def __init__(
        self,
        settings: Settings,
        subscriptions: Subscriptions,
        clock: Clock,
        store: MemoryStore | None = None,
        hub: NotificationHub | None = None,
        push_transport: PushTransport | None = None,
        job_table: JobTable | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.store = store or MemoryStore()
        self.hub = hub or NotificationHub()
        self.push_transport = push_transport or LoggingPushTransport()
        self.push_executor = ThreadPoolExecutor(
            max_workers=settings.delivery_max_workers, thread_name_prefix="atlas-push"
        )
        self.bus = EventBus(
            subscriptions,
            scope_factory=self.open_scope,
            max_workers=settings.bus_max_workers,
            max_pending=settings.bus_max_pending,
        )
        self.scheduler = TriggerScheduler(
            scope_factory=self.open_scope,
            clock=clock,
            job_table=job_table,
        )

    @contextmanager
    def open_scope(self) -> Iterator[Scope]:
        scope = Scope(self)
        with scope.uow:
            yield scope

    def start(self, paused: bool = False) -> None:
        self.scheduler.start(paused=paused)

    def shutdown(self, timeout: float | None = 10.0) -> None:
        self.scheduler.shutdown()
        self.bus.join(timeout=timeout)
        self.bus.shutdown(wait=True)
        self.push_executor.shutdown(wait=True)


def build_services(
    settings: Settings,
    clock: Clock | None = None,
    **overrides,
) -> Services:
    """Build the container with the static subscription table."""
    return Services(
        settings=settings,
        subscriptions=build_subscriptions(),
        clock=clock or utcnow,
        **overrides,
    )
