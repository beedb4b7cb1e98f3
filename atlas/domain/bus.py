"""In-process event bus with isolated, asynchronous dispatch.

Subscriptions are fixed at startup. Every published message is dispatched on
a worker thread; all handler kinds registered for the message type share one
scope (unit of work) for that delivery and run in registration order.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager
from types import MappingProxyType
from typing import Any, Callable, Mapping, Protocol

logger = logging.getLogger(__name__)


class MessageHandler(Protocol):
    def handle(self, message: Any) -> None: ...


# A handler kind is constructed once per delivery with the delivery's scope.
HandlerKind = Callable[[Any], MessageHandler]
ScopeFactory = Callable[[], AbstractContextManager[Any]]


class Subscriptions:
    """Immutable (message type -> handler kinds) table."""

    def __init__(self, table: Mapping[type, tuple[HandlerKind, ...]]) -> None:
        self._table = MappingProxyType(dict(table))

    def handlers_for(self, message_type: type) -> tuple[HandlerKind, ...]:
        return self._table.get(message_type, ())

    def message_types(self) -> list[type]:
        return list(self._table)

    def __len__(self) -> int:
        return sum(len(kinds) for kinds in self._table.values())


class SubscriptionBuilder:
    """Collects registrations at startup and freezes them into ``Subscriptions``."""

    def __init__(self) -> None:
        self._table: dict[type, list[HandlerKind]] = defaultdict(list)

    def register(self, message_type: type, handler_kind: HandlerKind) -> SubscriptionBuilder:
        if handler_kind in self._table[message_type]:
            raise ValueError(
                f"{handler_kind!r} is already registered for {message_type.__name__}"
            )
        self._table[message_type].append(handler_kind)
        return self

    def build(self) -> Subscriptions:
        return Subscriptions({t: tuple(kinds) for t, kinds in self._table.items()})


class EventBus:
    """Publish/subscribe bus for domain messages.

    ``publish`` never blocks on handlers and never raises on their behalf.
    At most ``max_workers`` deliveries run concurrently; once ``max_pending``
    deliveries are queued or running, further messages are dropped and logged.
    """

    def __init__(
        self,
        subscriptions: Subscriptions,
        scope_factory: ScopeFactory,
        max_workers: int = 8,
        max_pending: int = 1000,
    ) -> None:
        self._subscriptions = subscriptions
        self._scope_factory = scope_factory
        self._max_pending = max_pending
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="atlas-bus"
        )
        self._pending = 0
        self._idle = threading.Condition()
        self._closed = False

    @property
    def pending_count(self) -> int:
        return self._pending

    def publish(self, message: Any) -> None:
        handlers = self._subscriptions.handlers_for(type(message))
        if not handlers:
            logger.debug("EventBus: no handlers for %s", type(message).__name__)
            return

        with self._idle:
            if self._closed:
                logger.error("EventBus: closed, dropping %r", message)
                return
            if self._pending >= self._max_pending:
                logger.error(
                    "EventBus: %d deliveries pending, dropping %r",
                    self._pending,
                    message,
                )
                return
            self._pending += 1

        try:
            self._executor.submit(self._deliver, message, handlers)
        except RuntimeError:
            # Executor shut down between the check above and the submit.
            logger.error("EventBus: executor unavailable, dropping %r", message)
            self._release()

    def _deliver(self, message: Any, handlers: tuple[HandlerKind, ...]) -> None:
        try:
            with self._scope_factory() as scope:
                for handler_kind in handlers:
                    handler_kind(scope).handle(message)
        except Exception:
            logger.critical(
                "An error occurred while processing %s",
                type(message).__name__,
                exc_info=True,
            )
        finally:
            self._release()

    def _release(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def join(self, timeout: float | None = None) -> bool:
        """Block until no deliveries are pending. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._idle:
            self._closed = True
        self._executor.shutdown(wait=wait)
