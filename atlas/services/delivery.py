"""Delivery channels for persisted notifications.

Each channel is its own handler kind on NotificationCreated and logs its own
per-recipient failures, so a broken connection or push endpoint never keeps
the other channel from delivering.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from concurrent.futures import as_completed
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from atlas.domain.events import NotificationCreated
from atlas.domain.models import EntityType, Notification, WebPushSubscription

if TYPE_CHECKING:
    from atlas.container import Scope

logger = logging.getLogger(__name__)

NOTIFICATION_RECEIVED = "notificationReceived"


class NotificationPayload(BaseModel):
    """What clients receive for a notification, camelCased on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    key: str
    title: str
    description: str
    entity_id: str | None = None
    entity_type: EntityType | None = None
    created_at: datetime
    read: bool = False

    @classmethod
    def from_notification(cls, notification: Notification) -> NotificationPayload:
        return cls(
            id=notification.id,
            key=notification.key,
            title=notification.title,
            description=notification.description,
            entity_id=notification.entity_id,
            entity_type=notification.entity_type,
            created_at=notification.created_at,
            read=notification.read,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Real-time hub
# ---------------------------------------------------------------------------


class HubConnection(Protocol):
    def deliver(self, event_name: str, payload: dict[str, Any]) -> None: ...


class QueueConnection:
    """Hands hub messages to an asyncio consumer running on *loop*."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()

    def deliver(self, event_name: str, payload: dict[str, Any]) -> None:
        # Called from bus worker threads.
        self.loop.call_soon_threadsafe(self.queue.put_nowait, (event_name, payload))


class NotificationHub:
    """Tracks live connections per user and fans messages out to them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, list[HubConnection]] = defaultdict(list)

    def register(self, user_id: str, connection: HubConnection) -> None:
        with self._lock:
            self._connections[user_id].append(connection)
        logger.debug("Hub connection registered for user %s", user_id)

    def unregister(self, user_id: str, connection: HubConnection) -> None:
        with self._lock:
            connections = self._connections.get(user_id, [])
            if connection in connections:
                connections.remove(connection)
            if not connections:
                self._connections.pop(user_id, None)

    def connection_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._connections.get(user_id, []))

    def send_to_user(self, user_id: str, event_name: str, payload: dict[str, Any]) -> int:
        """Deliver to every live connection of *user_id*; returns how many got it."""
        with self._lock:
            connections = list(self._connections.get(user_id, []))

        delivered = 0
        for connection in connections:
            try:
                connection.deliver(event_name, payload)
                delivered += 1
            except RuntimeError:
                # The consumer's loop has closed; it will unregister on its own.
                logger.warning("Dropping %s for user %s, connection closed", event_name, user_id)
            except Exception:
                logger.error(
                    "Hub delivery of %s to user %s failed", event_name, user_id, exc_info=True
                )
        return delivered


class HubNotificationListener:
    def __init__(self, scope: Scope) -> None:
        self.hub = scope.services.hub

    def handle(self, message: NotificationCreated) -> None:
        payload = NotificationPayload.from_notification(message.notification)
        self.hub.send_to_user(message.recipient.id, NOTIFICATION_RECEIVED, payload.to_wire())


# ---------------------------------------------------------------------------
# Web push
# ---------------------------------------------------------------------------


class PushTransport(Protocol):
    def send(self, subscription: WebPushSubscription, body: str) -> None: ...


class LoggingPushTransport:
    """Records pushes in the log instead of contacting a push service."""

    def send(self, subscription: WebPushSubscription, body: str) -> None:
        logger.info(
            "Push to %s for user %s: %s", subscription.endpoint, subscription.user_id, body
        )


class PushNotificationListener:
    """Sends a notification to all of the recipient's push subscriptions at once."""

    def __init__(self, scope: Scope) -> None:
        self.uow = scope.uow
        self.transport = scope.services.push_transport
        self.executor = scope.services.push_executor

    def handle(self, message: NotificationCreated) -> None:
        user_id = message.recipient.id
        subscriptions = self.uow.push_subscriptions.list_for_user(user_id)
        if not subscriptions:
            return

        body = NotificationPayload.from_notification(message.notification).model_dump_json(
            by_alias=True
        )
        futures = {
            self.executor.submit(self.transport.send, subscription, body): subscription
            for subscription in subscriptions
        }

        failed = 0
        for future in as_completed(futures):
            subscription = futures[future]
            try:
                future.result()
            except Exception:
                failed += 1
                logger.error(
                    "Push delivery to %s for user %s failed",
                    subscription.endpoint,
                    user_id,
                    exc_info=True,
                )

        logger.info(
            "Pushed notification %s to %d of %d subscriptions for user %s",
            message.notification.id,
            len(subscriptions) - failed,
            len(subscriptions),
            user_id,
        )
