"""FastAPI entry point for the VR Atlas event lifecycle service."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from atlas.config import get_settings
from atlas.container import SimulatedClock, build_services
from atlas.domain.errors import (
    ConcurrencyError,
    EntityNotFoundError,
    PreconditionError,
)
from atlas.domain.models import (
    CreateEventRequest,
    CreateGroupRequest,
    CreateUserRequest,
    EntityType,
    Event,
    EventStar,
    Follow,
    FollowRequest,
    Group,
    NotificationPage,
    PushSubscriptionRequest,
    ScheduleEventRequest,
    StarInvitationRequest,
    Trigger,
    UpdateEventRequest,
    User,
    WebPushSubscription,
)
from atlas.logging_config import setup_logging
from atlas.repos.memory import seed_store
from atlas.services.delivery import QueueConnection

logger = logging.getLogger(__name__)

settings = get_settings()

# ── Singletons ────────────────────────────────────────────────────────
clock = SimulatedClock()
services = build_services(settings, clock=clock)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings)
    if not settings.web_push_public_key or not settings.web_push_private_key:
        logger.warning("Web push keys are not configured, pushes will only be logged")
    if settings.seed_demo_data:
        seed_store(services.store, clock())
        logger.info("Seeded demo data")
    services.start()
    yield
    services.shutdown()


app = FastAPI(title="VR Atlas Event Lifecycle Service", lifespan=lifespan)


# ── Error mapping ─────────────────────────────────────────────────────


@app.exception_handler(EntityNotFoundError)
async def _not_found(request: Request, exc: EntityNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PreconditionError)
async def _precondition_failed(request: Request, exc: PreconditionError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConcurrencyError)
async def _conflict(request: Request, exc: ConcurrencyError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ── Users & groups ────────────────────────────────────────────────────


@app.post("/users", response_model=User, status_code=201)
def create_user(body: CreateUserRequest) -> User:
    user = User(username=body.username, social_id=body.social_id, email=body.email)
    with services.open_scope() as scope:
        scope.uow.users.add(user)
        scope.uow.commit()
    return user


@app.post("/groups", response_model=Group, status_code=201)
def create_group(body: CreateGroupRequest) -> Group:
    group = Group(name=body.name, description=body.description)
    with services.open_scope() as scope:
        scope.uow.groups.add(group)
        scope.uow.commit()
    return group


# ── Events ────────────────────────────────────────────────────────────


@app.post("/events", response_model=Event, status_code=201)
def create_event(body: CreateEventRequest) -> Event:
    with services.open_scope() as scope:
        return scope.lifecycle().create(
            name=body.name,
            group_id=body.group_id,
            description=body.description,
            auto_start=body.auto_start,
        )


@app.get("/events", response_model=list[Event])
def list_events() -> list[Event]:
    with services.open_scope() as scope:
        return scope.uow.events.list_all()


@app.get("/events/{event_id}", response_model=Event)
def get_event(event_id: str) -> Event:
    with services.open_scope() as scope:
        event = scope.uow.events.get(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@app.patch("/events/{event_id}", response_model=Event)
def update_event(event_id: str, body: UpdateEventRequest) -> Event:
    with services.open_scope() as scope:
        return scope.lifecycle().update(
            event_id,
            name=body.name,
            description=body.description,
            auto_start=body.auto_start,
        )


@app.put("/events/{event_id}/schedule", response_model=Event)
def schedule_event(event_id: str, body: ScheduleEventRequest) -> Event:
    with services.open_scope() as scope:
        return scope.lifecycle().schedule(event_id, body.start_time, body.end_time)


@app.post("/events/{event_id}/announce", response_model=Event)
def announce_event(event_id: str) -> Event:
    with services.open_scope() as scope:
        return scope.lifecycle().announce(event_id)


@app.post("/events/{event_id}/start", response_model=Event)
def start_event(event_id: str) -> Event:
    with services.open_scope() as scope:
        return scope.lifecycle().start(event_id)


@app.post("/events/{event_id}/cancel", response_model=Event)
def cancel_event(event_id: str) -> Event:
    with services.open_scope() as scope:
        return scope.lifecycle().cancel(event_id)


@app.get("/events/{event_id}/triggers", response_model=list[Trigger])
def list_event_triggers(event_id: str) -> list[Trigger]:
    """Return the scheduler triggers currently registered for an event."""
    return services.scheduler.triggers_for(event_id)


# ── Stars ─────────────────────────────────────────────────────────────


@app.post("/events/{event_id}/stars", response_model=EventStar, status_code=201)
def invite_star(event_id: str, body: StarInvitationRequest) -> EventStar:
    with services.open_scope() as scope:
        return scope.stars().invite(event_id, body.user_id, body.inviter_id, body.title)


@app.post("/events/{event_id}/stars/{user_id}/accept")
def accept_star_invite(event_id: str, user_id: str) -> dict:
    with services.open_scope() as scope:
        if not scope.stars().accept(event_id, user_id):
            raise HTTPException(status_code=404, detail="Pending invite not found")
    return {"status": "accepted"}


@app.post("/events/{event_id}/stars/{user_id}/reject")
def reject_star_invite(event_id: str, user_id: str) -> dict:
    with services.open_scope() as scope:
        if not scope.stars().reject(event_id, user_id):
            raise HTTPException(status_code=404, detail="Pending invite not found")
    return {"status": "rejected"}


# ── Follows ───────────────────────────────────────────────────────────


@app.post("/follows", response_model=Follow, status_code=201)
def follow_entity(body: FollowRequest) -> Follow:
    """Follow a user, group or event; following again replaces the preferences."""
    with services.open_scope() as scope:
        uow = scope.uow
        if uow.users.get(body.user_id) is None:
            raise EntityNotFoundError("User", body.user_id)
        lookup = {
            EntityType.USER: uow.users.get,
            EntityType.GROUP: uow.groups.get,
            EntityType.EVENT: uow.events.get,
        }.get(body.entity_type)
        if lookup is None or lookup(body.entity_id) is None:
            raise EntityNotFoundError(str(body.entity_type).capitalize(), body.entity_id)

        existing = uow.follows.find(body.user_id, body.entity_id)
        follow = Follow(
            user_id=body.user_id,
            entity_id=body.entity_id,
            entity_type=body.entity_type,
            followed_at=existing.followed_at if existing else scope.clock(),
            preferences=body.preferences,
        )
        if existing is not None:
            uow.follows.remove(existing.id)
        uow.follows.add(follow)
        uow.commit()
    return follow


@app.delete("/follows", status_code=204)
def unfollow_entity(user_id: str, entity_id: str) -> None:
    with services.open_scope() as scope:
        existing = scope.uow.follows.find(user_id, entity_id)
        if existing is None:
            raise HTTPException(status_code=404, detail="Follow not found")
        scope.uow.follows.remove(existing.id)
        scope.uow.commit()


# ── Notifications ─────────────────────────────────────────────────────


@app.get("/users/{user_id}/notifications", response_model=NotificationPage)
def list_notifications(
    user_id: str,
    cursor: str | None = None,
    is_read: bool | None = None,
    count: int = 5,
) -> NotificationPage:
    with services.open_scope() as scope:
        return scope.notifications().query(user_id, cursor=cursor, is_read=is_read, count=count)


@app.post("/notifications/{notification_id}/read")
def read_notification(notification_id: str) -> dict:
    with services.open_scope() as scope:
        if not scope.notifications().mark_as_read(notification_id):
            raise HTTPException(status_code=404, detail="Notification not found")
    return {"status": "read"}


@app.post("/push-subscriptions", response_model=WebPushSubscription, status_code=201)
def subscribe_push(body: PushSubscriptionRequest) -> WebPushSubscription:
    with services.open_scope() as scope:
        if scope.uow.users.get(body.user_id) is None:
            raise EntityNotFoundError("User", body.user_id)
        subscription = WebPushSubscription(
            endpoint=body.endpoint,
            p256dh=body.p256dh,
            auth=body.auth,
            user_id=body.user_id,
            created_at=scope.clock(),
        )
        scope.uow.push_subscriptions.add(subscription)
        scope.uow.commit()
    logger.info("User %s created a push notification hook", body.user_id)
    return subscription


@app.delete("/push-subscriptions", status_code=204)
def unsubscribe_push(endpoint: str) -> None:
    with services.open_scope() as scope:
        if scope.uow.push_subscriptions.get(endpoint) is None:
            raise HTTPException(status_code=404, detail="Subscription not found")
        scope.uow.push_subscriptions.remove(endpoint)
        scope.uow.commit()


@app.websocket("/ws/notifications/{user_id}")
async def notification_socket(websocket: WebSocket, user_id: str) -> None:
    """Stream ``notificationReceived`` messages to a connected client."""
    connection = QueueConnection(asyncio.get_running_loop())
    services.hub.register(user_id, connection)
    await websocket.accept()

    async def forward() -> None:
        while True:
            event_name, payload = await connection.queue.get()
            await websocket.send_json({"event": event_name, "data": payload})

    sender = asyncio.create_task(forward())
    try:
        # Inbound frames are ignored; reading is how a disconnect is noticed.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        services.hub.unregister(user_id, connection)


# ── Clock ─────────────────────────────────────────────────────────────


@app.post("/tick")
def tick(now: datetime | None = None) -> dict:
    """Advance simulated time and fire every trigger that is due.

    Pass *now* as a query param to move the service clock forward. Defaults
    to the current service time when omitted.
    """
    if now is not None and now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    current_time = clock.advance_to(now) if now else clock()
    fired = services.scheduler.fire_due(current_time)
    return {"time": current_time.isoformat(), "triggers_fired": [t.key for t in fired]}
