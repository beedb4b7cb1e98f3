"""End-to-end tests for the HTTP surface."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from atlas.main import app, clock, services


@pytest.fixture(autouse=True)
def _clear_services():
    """Reset the process-wide store, trigger table and clock around each test."""
    _reset()
    yield
    services.bus.join(timeout=5)
    _reset()


def _reset() -> None:
    for trigger in services.scheduler.all_triggers():
        services.scheduler.unregister(trigger.event_id)
    services.store.clear()
    clock.reset()


@pytest.fixture()
def client():
    return TestClient(app)


def _settle() -> None:
    assert services.bus.join(timeout=5)


def _setup(client: TestClient) -> dict:
    host = client.post("/users", json={"username": "atlas-host"}).json()
    fan = client.post("/users", json={"username": "night-owl"}).json()
    group = client.post("/groups", json={"name": "Club Atlas"}).json()
    event = client.post(
        "/events",
        json={"name": "Friday Night Set", "group_id": group["id"], "auto_start": True},
    ).json()
    return {"host": host, "fan": fan, "group": group, "event": event}


def _schedule(client: TestClient, event_id: str, start: datetime, hours: int = 3):
    return client.put(
        f"/events/{event_id}/schedule",
        json={
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=hours)).isoformat(),
        },
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_create_event_starts_unlisted(client):
    data = _setup(client)

    assert data["event"]["status"] == "unlisted"
    assert data["event"]["group_id"] == data["group"]["id"]
    assert client.get(f"/events/{data['event']['id']}").json()["name"] == "Friday Night Set"


def test_create_event_for_unknown_group_is_404(client):
    resp = client.post("/events", json={"name": "Orphan", "group_id": "missing"})
    assert resp.status_code == 404


def test_schedule_announce_and_cancel(client):
    data = _setup(client)
    event_id = data["event"]["id"]
    client.post(
        "/follows",
        json={"user_id": data["fan"]["id"], "entity_id": event_id, "entity_type": "event"},
    )

    start = datetime.now(timezone.utc) + timedelta(days=2)
    assert _schedule(client, event_id, start).status_code == 200
    assert client.post(f"/events/{event_id}/announce").json()["status"] == "announced"
    _settle()

    triggers = client.get(f"/events/{event_id}/triggers").json()
    assert len(triggers) == 5

    assert client.post(f"/events/{event_id}/cancel").json()["status"] == "canceled"
    _settle()

    assert client.get(f"/events/{event_id}/triggers").json() == []
    page = client.get(f"/users/{data['fan']['id']}/notifications").json()
    assert page["unread"] == 1
    assert page["notifications"][0]["key"] == "EVENT_CANCELLED"


def test_illegal_transition_is_409(client):
    data = _setup(client)
    event_id = data["event"]["id"]

    resp = client.post(f"/events/{event_id}/start")

    assert resp.status_code == 409
    assert client.get(f"/events/{event_id}").json()["status"] == "unlisted"


def test_schedule_in_the_past_is_409(client):
    data = _setup(client)

    resp = _schedule(client, data["event"]["id"], datetime.now(timezone.utc) - timedelta(hours=1))

    assert resp.status_code == 409


def test_schedule_with_end_before_start_is_422(client):
    data = _setup(client)
    start = datetime.now(timezone.utc) + timedelta(days=1)

    resp = client.put(
        f"/events/{data['event']['id']}/schedule",
        json={"start_time": start.isoformat(), "end_time": (start - timedelta(hours=1)).isoformat()},
    )

    assert resp.status_code == 422


def test_unknown_event_is_404(client):
    assert client.get("/events/missing").status_code == 404
    assert client.post("/events/missing/announce").status_code == 404


def test_update_event(client):
    data = _setup(client)

    resp = client.patch(f"/events/{data['event']['id']}", json={"description": "Bring glowsticks"})

    assert resp.status_code == 200
    assert resp.json()["description"] == "Bring glowsticks"


def test_tick_fires_due_triggers_and_auto_starts(client):
    data = _setup(client)
    event_id = data["event"]["id"]
    start = datetime.now(timezone.utc) + timedelta(days=2)
    _schedule(client, event_id, start)
    client.post(f"/events/{event_id}/announce")
    _settle()

    resp = client.post("/tick", params={"now": (start + timedelta(minutes=1)).isoformat()})
    _settle()

    fired = resp.json()["triggers_fired"]
    assert fired == [
        f"event-reminder.{event_id}.OneDay",
        f"event-reminder.{event_id}.OneHour",
        f"event-reminder.{event_id}.ThirtyMinutes",
        f"event-starting.{event_id}",
    ]
    remaining = client.get(f"/events/{event_id}/triggers").json()
    assert [t["purpose"] for t in remaining] == ["end"]


# ---------------------------------------------------------------------------
# Stars, follows, notifications
# ---------------------------------------------------------------------------


def test_star_invite_and_accept(client):
    data = _setup(client)
    event_id = data["event"]["id"]
    star_id = data["fan"]["id"]

    resp = client.post(
        f"/events/{event_id}/stars",
        json={"user_id": star_id, "inviter_id": data["host"]["id"], "title": "Headliner"},
    )
    assert resp.status_code == 201
    assert resp.json()["status"] == "pending"

    assert client.post(f"/events/{event_id}/stars/{star_id}/accept").status_code == 200
    assert client.post(f"/events/{event_id}/stars/{star_id}/accept").status_code == 404
    _settle()

    page = client.get(f"/users/{star_id}/notifications").json()
    assert [n["key"] for n in page["notifications"]] == ["EVENT_STAR_INVITED"]


def test_duplicate_star_is_409(client):
    data = _setup(client)
    event_id = data["event"]["id"]
    body = {"user_id": data["fan"]["id"], "inviter_id": data["host"]["id"]}

    assert client.post(f"/events/{event_id}/stars", json=body).status_code == 201
    assert client.post(f"/events/{event_id}/stars", json=body).status_code == 409


def test_follow_unknown_entity_is_404(client):
    data = _setup(client)

    resp = client.post(
        "/follows",
        json={"user_id": data["fan"]["id"], "entity_id": "missing", "entity_type": "group"},
    )

    assert resp.status_code == 404


def test_refollow_replaces_preferences(client):
    data = _setup(client)
    body = {
        "user_id": data["fan"]["id"],
        "entity_id": data["group"]["id"],
        "entity_type": "group",
    }

    first = client.post("/follows", json=body).json()
    second = client.post(
        "/follows", json={**body, "preferences": {"at_start": False, "at_one_hour": True}}
    ).json()

    assert second["followed_at"] == first["followed_at"]
    assert second["preferences"]["at_one_hour"] is True
    assert len(services.store.follows) == 1

    params = {"user_id": data["fan"]["id"], "entity_id": data["group"]["id"]}
    assert client.delete("/follows", params=params).status_code == 204
    assert client.delete("/follows", params=params).status_code == 404
    assert services.store.follows == {}


def test_mark_notification_read(client):
    data = _setup(client)
    event_id = data["event"]["id"]
    client.post(
        "/follows",
        json={"user_id": data["fan"]["id"], "entity_id": event_id, "entity_type": "event"},
    )
    client.post(f"/events/{event_id}/cancel")
    _settle()

    url = f"/users/{data['fan']['id']}/notifications"
    notification_id = client.get(url).json()["notifications"][0]["id"]

    assert client.post(f"/notifications/{notification_id}/read").status_code == 200
    assert client.post("/notifications/missing/read").status_code == 404
    assert client.get(url).json()["unread"] == 0
    assert client.get(url, params={"is_read": False}).json()["notifications"] == []


def test_push_subscription_lifecycle(client):
    data = _setup(client)
    body = {
        "user_id": data["fan"]["id"],
        "endpoint": "https://push.example/phone",
        "p256dh": "key",
        "auth": "secret",
    }

    assert client.post("/push-subscriptions", json=body).status_code == 201
    assert client.post("/push-subscriptions", json={**body, "user_id": "missing"}).status_code == 404

    params = {"endpoint": body["endpoint"]}
    assert client.delete("/push-subscriptions", params=params).status_code == 204
    assert client.delete("/push-subscriptions", params=params).status_code == 404


def test_websocket_receives_new_notifications(client):
    data = _setup(client)
    fan_id = data["fan"]["id"]
    event_id = data["event"]["id"]
    client.post("/follows", json={"user_id": fan_id, "entity_id": event_id, "entity_type": "event"})

    with client.websocket_connect(f"/ws/notifications/{fan_id}") as websocket:
        client.post(f"/events/{event_id}/cancel")
        message = websocket.receive_json()

    assert message["event"] == "notificationReceived"
    assert message["data"]["key"] == "EVENT_CANCELLED"
    assert message["data"]["entityId"] == event_id
