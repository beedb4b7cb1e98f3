"""Tests for trigger planning and the scheduler's trigger table."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta

import pytest

from atlas.container import build_services
from atlas.domain.errors import ConcurrencyError
from atlas.domain.models import EventStatus, Trigger, TriggerPurpose, trigger_key
from atlas.jobs import JOB_TABLE
from atlas.repos.memory import EventRepository
from atlas.services.scheduler import TriggerScheduler, plan_triggers

from conftest import NOW, World


def _purposes(triggers: list[Trigger]) -> set[TriggerPurpose]:
    return {t.purpose for t in triggers}


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def test_plan_includes_every_trigger_for_a_distant_start():
    start = NOW + timedelta(days=2)
    triggers = plan_triggers("e1", start, start + timedelta(hours=3), NOW)

    fire_at = {t.purpose: t.fire_at for t in triggers}
    assert fire_at == {
        TriggerPurpose.START: start,
        TriggerPurpose.END: start + timedelta(hours=3),
        TriggerPurpose.REMIND_ONE_DAY: start - timedelta(days=1),
        TriggerPurpose.REMIND_ONE_HOUR: start - timedelta(hours=1),
        TriggerPurpose.REMIND_THIRTY_MINUTES: start - timedelta(minutes=30),
    }


def test_plan_skips_reminders_already_in_the_past():
    start = NOW + timedelta(minutes=45)
    triggers = plan_triggers("e1", start, start + timedelta(hours=1), NOW)

    assert _purposes(triggers) == {
        TriggerPurpose.START,
        TriggerPurpose.END,
        TriggerPurpose.REMIND_THIRTY_MINUTES,
    }


def test_plan_skips_reminder_landing_exactly_now():
    start = NOW + timedelta(hours=1)
    triggers = plan_triggers("e1", start, start + timedelta(hours=1), NOW)

    assert TriggerPurpose.REMIND_ONE_HOUR not in _purposes(triggers)
    assert TriggerPurpose.REMIND_THIRTY_MINUTES in _purposes(triggers)


def test_every_purpose_has_a_distinct_key():
    keys = {trigger_key("e1", purpose) for purpose in TriggerPurpose}
    assert len(keys) == len(TriggerPurpose)
    assert trigger_key("e1", TriggerPurpose.START) == "event-starting.e1"
    assert trigger_key("e1", TriggerPurpose.END) == "event-ending.e1"
    assert trigger_key("e1", TriggerPurpose.REMIND_ONE_HOUR) == "event-reminder.e1.OneHour"


# ---------------------------------------------------------------------------
# Trigger table driven by lifecycle messages
# ---------------------------------------------------------------------------


def test_announced_schedule_registers_all_triggers(world, services):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)

    triggers = services.scheduler.triggers_for(event.id)

    assert _purposes(triggers) == set(TriggerPurpose)
    assert [t.key for t in triggers][0] == f"event-reminder.{event.id}.OneDay"
    assert triggers[-1].fire_at == event.end_time


def test_unlisted_event_holds_no_triggers_until_announced(world, services):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2))

    assert services.scheduler.triggers_for(event.id) == []

    with services.open_scope() as scope:
        scope.lifecycle().announce(event.id)
    world.settle()

    assert len(services.scheduler.triggers_for(event.id)) == 5


def test_announced_without_times_holds_no_triggers(world, services):
    group = world.group()
    event = world.event(group, announce=True)

    assert event.status is EventStatus.ANNOUNCED
    assert services.scheduler.triggers_for(event.id) == []


def test_reschedule_replaces_the_whole_set(world, services, clock):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)

    new_start = clock() + timedelta(minutes=50)
    with services.open_scope() as scope:
        scope.lifecycle().schedule(event.id, new_start, new_start + timedelta(hours=1))
    world.settle()

    triggers = services.scheduler.triggers_for(event.id)
    assert _purposes(triggers) == {
        TriggerPurpose.START,
        TriggerPurpose.END,
        TriggerPurpose.REMIND_THIRTY_MINUTES,
    }
    assert {t.fire_at for t in triggers} == {
        new_start - timedelta(minutes=30),
        new_start,
        new_start + timedelta(hours=1),
    }


def test_back_to_back_reschedules_end_on_the_last_committed_schedule(world, services, clock):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)

    for days in (3, 4, 5, 6):
        start = clock() + timedelta(days=days)
        with services.open_scope() as scope:
            scope.lifecycle().schedule(event.id, start, start + timedelta(hours=2))
    world.settle()

    stored = world.get_event(event.id)
    triggers = {t.purpose: t.fire_at for t in services.scheduler.triggers_for(event.id)}
    assert triggers[TriggerPurpose.START] == stored.start_time == clock() + timedelta(days=6)
    assert triggers[TriggerPurpose.END] == stored.end_time
    assert len(triggers) == 5


def test_concurrent_reschedules_leave_one_winner_and_matching_triggers(
    world, services, clock, monkeypatch
):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)

    # Both writers read the same version before either commits.
    both_loaded = threading.Barrier(2, timeout=5)
    workers: list[threading.Thread] = []
    original_get = EventRepository.get

    def get_then_wait(self, event_id):
        loaded = original_get(self, event_id)
        if threading.current_thread() in workers:
            both_loaded.wait()
        return loaded

    monkeypatch.setattr(EventRepository, "get", get_then_wait)
    outcomes = {}

    def reschedule(days: int) -> None:
        start = clock() + timedelta(days=days)
        try:
            with services.open_scope() as scope:
                outcomes[days] = scope.lifecycle().schedule(
                    event.id, start, start + timedelta(hours=2)
                )
        except ConcurrencyError as exc:
            outcomes[days] = exc

    workers.extend(threading.Thread(target=reschedule, args=(days,)) for days in (3, 4))
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5)
    world.settle()

    losers = [o for o in outcomes.values() if isinstance(o, ConcurrencyError)]
    winners = [o for o in outcomes.values() if not isinstance(o, ConcurrencyError)]
    assert len(losers) == 1
    assert len(winners) == 1

    stored = world.get_event(event.id)
    assert stored.start_time == winners[0].start_time
    triggers = {t.purpose: t.fire_at for t in services.scheduler.triggers_for(event.id)}
    assert triggers[TriggerPurpose.START] == stored.start_time
    assert triggers[TriggerPurpose.END] == stored.end_time
    assert len(triggers) == 5


def test_cancel_removes_every_trigger(world, services):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)

    with services.open_scope() as scope:
        scope.lifecycle().cancel(event.id)
    world.settle()

    assert services.scheduler.triggers_for(event.id) == []
    assert services.scheduler.all_triggers() == []


def test_started_event_keeps_only_its_end_trigger(world, services, clock):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)

    clock.advance(days=2)
    with services.open_scope() as scope:
        scope.lifecycle().start(event.id)
    world.settle()

    triggers = services.scheduler.triggers_for(event.id)
    assert [t.purpose for t in triggers] == [TriggerPurpose.END]


def test_triggers_of_other_events_are_untouched(world, services):
    group = world.group()
    kept = world.event(group, name="Kept", starts_in=timedelta(days=2), announce=True)
    dropped = world.event(group, name="Dropped", starts_in=timedelta(days=3), announce=True)

    with services.open_scope() as scope:
        scope.lifecycle().cancel(dropped.id)
    world.settle()

    assert len(services.scheduler.triggers_for(kept.id)) == 5
    assert services.scheduler.triggers_for(dropped.id) == []


# ---------------------------------------------------------------------------
# Firing
# ---------------------------------------------------------------------------


def test_a_trigger_fires_at_most_once(world, services, clock):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)
    clock.advance(days=1)

    assert services.scheduler.fire(event.id, TriggerPurpose.REMIND_ONE_DAY) is True
    assert services.scheduler.fire(event.id, TriggerPurpose.REMIND_ONE_DAY) is False
    world.settle()

    remaining = _purposes(services.scheduler.triggers_for(event.id))
    assert TriggerPurpose.REMIND_ONE_DAY not in remaining
    assert len(remaining) == 4


def test_fire_due_fires_only_triggers_at_or_before_now(world, services, clock):
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)

    fired = services.scheduler.fire_due(clock() + timedelta(days=1, hours=1))
    world.settle()

    assert [t.purpose for t in fired] == [TriggerPurpose.REMIND_ONE_DAY]
    assert len(services.scheduler.triggers_for(event.id)) == 4


def test_replace_rejects_triggers_of_another_event(services):
    foreign = Trigger(event_id="other", purpose=TriggerPurpose.START, fire_at=NOW + timedelta(hours=1))

    with pytest.raises(ValueError):
        services.scheduler.replace("e1", [foreign])


def test_job_table_must_cover_every_purpose(services, clock):
    with pytest.raises(ValueError):
        TriggerScheduler(
            scope_factory=services.open_scope,
            clock=clock,
            job_table={TriggerPurpose.START: lambda scope, trigger: None},
        )


def _exploding_job(scope, trigger: Trigger) -> None:
    raise RuntimeError(f"job for {trigger.key} blew up")


@pytest.fixture()
def fragile_services(settings, clock):
    services = build_services(
        settings,
        clock=clock,
        job_table={**JOB_TABLE, TriggerPurpose.REMIND_ONE_DAY: _exploding_job},
    )
    services.start(paused=True)
    yield services
    services.shutdown()


def test_failing_job_is_logged_and_later_triggers_still_fire(fragile_services, clock, caplog):
    world = World(fragile_services)
    group = world.group()
    event = world.event(group, starts_in=timedelta(days=2), announce=True)
    clock.advance(days=2, minutes=1)

    fired = fragile_services.scheduler.fire_due()
    world.settle()

    assert [t.purpose for t in fired] == [
        TriggerPurpose.REMIND_ONE_DAY,
        TriggerPurpose.REMIND_ONE_HOUR,
        TriggerPurpose.REMIND_THIRTY_MINUTES,
        TriggerPurpose.START,
    ]
    assert world.get_event(event.id).status is EventStatus.STARTED
    failures = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(failures) == 1
    assert trigger_key(event.id, TriggerPurpose.REMIND_ONE_DAY) in failures[0].getMessage()
