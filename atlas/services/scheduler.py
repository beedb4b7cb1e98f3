"""Trigger scheduler: turns an event's schedule into date-triggered jobs.

Each event owns at most five triggers (start, end and three reminders), keyed
by (event id, purpose). Re-scheduling replaces the whole set under one lock so
stale and fresh triggers never coexist. Triggers live in APScheduler's
in-memory job store and do not survive a restart.
"""

from __future__ import annotations

import logging
import threading
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from atlas.domain.models import (
    SCHEDULABLE_STATUSES,
    Event,
    EventStatus,
    Trigger,
    TriggerPurpose,
    trigger_key,
)
from atlas.jobs import JOB_TABLE

if TYPE_CHECKING:
    from atlas.container import Scope

logger = logging.getLogger(__name__)

Job = Callable[["Scope", Trigger], None]
JobTable = Mapping[TriggerPurpose, Job]

REMINDER_PURPOSES = (
    TriggerPurpose.REMIND_ONE_DAY,
    TriggerPurpose.REMIND_ONE_HOUR,
    TriggerPurpose.REMIND_THIRTY_MINUTES,
)


def plan_triggers(
    event_id: str,
    start_time: datetime,
    end_time: datetime,
    now: datetime,
) -> list[Trigger]:
    """Compute the trigger set for a schedule.

    Start and end are always included; a reminder is skipped when its fire
    instant is not in the future.
    """
    triggers = [
        Trigger(event_id=event_id, purpose=TriggerPurpose.START, fire_at=start_time),
        Trigger(event_id=event_id, purpose=TriggerPurpose.END, fire_at=end_time),
    ]
    for purpose in REMINDER_PURPOSES:
        fire_at = start_time - purpose.window.offset
        if fire_at > now:
            triggers.append(Trigger(event_id=event_id, purpose=purpose, fire_at=fire_at))
        else:
            logger.debug("Skipping %s reminder for event %s, already past", purpose.window, event_id)
    return triggers


class TriggerScheduler:
    def __init__(
        self,
        scope_factory: Callable[[], AbstractContextManager[Any]],
        clock: Callable[[], datetime],
        job_table: JobTable | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._scope_factory = scope_factory
        self._clock = clock
        self._jobs: dict[TriggerPurpose, Job] = dict(job_table or JOB_TABLE)
        missing = set(TriggerPurpose) - set(self._jobs)
        if missing:
            raise ValueError(f"No job registered for {sorted(missing)}")

        self._scheduler = scheduler or BackgroundScheduler(
            timezone=timezone.utc,
            job_defaults={"coalesce": True, "misfire_grace_time": None, "max_instances": 1},
        )
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self, paused: bool = False) -> None:
        if self._scheduler.running:
            logger.warning("Trigger scheduler already started")
            return
        self._scheduler.start(paused=paused)
        logger.info("Trigger scheduler started%s", " (paused)" if paused else "")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Trigger scheduler stopped")

    def exclusive(self) -> AbstractContextManager[Any]:
        """Lock held while reading an event and replacing its triggers."""
        return self._lock

    # ------------------------------------------------------------------
    # Trigger table
    # ------------------------------------------------------------------

    def replace(self, event_id: str, triggers: Iterable[Trigger]) -> list[Trigger]:
        """Atomically swap every trigger of *event_id* for *triggers*."""
        triggers = list(triggers)
        if any(t.event_id != event_id for t in triggers):
            raise ValueError(f"All triggers must belong to event {event_id}")

        with self._lock:
            self._remove(event_id, TriggerPurpose)
            for trigger in triggers:
                # Resolve the job now so firing never depends on table lookups.
                job = self._jobs[trigger.purpose]
                self._scheduler.add_job(
                    self._fire,
                    trigger=DateTrigger(run_date=trigger.fire_at),
                    args=[job, trigger],
                    id=trigger.key,
                    name=f"{trigger.purpose} {event_id}",
                    replace_existing=True,
                )
                logger.info(
                    "Scheduling trigger %s for event %s at %s",
                    trigger.key,
                    event_id,
                    trigger.fire_at.isoformat(),
                )
        return triggers

    def unregister(
        self,
        event_id: str,
        purposes: Iterable[TriggerPurpose] = TriggerPurpose,
    ) -> int:
        with self._lock:
            return self._remove(event_id, purposes)

    def triggers_for(self, event_id: str) -> list[Trigger]:
        triggers = [
            job.args[1]
            for job in self._scheduler.get_jobs()
            if job.args[1].event_id == event_id
        ]
        return sorted(triggers, key=lambda t: t.fire_at)

    def all_triggers(self) -> list[Trigger]:
        return sorted((job.args[1] for job in self._scheduler.get_jobs()), key=lambda t: t.fire_at)

    def sync(self, event: Event) -> list[Trigger]:
        """Bring the trigger table in line with an authoritative event snapshot."""
        with self._lock:
            if event.status in SCHEDULABLE_STATUSES and event.is_scheduled:
                return self.replace(
                    event.id,
                    plan_triggers(event.id, event.start_time, event.end_time, self._clock()),
                )
            if event.status is EventStatus.STARTED:
                # Only the end trigger is still meaningful once started.
                self._remove(event.id, [p for p in TriggerPurpose if p is not TriggerPurpose.END])
                return self.triggers_for(event.id)

            removed = self._remove(event.id, TriggerPurpose)
            if removed:
                logger.info("Removed %d triggers for event %s (%s)", removed, event.id, event.status)
            return []

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def fire(self, event_id: str, purpose: TriggerPurpose) -> bool:
        """Fire a registered trigger right away, removing it first."""
        key = trigger_key(event_id, purpose)
        with self._lock:
            job = self._scheduler.get_job(key)
            if job is None:
                return False
            self._scheduler.remove_job(key)
        job.func(*job.args)
        return True

    def fire_due(self, now: datetime | None = None) -> list[Trigger]:
        """Fire every trigger whose instant is at or before *now*."""
        now = now or self._clock()
        due = [t for t in self.all_triggers() if t.fire_at <= now]
        return [t for t in due if self.fire(t.event_id, t.purpose)]

    def _fire(self, job: Job, trigger: Trigger) -> None:
        logger.info("Trigger %s fired", trigger.key)
        try:
            with self._scope_factory() as scope:
                job(scope, trigger)
        except Exception:
            logger.critical("Job for trigger %s failed", trigger.key, exc_info=True)

    def _remove(self, event_id: str, purposes: Iterable[TriggerPurpose]) -> int:
        removed = 0
        for purpose in purposes:
            try:
                self._scheduler.remove_job(trigger_key(event_id, purpose))
                removed += 1
            except JobLookupError:
                pass
        return removed
