"""Jobs run by the trigger scheduler when a trigger fires.

Every job re-fetches the event and checks it still warrants action, so a
trigger that outlived a cancel or re-schedule is a harmless no-op. Failures
are logged and swallowed; a fired job is never retried.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from atlas.domain.events import EventReminderDue
from atlas.domain.models import SCHEDULABLE_STATUSES, Trigger, TriggerPurpose

if TYPE_CHECKING:
    from atlas.container import Scope

logger = logging.getLogger(__name__)


def start_event_job(scope: Scope, trigger: Trigger) -> None:
    event_id = trigger.event_id
    try:
        logger.info("Automatic event starting job started for %s", event_id)
        event = scope.uow.events.get(event_id)

        # Do not continue if we can't find the event or auto starting is disabled.
        if event is None or not event.auto_start:
            logger.info("Could not find event %s, or auto start is disabled", event_id)
            return

        scope.lifecycle().start(event_id)
        logger.info("Automatic event starting for event %s completed", event_id)
    except Exception:
        logger.critical(
            "An exception occurred while trying to execute the event start job for %s",
            event_id,
            exc_info=True,
        )


def end_event_job(scope: Scope, trigger: Trigger) -> None:
    event_id = trigger.event_id
    try:
        logger.info("Automatic event ending job started for %s", event_id)
        event = scope.uow.events.get(event_id)
        if event is None:
            logger.info("Could not find event %s", event_id)
            return

        scope.lifecycle().conclude(event_id)
        logger.info("Automatic event ending for event %s completed", event_id)
    except Exception:
        logger.critical(
            "An exception occurred while trying to execute the event end job for %s",
            event_id,
            exc_info=True,
        )


def reminder_job(scope: Scope, trigger: Trigger) -> None:
    event_id = trigger.event_id
    window = trigger.purpose.window
    try:
        logger.info("Automatic event reminder job started for %s (%s)", event_id, window)
        event = scope.uow.events.get(event_id)
        if event is None or event.status not in SCHEDULABLE_STATUSES:
            logger.info(
                "Could not find event %s, or it's not announced (%s)",
                event_id,
                event.status if event else None,
            )
            return

        scope.bus.publish(EventReminderDue(event_id=event_id, window=window))
    except Exception:
        logger.critical(
            "An exception occurred while trying to execute the event reminder job for %s",
            event_id,
            exc_info=True,
        )


JOB_TABLE = {
    TriggerPurpose.START: start_event_job,
    TriggerPurpose.END: end_event_job,
    TriggerPurpose.REMIND_ONE_DAY: reminder_job,
    TriggerPurpose.REMIND_ONE_HOUR: reminder_job,
    TriggerPurpose.REMIND_THIRTY_MINUTES: reminder_job,
}
