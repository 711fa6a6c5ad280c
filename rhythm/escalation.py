"""
Escalation Controller

Handles a fired alarm: resolves the occurrence's snooze count into an
escalation tier, renders the reminder text, emits the notification with the
right buttons and records the active-notification metadata the dispatcher
needs when the user answers.

Emission and metadata persistence are not transactional. If the metadata
write fails after a successful emission, the dispatcher treats the user's
later answer as a no-op.
"""

from datetime import datetime
from typing import Callable, Optional

from rhythm.locks import KeyedLocks, occurrence_key
from rhythm.logger import get_logger
from rhythm.models import (
    ActiveNotification,
    AlarmKind,
    AlarmRecord,
    actions_for,
)
from rhythm.notifier import NotificationError
from rhythm.retry import call_with_retry, retry_settings
from rhythm.status_store import InvariantViolation
from rhythm.store import StoreError

DEEP_ESCALATION_THRESHOLD = 2


def tier_for(snooze_count: int, deep_threshold: int = DEEP_ESCALATION_THRESHOLD) -> int:
    """Escalation tier for a snooze count: 0 normal, 1 follow-up, >= deep_threshold deep.

    Simple threshold, never interpolated; non-decreasing in snooze_count.
    """
    if snooze_count < 0:
        raise InvariantViolation(f"Negative snooze count: {snooze_count}")
    return min(snooze_count, deep_threshold)


class EscalationController:

    def __init__(self, ledger, status, renderer, notifier, routines,
                 history=None, config=None, locks: Optional[KeyedLocks] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.ledger = ledger
        self.status = status
        self.renderer = renderer
        self.notifier = notifier
        self.routines = routines
        self.history = history
        self.config = config
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.logger = get_logger(__name__, config)

        get = config.get if config else (lambda key, default=None: default)
        self.title = get("notifications.title", "Rhythm")
        self.snooze_options = list(get("scheduler.snooze_options", [2, 5, 10]))
        self.deep_threshold = get("scheduler.deep_escalation_threshold", DEEP_ESCALATION_THRESHOLD)
        self._retry = retry_settings(config)

    def on_fire(self, alarm_id: str) -> Optional[str]:
        """Handle a timer fire. Returns the emitted notification id, or None.

        If the host refuses the notification the ledger record is kept, so
        the next resync reschedules it within the missed-alarm grace window.
        """
        record = call_with_retry(lambda: self.ledger.find(alarm_id),
                                 what=f"ledger read {alarm_id}", retry_on=(StoreError,),
                                 **self._retry)
        if record is None:
            self.logger.info(f"Alarm {alarm_id} fired without a ledger record, ignoring")
            return None

        consumed = True
        try:
            return self._fire(record)
        except NotificationError:
            consumed = False
            self.logger.warning(f"Keeping alarm {alarm_id} in the ledger for the next resync")
            raise
        finally:
            if consumed:
                try:
                    self.ledger.remove(alarm_id)
                except Exception as e:
                    self.logger.warning(f"Could not remove fired alarm {alarm_id}: {e}")

    def _fire(self, record: AlarmRecord) -> Optional[str]:
        with self.locks.hold(occurrence_key(record.routine_id, record.date_key)):
            if self.ledger.find(record.alarm_id) is None:
                self.logger.info(f"Alarm {record.alarm_id} was cancelled before it could fire")
                return None
            if self.status.get_active(f"rhythm-{record.alarm_id}") is not None:
                self.logger.info(f"Alarm {record.alarm_id} already has an open notification")
                return None

            if self.status.is_terminal(record.routine_id, record.date_key):
                self.logger.info(
                    f"Occurrence {record.routine_id}/{record.date_key} already "
                    f"{self.status.get(record.routine_id, record.date_key).value}, "
                    f"dropping {record.kind.value} alarm"
                )
                return None

            routine = self.routines.get(record.routine_id)
            if routine is None:
                self.logger.info(f"Routine {record.routine_id} no longer exists, dropping {record.alarm_id}")
                return None

            count = self.status.snooze_count(record.routine_id, record.date_key)
            tier = tier_for(count, self.deep_threshold)

        self.logger.info(
            f"Firing {record.kind.value} for '{routine.name}' on {record.date_key} "
            f"(snoozes={count}, tier={tier})"
        )
        return self.emit(
            notification_id=f"rhythm-{record.alarm_id}",
            routine_id=routine.id,
            date_key=record.date_key,
            kind=record.kind,
            tier=tier,
            routine_name=routine.name,
            routine_description=routine.description,
        )

    def emit_nudge(self, parent: ActiveNotification) -> Optional[str]:
        """Immediate EscalatedNudge after a first skip. Status is left alone."""
        return self.emit(
            notification_id=f"{parent.notification_id}-nudge",
            routine_id=parent.routine_id,
            date_key=parent.date_key,
            kind=AlarmKind.ESCALATED_NUDGE,
            tier=0,
            routine_name=parent.routine_name,
            routine_description=parent.routine_description,
        )

    def emit(self, notification_id: str, routine_id: str, date_key: str, kind: AlarmKind,
             tier: int, routine_name: str, routine_description: str = "") -> Optional[str]:
        """Render, emit and record one notification.

        Rendering and emission run without the occurrence lock (the LLM call
        can take seconds). The metadata write takes it again and is skipped,
        and the notification withdrawn, if the occurrence closed meanwhile.
        NotificationError from the host propagates once the retry is spent.
        """
        intent = self.renderer.intent(kind, tier, routine_name, routine_description)
        body = self.renderer.render_message(intent)
        actions = actions_for(kind, self.snooze_options)

        call_with_retry(lambda: self.notifier.emit(notification_id, self.title, body, actions),
                        what=f"emit notification {notification_id}",
                        retry_on=(NotificationError,), **self._retry)

        active = ActiveNotification(
            notification_id=notification_id,
            routine_id=routine_id,
            date_key=date_key,
            kind=kind,
            snooze_tier=tier,
            routine_name=routine_name,
            routine_description=routine_description,
            actions=[a.key for a in actions],
            created_at=self.clock().replace(microsecond=0),
        )
        with self.locks.hold(occurrence_key(routine_id, date_key)):
            try:
                if self.status.is_terminal(routine_id, date_key):
                    self.logger.info(f"Occurrence {routine_id}/{date_key} closed while emitting, "
                                     f"withdrawing {notification_id}")
                    self.notifier.clear(notification_id)
                    return None
                call_with_retry(lambda: self.status.put_active(active),
                                what=f"persist active notification {notification_id}",
                                retry_on=(StoreError,), **self._retry)
            except Exception as e:
                self.logger.error(f"Notification {notification_id} emitted without metadata: {e}")

        if self.history is not None:
            self.history.record(routine_id, date_key, kind.value, body, self.clock())
        return notification_id
