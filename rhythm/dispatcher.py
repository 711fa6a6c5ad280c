"""
Action Dispatcher

Consumes the user's answer to an active notification and drives the
occurrence state machine:

    start        -> InProgress, snooze counter reset, End alarm confirmed
    skip         -> first skip (tier 0, not a nudge): emit EscalatedNudge, status untouched
                    any later skip: Skipped, snooze counter reset
    snoozeN      -> Snooze alarm at now + N minutes, snooze counter + 1
    completed    -> Completed, snooze counter reset
    skipped      -> Skipped, snooze counter reset

Whatever branch runs, the active-notification record is deleted and the
visible notification cleared afterwards. Answers for an occurrence that is
already Completed or Skipped change nothing. An action for an unknown
notification id (duplicate click, state lost in a restart, routine deleted)
is a no-op.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from rhythm.locks import KeyedLocks, occurrence_key
from rhythm.logger import get_logger
from rhythm.models import (
    ActiveNotification,
    AlarmKind,
    AlarmRecord,
    OccurrenceStatus,
    parse_snooze_minutes,
)
from rhythm.notifier import NotificationError
from rhythm.recurrence import occurrence_end
from rhythm.retry import call_with_retry, retry_settings
from rhythm.store import StoreError
from rhythm.timer import TimerError


class ActionDispatcher:

    def __init__(self, ledger, status, timer, notifier, routines, escalation,
                 history=None, config=None, locks: Optional[KeyedLocks] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.ledger = ledger
        self.status = status
        self.timer = timer
        self.notifier = notifier
        self.routines = routines
        self.escalation = escalation
        self.history = history
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.logger = get_logger(__name__, config)
        self._retry = retry_settings(config)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_action(self, notification_id: str, action: Union[int, str]) -> Optional[str]:
        """Apply a button press. ``action`` is a button index or action key.

        Returns the resolved action key, or None for a no-op.
        """
        try:
            active = call_with_retry(lambda: self.status.get_active(notification_id),
                                     what=f"read active notification {notification_id}",
                                     retry_on=(StoreError,), **self._retry)
        except StoreError:
            active = None

        if active is None:
            self.logger.info(f"No active record for {notification_id}, ignoring action {action!r}")
            self._clear(notification_id)
            return None

        key = self._resolve(active, action)
        nudge = False
        try:
            if key is None:
                self.logger.warning(f"Unknown action {action!r} for {notification_id}")
            else:
                self.logger.info(
                    f"Action '{key}' on {active.kind.value} notification for "
                    f"{active.routine_id}/{active.date_key}"
                )
                with self.locks.hold(occurrence_key(active.routine_id, active.date_key)):
                    nudge = self._apply(active, key)
            if nudge:
                self.escalation.emit_nudge(active)
        except (StoreError, TimerError, NotificationError) as e:
            self.logger.error(
                f"Dropping action '{key}' for {active.routine_id}/{active.date_key}: {e}"
            )
        finally:
            self._finish(active)
        return key

    def handle_dismiss(self, notification_id: str):
        """Notification closed without an action: forget its metadata."""
        try:
            if self.status.delete_active(notification_id):
                self.logger.info(f"Notification {notification_id} dismissed")
        except StoreError as e:
            self.logger.warning(f"Could not drop metadata for dismissed {notification_id}: {e}")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve(active: ActiveNotification, action: Union[int, str]) -> Optional[str]:
        if isinstance(action, int):
            if 0 <= action < len(active.actions):
                return active.actions[action]
            return None
        if active.actions and action not in active.actions:
            return None
        return action

    def _apply(self, active: ActiveNotification, key: str) -> bool:
        """Run one transition. Returns True if a nudge should be emitted."""
        rid, dkey = active.routine_id, active.date_key
        if self._store(lambda: self.status.is_terminal(rid, dkey), "read status"):
            self.logger.info(f"Occurrence {rid}/{dkey} already closed, ignoring '{key}'")
            return False

        if key == "start":
            self._set_status(rid, dkey, OccurrenceStatus.IN_PROGRESS)
            self._store(lambda: self.status.reset_snooze(rid, dkey), "reset snooze")
            self._cancel(rid, dkey, (AlarmKind.SNOOZE,))
            self._confirm_end_alarm(rid, dkey)
            self._log_history(active, "Started")
            return False

        if key == "skip":
            if active.kind == AlarmKind.ESCALATED_NUDGE or active.snooze_tier > 0:
                self._terminate(active, OccurrenceStatus.SKIPPED)
                self._log_history(active, "Skipped")
                return False
            self._log_history(active, "Skip pressed, nudging")
            return True

        minutes = parse_snooze_minutes(key)
        if minutes is not None:
            count = self._store(lambda: self.status.increment_snooze(rid, dkey), "increment snooze")
            when = self.clock() + timedelta(minutes=minutes)
            record = AlarmRecord.create(rid, dkey, AlarmKind.SNOOZE, when, snooze_tier=count)
            self._store(lambda: self.ledger.put(record), f"ledger put {record.alarm_id}")
            self.timer.schedule(record.alarm_id, record.firing_instant)
            self.logger.info(f"Snoozed {rid}/{dkey} for {minutes} min (count={count})")
            self._log_history(active, f"Snoozed for {minutes} minutes")
            return False

        if key == "completed":
            self._terminate(active, OccurrenceStatus.COMPLETED)
            self._log_history(active, "Completed")
            return False

        if key == "skipped":
            self._terminate(active, OccurrenceStatus.SKIPPED)
            self._log_history(active, "Skipped")
            return False

        self.logger.warning(f"No transition for action '{key}'")
        return False

    def _terminate(self, active: ActiveNotification, status: OccurrenceStatus):
        rid, dkey = active.routine_id, active.date_key
        self._set_status(rid, dkey, status)
        self._store(lambda: self.status.reset_snooze(rid, dkey), "reset snooze")
        self._cancel(rid, dkey)

    def _set_status(self, routine_id: str, date_key: str, status: OccurrenceStatus) -> bool:
        return self._store(
            lambda: self.status.set_if_not_terminal(routine_id, date_key, status),
            f"set {status.value}",
        )

    def _confirm_end_alarm(self, routine_id: str, date_key: str):
        """(Re)create the End alarm for the occurrence if it is still ahead."""
        routine = self.routines.get(routine_id)
        if routine is None:
            return
        when = occurrence_end(routine, date_key)
        if when <= self.clock():
            return
        record = AlarmRecord.create(routine_id, date_key, AlarmKind.END, when)
        self._store(lambda: self.ledger.put(record), f"ledger put {record.alarm_id}")
        self.timer.schedule(record.alarm_id, record.firing_instant)

    def _cancel(self, routine_id: str, date_key: str, kinds=None):
        removed = self._store(
            lambda: self.ledger.cancel_occurrence(routine_id, date_key, kinds),
            "cancel occurrence alarms",
        )
        self.timer.cancel_records(removed)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _store(self, fn, what: str):
        return call_with_retry(fn, what=what, retry_on=(StoreError,), **self._retry)

    def _log_history(self, active: ActiveNotification, text: str):
        if self.history is not None:
            self.history.record(active.routine_id, active.date_key, "action", text, self.clock())

    def _finish(self, active: ActiveNotification):
        try:
            self.status.delete_active(active.notification_id)
        except StoreError as e:
            self.logger.warning(f"Could not delete active record {active.notification_id}: {e}")
        self._clear(active.notification_id)

    def _clear(self, notification_id: str):
        try:
            self.notifier.clear(notification_id)
        except Exception as e:
            self.logger.warning(f"Could not clear notification {notification_id}: {e}")
