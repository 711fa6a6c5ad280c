"""
Status Store

Per-occurrence state keyed by (routine_id, date_key):

- occurrence status (Upcoming -> InProgress -> Completed | Skipped)
- snooze counter, used only to pick the escalation tier
- active notification records, keyed by notification id

Status writes are conditional: once an occurrence is Completed or Skipped
it is never changed again. The promotion sweep relies on this so a stale
tick can never overwrite a user's terminal answer.
"""

from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

from rhythm.logger import get_logger
from rhythm.models import (
    ActiveNotification,
    OccurrenceStatus,
    RoutineDefinition,
    date_key as make_date_key,
    parse_date_key,
)
from rhythm.recurrence import occurrence_start

STATUS_PREFIX = "status/"
SNOOZE_PREFIX = "snoozeCount/"
ACTIVE_PREFIX = "activeNotif/"


class InvariantViolation(ValueError):
    """A write that would break an occurrence invariant (e.g. negative counter)."""


class StatusStore:

    def __init__(self, store, config=None):
        self.store = store
        self.logger = get_logger(__name__, config)

    # ------------------------------------------------------------------
    # Occurrence status
    # ------------------------------------------------------------------

    def get(self, routine_id: str, date_key: str) -> OccurrenceStatus:
        data = self.store.get(f"{STATUS_PREFIX}{routine_id}/{date_key}")
        if not data:
            return OccurrenceStatus.UPCOMING
        return OccurrenceStatus(data["status"])

    def set_if_not_terminal(self, routine_id: str, date_key: str,
                            status: OccurrenceStatus) -> bool:
        """Write status unless the occurrence is already terminal.

        Returns True if the write was applied.
        """
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        def apply(current):
            if current and OccurrenceStatus(current["status"]).is_terminal:
                return current
            return {"status": status.value, "updated_at": stamp}

        old, new = self.store.update(f"{STATUS_PREFIX}{routine_id}/{date_key}", apply)
        if old and OccurrenceStatus(old["status"]).is_terminal:
            self.logger.warning(
                f"Rejected {status.value} for {routine_id}/{date_key}: "
                f"already {old['status']}"
            )
            return False
        if not old or old["status"] != status.value:
            self.logger.info(f"Occurrence {routine_id}/{date_key} -> {status.value}")
        return True

    def is_terminal(self, routine_id: str, date_key: str) -> bool:
        return self.get(routine_id, date_key).is_terminal

    def list_statuses(self, routine_id: Optional[str] = None) -> List[Tuple[str, str, OccurrenceStatus]]:
        """(routine_id, date_key, status) for every stored occurrence."""
        prefix = f"{STATUS_PREFIX}{routine_id}/" if routine_id else STATUS_PREFIX
        result = []
        for key, data in self.store.items(prefix):
            rid, dkey = key[len(STATUS_PREFIX):].rsplit("/", 1)
            result.append((rid, dkey, OccurrenceStatus(data["status"])))
        return result

    # ------------------------------------------------------------------
    # Snooze counters
    # ------------------------------------------------------------------

    def snooze_count(self, routine_id: str, date_key: str) -> int:
        count = int(self.store.get(f"{SNOOZE_PREFIX}{routine_id}/{date_key}", 0))
        if count < 0:
            raise InvariantViolation(f"Negative snooze count for {routine_id}/{date_key}: {count}")
        return count

    def increment_snooze(self, routine_id: str, date_key: str) -> int:
        """Atomically add one to the snooze counter, returning the new value."""
        def bump(current):
            current = int(current or 0)
            if current < 0:
                raise InvariantViolation(
                    f"Negative snooze count for {routine_id}/{date_key}: {current}"
                )
            return current + 1

        _, new = self.store.update(f"{SNOOZE_PREFIX}{routine_id}/{date_key}", bump)
        return new

    def reset_snooze(self, routine_id: str, date_key: str):
        self.store.delete(f"{SNOOZE_PREFIX}{routine_id}/{date_key}")

    # ------------------------------------------------------------------
    # Active notifications
    # ------------------------------------------------------------------

    def put_active(self, active: ActiveNotification):
        if active.snooze_tier < 0:
            raise InvariantViolation(
                f"Negative snooze tier on notification {active.notification_id}"
            )
        self.store.put(f"{ACTIVE_PREFIX}{active.notification_id}", active.to_dict())

    def get_active(self, notification_id: str) -> Optional[ActiveNotification]:
        data = self.store.get(f"{ACTIVE_PREFIX}{notification_id}")
        return ActiveNotification.from_dict(data) if data else None

    def delete_active(self, notification_id: str) -> bool:
        return self.store.delete(f"{ACTIVE_PREFIX}{notification_id}")

    def list_active(self) -> List[ActiveNotification]:
        return [ActiveNotification.from_dict(v) for _, v in self.store.items(ACTIVE_PREFIX)]

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    def promote_due(self, routines: Iterable[RoutineDefinition],
                    now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """Promotion sweep: Upcoming -> InProgress once today's start has passed.

        Returns the (routine_id, date_key) pairs that were promoted.
        """
        if now is None:
            now = datetime.now()
        today = make_date_key(now)
        promoted = []
        for routine in routines:
            if not routine.runs_on(now.date()):
                continue
            if now < occurrence_start(routine, today):
                continue
            if self.get(routine.id, today) != OccurrenceStatus.UPCOMING:
                continue
            if self.set_if_not_terminal(routine.id, today, OccurrenceStatus.IN_PROGRESS):
                promoted.append((routine.id, today))
        return promoted

    def collect_garbage(self, today: date) -> int:
        """Drop snooze counters and active notifications from past dates."""
        removed = 0
        for key, _ in self.store.items(SNOOZE_PREFIX):
            if _is_before(key.rsplit("/", 1)[1], today):
                removed += int(self.store.delete(key))
        for active in self.list_active():
            if _is_before(active.date_key, today):
                removed += int(self.delete_active(active.notification_id))
        if removed:
            self.logger.info(f"Garbage-collected {removed} stale counter/notification record(s)")
        return removed


def _is_before(date_key: str, today: date) -> bool:
    try:
        return parse_date_key(date_key) < today
    except ValueError:
        return False
