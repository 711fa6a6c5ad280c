"""
Reconciler

Full idempotent resync of the alarm ledger from the current routine
definitions. Runs on startup, whenever a definition changes and on a
periodic tick to heal drift (device sleep, clock changes, missed fires).

Each routine is rebuilt as one unit while holding the locks of all its
occurrences: cancel everything, re-expand, put. Two overlapping resyncs
therefore serialize per routine and the later one wins, and fire or action
handlers for the same occurrences wait for the rebuild. Because alarm ids
are deterministic, rebuilding the same window twice produces the same ledger.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from rhythm.locks import KeyedLocks, occurrence_key
from rhythm.logger import get_logger
from rhythm.models import AlarmKind, AlarmRecord, RoutineDefinition, date_key
from rhythm.recurrence import expand, occurrence_end, occurrence_start, window_dates
from rhythm.retry import call_with_retry, retry_settings
from rhythm.store import StoreError
from rhythm.timer import TimerError


@dataclass
class ResyncResult:
    scheduled: int = 0
    cancelled: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class Reconciler:

    def __init__(self, ledger, status, timer, config=None, locks: Optional[KeyedLocks] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.ledger = ledger
        self.status = status
        self.timer = timer
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.logger = get_logger(__name__, config)
        self.window_days = config.get("scheduler.window_days", 3) if config else 3
        grace = config.get("scheduler.missed_grace_minutes", 15) if config else 15
        self.missed_grace = timedelta(minutes=grace)
        self._retry = retry_settings(config)

    def resync(self, routines: Iterable[RoutineDefinition], now: Optional[datetime] = None,
               window_days: Optional[int] = None) -> ResyncResult:
        """Rebuild alarms for every routine; cancel alarms of routines that vanished."""
        if now is None:
            now = self.clock()
        if window_days is None:
            window_days = self.window_days

        routines = list(routines)
        result = ResyncResult()

        known = {r.id for r in routines}
        orphaned = {r.routine_id for r in self._ledger_records()} - known
        for routine_id in sorted(orphaned):
            try:
                result.cancelled += len(self.remove_routine(routine_id))
            except (StoreError, TimerError) as e:
                self.logger.error(f"Resync could not cancel alarms for deleted routine {routine_id}: {e}")
                result.failed.append(routine_id)

        for routine in routines:
            try:
                scheduled, cancelled = self.resync_routine(routine, now, window_days)
            except (StoreError, TimerError) as e:
                self.logger.error(f"Resync failed for routine {routine.id}: {e}")
                result.failed.append(routine.id)
                continue
            result.scheduled += scheduled
            result.cancelled += cancelled

        try:
            self._sync_timer()
        except (StoreError, TimerError) as e:
            self.logger.error(f"Could not hand alarm list to timer: {e}")
            result.failed.append("*timer*")

        self.logger.info(
            f"Resync complete: {len(routines)} routine(s), {result.scheduled} alarm(s) scheduled"
            + (f", {len(result.failed)} failure(s)" if result.failed else "")
        )
        return result

    def resync_routine(self, routine: RoutineDefinition, now: datetime,
                       window_days: int):
        """Cancel and rebuild one routine's alarms. Returns (scheduled, cancelled)."""
        days = [date_key(d) for d in window_dates(now, window_days) if routine.runs_on(d)]
        with self._hold_occurrences(routine.id, days):
            removed = self._call(lambda: self.ledger.cancel_all(routine.id),
                                 f"cancel alarms for {routine.id}")
            self.timer.cancel_records(removed)

            records = [
                r for r in expand(routine, now, window_days, now)
                if not self.status.is_terminal(r.routine_id, r.date_key)
            ]
            rebuilt = {r.alarm_id for r in records}
            records.extend(
                r for r in removed
                if r.alarm_id not in rebuilt and self._carry_over(routine, r, now)
            )

            for record in records:
                self._call(lambda: self.ledger.put(record), f"ledger put {record.alarm_id}")
                self.timer.schedule(record.alarm_id, record.firing_instant)

        rebuilt = {r.alarm_id for r in records}
        cancelled = len([r for r in removed if r.alarm_id not in rebuilt])
        self.logger.debug(f"Routine {routine.id}: {len(records)} alarm(s), {cancelled} dropped")
        return len(records), cancelled

    def _carry_over(self, routine: RoutineDefinition, record: AlarmRecord, now: datetime) -> bool:
        """Whether a cancelled record must be put back after rebuilding.

        Pending snoozes are user state the definition cannot regenerate.
        Alarms that came due a moment ago but were not polled yet stay
        scheduled so the timer fires them late instead of never, as long
        as the definition still produces the same instant.
        """
        if self.status.is_terminal(record.routine_id, record.date_key):
            return False
        if record.firing_instant > now:
            return record.kind == AlarmKind.SNOOZE
        if now - record.firing_instant > self.missed_grace:
            return False
        if record.kind == AlarmKind.START:
            return routine.runs_on(record.date_key) and \
                record.firing_instant == occurrence_start(routine, record.date_key)
        if record.kind == AlarmKind.END:
            return routine.runs_on(record.date_key) and \
                record.firing_instant == occurrence_end(routine, record.date_key)
        return True

    def remove_routine(self, routine_id: str) -> List[AlarmRecord]:
        """Cancel every pending alarm of a deleted routine."""
        with self._hold_occurrences(routine_id, []):
            removed = self._call(lambda: self.ledger.cancel_all(routine_id),
                                 f"cancel alarms for {routine_id}")
            self.timer.cancel_records(removed)
        if removed:
            self.logger.info(f"Routine {routine_id} removed, cancelled {len(removed)} alarm(s)")
        return removed

    @contextmanager
    def _hold_occurrences(self, routine_id: str, days: List[str]):
        """Lock every occurrence of a routine that is in the window or the ledger.

        Handlers lock single occurrences, so a snooze can add a ledger date
        between listing and locking; the listing is repeated until stable.
        """
        wanted = set(days)
        for _ in range(3):
            wanted |= {r.date_key for r in self._call(lambda: self.ledger.list_for(routine_id),
                                                      f"ledger list {routine_id}")}
            with self.locks.hold_many(occurrence_key(routine_id, d) for d in wanted):
                current = {r.date_key for r in self._call(lambda: self.ledger.list_for(routine_id),
                                                          f"ledger list {routine_id}")}
                if current <= wanted:
                    yield
                    return
                wanted |= current
        # Still changing after three rounds: lock the union seen so far
        with self.locks.hold_many(occurrence_key(routine_id, d) for d in wanted):
            yield

    def _ledger_records(self) -> List[AlarmRecord]:
        return self._call(self.ledger.list, "ledger list")

    def _sync_timer(self):
        """Make the timer hold exactly the ledger's alarms."""
        records = self._ledger_records()
        wanted = {r.alarm_id for r in records}
        for alarm_id in self.timer.list_all():
            if alarm_id not in wanted:
                self.timer.cancel(alarm_id)
        for record in records:
            if self.timer.when(record.alarm_id) != record.firing_instant:
                self.timer.schedule(record.alarm_id, record.firing_instant)

    def _call(self, fn, what: str):
        return call_with_retry(fn, what=what, retry_on=(StoreError,), **self._retry)
