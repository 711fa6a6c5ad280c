"""
Recurrence Expander

Turns a routine definition plus a window of calendar days into concrete
Start/End alarm records. Pure: the same routine, window and ``now`` always
give the same records (and therefore the same alarm ids).
"""

from datetime import date, datetime, timedelta
from typing import List, Optional, Union

from rhythm.models import AlarmKind, AlarmRecord, RoutineDefinition, at_local_time, date_key


def window_dates(window_start: Union[date, datetime], window_days: int) -> List[date]:
    """Local calendar dates in [window_start, window_start + window_days)."""
    if isinstance(window_start, datetime):
        window_start = window_start.date()
    return [window_start + timedelta(days=i) for i in range(max(0, int(window_days)))]


def expand(routine: RoutineDefinition, window_start: Union[date, datetime],
           window_days: int, now: Optional[datetime] = None) -> List[AlarmRecord]:
    """Start/End alarms for every matching day in the window.

    A day is included when its local weekday is one of the routine's days and
    it is not before the routine's creation date. Instants at or before
    ``now`` are dropped; there is no backfill.
    """
    if now is None:
        now = datetime.now()
    routine = routine.normalized()

    records = []
    for day in window_dates(window_start, window_days):
        if not routine.runs_on(day):
            continue
        key = date_key(day)
        for kind, hhmm in ((AlarmKind.START, routine.start_time),
                           (AlarmKind.END, routine.end_time)):
            when = at_local_time(day, hhmm)
            if when <= now:
                continue
            records.append(AlarmRecord.create(routine.id, key, kind, when))
    return records


def occurrence_start(routine: RoutineDefinition, day: Union[date, str]) -> datetime:
    return at_local_time(day, routine.start_time)


def occurrence_end(routine: RoutineDefinition, day: Union[date, str]) -> datetime:
    return at_local_time(day, routine.normalized().end_time)
