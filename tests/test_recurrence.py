from datetime import datetime

from rhythm.models import AlarmKind
from rhythm.recurrence import expand, occurrence_end, window_dates

from conftest import MONDAY, make_routine


def test_window_dates():
    days = window_dates(MONDAY.replace(hour=8), 3)
    assert [d.isoformat() for d in days] == ["2026-10-19", "2026-10-20", "2026-10-21"]
    assert window_dates(MONDAY, 0) == []


def test_monday_routine_gets_one_start_and_one_end():
    routine = make_routine()
    now = MONDAY.replace(hour=8)

    records = expand(routine, now, 3, now)

    assert [(r.kind, r.firing_instant) for r in records] == [
        (AlarmKind.START, datetime(2026, 10, 19, 9, 0)),
        (AlarmKind.END, datetime(2026, 10, 19, 10, 0)),
    ]
    assert {r.date_key for r in records} == {"2026-10-19"}


def test_expansion_is_idempotent():
    routine = make_routine(days_of_week=["Mon", "Tue", "Wed"])
    now = MONDAY.replace(hour=8)
    assert expand(routine, now, 3, now) == expand(routine, now, 3, now)


def test_past_instants_are_dropped():
    routine = make_routine()
    now = MONDAY.replace(hour=9, minute=30)
    records = expand(routine, now, 3, now)
    assert [r.kind for r in records] == [AlarmKind.END]


def test_instant_equal_to_now_is_dropped():
    routine = make_routine()
    now = MONDAY.replace(hour=9)
    assert all(r.firing_instant > now for r in expand(routine, now, 1, now))


def test_days_before_creation_are_skipped():
    routine = make_routine(created_at=datetime(2026, 10, 20, 7, 0))
    now = MONDAY.replace(hour=8)
    assert expand(routine, now, 3, now) == []


def test_routine_created_later_on_the_same_day_still_runs():
    routine = make_routine(created_at=MONDAY.replace(hour=8, minute=30))
    now = MONDAY.replace(hour=8, minute=45)
    assert len(expand(routine, now, 1, now)) == 2


def test_bumped_end_time_is_used():
    routine = make_routine(start_time="09:00", end_time="08:00")
    now = MONDAY.replace(hour=8)
    end = [r for r in expand(routine, now, 1, now) if r.kind == AlarmKind.END]
    assert end[0].firing_instant == datetime(2026, 10, 19, 9, 10)
    assert occurrence_end(routine, "2026-10-19") == datetime(2026, 10, 19, 9, 10)


def test_week_long_window_for_daily_routine():
    routine = make_routine(days_of_week=["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"])
    now = MONDAY.replace(hour=8)
    records = expand(routine, now, 7, now)
    assert len(records) == 14
    assert len({r.alarm_id for r in records}) == 14
