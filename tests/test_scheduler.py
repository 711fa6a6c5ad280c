"""End-to-end flows through the event queue: timer -> escalation -> dispatcher."""

import dataclasses
import threading
import time
from datetime import datetime

import pytest

from rhythm.events import Event, EventType
from rhythm.models import AlarmKind, AlarmRecord, OccurrenceStatus
from rhythm.scheduler import RoutineScheduler, get_scheduler
from rhythm.timer import PollingTimer

from conftest import MONDAY, MockConfig, RecordingNotifier, make_routine

DAY = "2026-10-19"


def _fire_at(scheduler, clock, when):
    clock.now = when
    fired = scheduler.timer.fire_due()
    scheduler.drain()
    return fired


def _press(scheduler, notifier, key):
    notifier.press(notifier.last["actions"].index(key))
    scheduler.drain()


def test_routine_created_sunday_fires_once_on_monday(scheduler, clock):
    result = scheduler.resync("test")

    assert result.ok
    assert len(scheduler.ledger.list()) == 2
    starts = [r for r in scheduler.ledger.list() if r.kind == AlarmKind.START]
    assert [r.firing_instant for r in starts] == [datetime(2026, 10, 19, 9, 0)]


def test_skip_then_skip_again(scheduler, clock, notifier):
    scheduler.resync("test")
    _fire_at(scheduler, clock, MONDAY.replace(hour=9))
    start_id = notifier.last["id"]

    _press(scheduler, notifier, "skip")

    assert scheduler.status.get("walk", DAY) == OccurrenceStatus.UPCOMING
    assert scheduler.status.snooze_count("walk", DAY) == 0
    assert notifier.last["id"] == f"{start_id}-nudge"

    _press(scheduler, notifier, "skip")

    assert scheduler.status.get("walk", DAY) == OccurrenceStatus.SKIPPED
    assert scheduler.status.list_active() == []
    assert scheduler.ledger.list_for("walk", DAY) == []
    assert scheduler.timer.list_all() == []


def test_snooze_refires_with_follow_up(scheduler, clock, notifier):
    scheduler.resync("test")
    _fire_at(scheduler, clock, MONDAY.replace(hour=9))
    _press(scheduler, notifier, "snooze5")
    emitted = len(notifier.emitted)

    assert _fire_at(scheduler, clock, MONDAY.replace(hour=9, minute=4)) == []
    fired = _fire_at(scheduler, clock, MONDAY.replace(hour=9, minute=5))

    assert len(fired) == 1
    assert len(notifier.emitted) == emitted + 1
    active = scheduler.status.get_active(notifier.last["id"])
    assert active.kind == AlarmKind.SNOOZE
    assert active.snooze_tier == 1


def test_full_day_start_then_complete(scheduler, clock, notifier):
    scheduler.resync("test")
    _fire_at(scheduler, clock, MONDAY.replace(hour=9))
    _press(scheduler, notifier, "start")
    assert scheduler.status.get("walk", DAY) == OccurrenceStatus.IN_PROGRESS

    _fire_at(scheduler, clock, MONDAY.replace(hour=10))
    assert notifier.last["actions"] == ["completed", "skipped"]
    _press(scheduler, notifier, "completed")

    assert scheduler.status.get("walk", DAY) == OccurrenceStatus.COMPLETED
    assert scheduler.ledger.list() == []


def test_deleting_routine_cancels_alarms_and_dismiss_is_safe(scheduler, clock, notifier, routines):
    scheduler.resync("test")
    _fire_at(scheduler, clock, MONDAY.replace(hour=9))
    active_id = notifier.last["id"]

    routines.remove("walk")
    scheduler.drain()

    assert scheduler.ledger.list() == []
    assert scheduler.timer.list_all() == []

    notifier._fire_dismiss(active_id)
    scheduler.drain()
    assert scheduler.status.get_active(active_id) is None

    notifier._fire_action(active_id, 0)
    assert scheduler.drain() == 1
    assert scheduler.status.get("walk", DAY) == OccurrenceStatus.UPCOMING


def test_definition_change_triggers_resync(scheduler, clock, routines):
    scheduler.resync("test")
    routines.upsert(make_routine(start_time="11:00", end_time="12:00"))
    scheduler.drain()

    instants = sorted(r.firing_instant for r in scheduler.ledger.list())
    assert instants == [datetime(2026, 10, 19, 11, 0), datetime(2026, 10, 19, 12, 0)]


def test_promotion_tick(scheduler, clock):
    clock.now = MONDAY.replace(hour=9, minute=15)
    scheduler.request_promotion()
    scheduler.drain()
    assert scheduler.status.get("walk", DAY) == OccurrenceStatus.IN_PROGRESS


def test_promotion_collects_old_counters(scheduler, clock):
    scheduler.status.increment_snooze("walk", "2026-10-12")
    scheduler.promote()
    assert scheduler.status.snooze_count("walk", "2026-10-12") == 0


def test_notification_failure_marks_resync_pending(config, clock, store, routines):
    notifier = RecordingNotifier(fail=True)
    scheduler = RoutineScheduler(config, store=store, routines=routines, notifier=notifier,
                                 timer=PollingTimer(config, clock=clock), clock=clock)
    scheduler.resync("test")
    assert scheduler._resync_pending is False

    _fire_at(scheduler, clock, MONDAY.replace(hour=9))

    assert scheduler._resync_pending is True


def test_surface_error_marks_resync_pending(scheduler, notifier):
    scheduler.resync("test")
    assert scheduler._resync_pending is False

    notifier._fire_error("rhythm-x", "notify-send exited with 1")

    assert scheduler._resync_pending is True


def test_concurrent_workers_serialize_one_occurrence(scheduler, clock, notifier, monkeypatch):
    scheduler.resync("test")
    _fire_at(scheduler, clock, MONDAY.replace(hour=9))
    start_id = notifier.last["id"]
    snooze_index = notifier.last["actions"].index("snooze5")
    pending = AlarmRecord.create("walk", DAY, AlarmKind.SNOOZE, MONDAY.replace(hour=9, second=30))
    scheduler.ledger.put(pending)

    counting = threading.Event()
    real_increment = scheduler.status.increment_snooze

    def slow_increment(routine_id, date_key):
        counting.set()
        time.sleep(0.3)
        return real_increment(routine_id, date_key)

    monkeypatch.setattr(scheduler.status, "increment_snooze", slow_increment)

    # Two workers: the first answers snooze, the second gets the snooze alarm meanwhile
    notifier.press(snooze_index, start_id)
    first = threading.Thread(target=scheduler.drain, args=(1,))
    first.start()
    assert counting.wait(2)
    scheduler._on_fire(pending.alarm_id)
    second = threading.Thread(target=scheduler.drain, args=(1,))
    second.start()
    first.join(timeout=5)
    second.join(timeout=5)

    active = scheduler.status.get_active(f"rhythm-{pending.alarm_id}")
    assert active.snooze_tier == 1


def test_handler_errors_never_escape(scheduler, monkeypatch):
    def boom(alarm_id):
        raise RuntimeError("bug")

    monkeypatch.setattr(scheduler.escalation, "on_fire", boom)
    scheduler.handle(Event(EventType.ALARM_FIRE, "start_walk_x"))


def test_queued_events_are_immutable():
    event = Event(EventType.ALARM_FIRE, "start_walk_x")
    with pytest.raises(dataclasses.FrozenInstanceError):
        event.data = "other"
    assert event == Event(EventType.ALARM_FIRE, "start_walk_x")


def test_resync_failure_is_retried(scheduler, monkeypatch):
    def broken():
        raise RuntimeError("source offline")

    monkeypatch.setattr(scheduler.routines, "list_routines", broken)
    assert scheduler.resync("test") is None
    assert scheduler._resync_pending is True


def test_disabled_scheduler_does_not_start(store, routines, notifier, clock):
    config = MockConfig({"scheduler.enabled": False})
    scheduler = RoutineScheduler(config, store=store, routines=routines, notifier=notifier,
                                 timer=PollingTimer(config, clock=clock), clock=clock)
    scheduler.start()
    assert scheduler._workers == []


def test_start_and_stop_threads(scheduler):
    scheduler.start()
    try:
        assert len(scheduler._workers) == 1
    finally:
        scheduler.stop()
    assert scheduler._workers == []


@pytest.fixture
def reset_singleton():
    import rhythm.scheduler as module
    module._instance = None
    yield
    module._instance = None


def test_get_scheduler_singleton(reset_singleton, config, store, routines, notifier, clock):
    assert get_scheduler() is None
    first = get_scheduler(config, store=store, routines=routines, notifier=notifier, clock=clock)
    assert get_scheduler() is first
    assert get_scheduler(config) is first
