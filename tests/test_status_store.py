from datetime import date

import pytest

from rhythm.models import ActiveNotification, AlarmKind, OccurrenceStatus
from rhythm.status_store import InvariantViolation, StatusStore

from conftest import MONDAY, make_routine

DAY = "2026-10-19"


@pytest.fixture
def status(store, config):
    return StatusStore(store, config)


def test_default_status_is_upcoming(status):
    assert status.get("walk", DAY) == OccurrenceStatus.UPCOMING
    assert not status.is_terminal("walk", DAY)


def test_forward_transitions(status):
    assert status.set_if_not_terminal("walk", DAY, OccurrenceStatus.IN_PROGRESS)
    assert status.set_if_not_terminal("walk", DAY, OccurrenceStatus.COMPLETED)
    assert status.get("walk", DAY) == OccurrenceStatus.COMPLETED


@pytest.mark.parametrize("terminal", [OccurrenceStatus.COMPLETED, OccurrenceStatus.SKIPPED])
@pytest.mark.parametrize("later", list(OccurrenceStatus))
def test_terminal_status_never_changes(status, terminal, later):
    status.set_if_not_terminal("walk", DAY, terminal)
    applied = status.set_if_not_terminal("walk", DAY, later)
    assert applied is False
    assert status.get("walk", DAY) == terminal


def test_list_statuses(status):
    status.set_if_not_terminal("walk", DAY, OccurrenceStatus.SKIPPED)
    status.set_if_not_terminal("read", DAY, OccurrenceStatus.IN_PROGRESS)
    assert status.list_statuses("walk") == [("walk", DAY, OccurrenceStatus.SKIPPED)]
    assert len(status.list_statuses()) == 2


def test_snooze_counter(status):
    assert status.snooze_count("walk", DAY) == 0
    assert status.increment_snooze("walk", DAY) == 1
    assert status.increment_snooze("walk", DAY) == 2
    status.reset_snooze("walk", DAY)
    assert status.snooze_count("walk", DAY) == 0


def test_negative_counter_is_an_invariant_violation(status, store):
    store.put(f"snoozeCount/walk/{DAY}", -1)
    with pytest.raises(InvariantViolation):
        status.snooze_count("walk", DAY)
    with pytest.raises(InvariantViolation):
        status.increment_snooze("walk", DAY)


def test_active_notification_roundtrip(status):
    active = ActiveNotification("n1", "walk", DAY, AlarmKind.START, snooze_tier=1,
                                routine_name="Walk", actions=["start", "skip"])
    status.put_active(active)
    assert status.get_active("n1") == active
    assert status.list_active() == [active]
    assert status.delete_active("n1") is True
    assert status.get_active("n1") is None


def test_negative_tier_rejected(status):
    with pytest.raises(InvariantViolation):
        status.put_active(ActiveNotification("n1", "walk", DAY, AlarmKind.START, snooze_tier=-1))


class TestPromotion:

    def test_promotes_after_start(self, status):
        routine = make_routine()
        promoted = status.promote_due([routine], MONDAY.replace(hour=9, minute=1))
        assert promoted == [("walk", DAY)]
        assert status.get("walk", DAY) == OccurrenceStatus.IN_PROGRESS

    def test_not_before_start(self, status):
        assert status.promote_due([make_routine()], MONDAY.replace(hour=8, minute=59)) == []
        assert status.get("walk", DAY) == OccurrenceStatus.UPCOMING

    def test_not_on_other_days(self, status):
        tuesday = MONDAY.replace(day=20, hour=12)
        assert status.promote_due([make_routine()], tuesday) == []

    def test_never_overwrites_terminal(self, status):
        status.set_if_not_terminal("walk", DAY, OccurrenceStatus.SKIPPED)
        assert status.promote_due([make_routine()], MONDAY.replace(hour=9, minute=30)) == []
        assert status.get("walk", DAY) == OccurrenceStatus.SKIPPED

    def test_second_sweep_is_noop(self, status):
        routine = make_routine()
        status.promote_due([routine], MONDAY.replace(hour=9, minute=1))
        assert status.promote_due([routine], MONDAY.replace(hour=9, minute=2)) == []


def test_collect_garbage_drops_past_records(status):
    status.increment_snooze("walk", "2026-10-18")
    status.increment_snooze("walk", DAY)
    status.put_active(ActiveNotification("old", "walk", "2026-10-18", AlarmKind.START))
    status.put_active(ActiveNotification("new", "walk", DAY, AlarmKind.START))

    removed = status.collect_garbage(date(2026, 10, 19))

    assert removed == 2
    assert status.snooze_count("walk", "2026-10-18") == 0
    assert status.snooze_count("walk", DAY) == 1
    assert [a.notification_id for a in status.list_active()] == ["new"]
