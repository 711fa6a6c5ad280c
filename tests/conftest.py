"""Shared fixtures: dotted-key config mock, frozen clock, recording fakes."""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from rhythm.alarm_ledger import AlarmLedger
from rhythm.dispatcher import ActionDispatcher
from rhythm.escalation import EscalationController
from rhythm.history import NotificationHistory
from rhythm.locks import KeyedLocks
from rhythm.messages import MessageRenderer
from rhythm.models import RoutineDefinition
from rhythm.notifier import BaseNotifier, NotificationError
from rhythm.reconciler import Reconciler
from rhythm.routine_source import StaticRoutineSource
from rhythm.scheduler import RoutineScheduler
from rhythm.status_store import StatusStore
from rhythm.store import MemoryStore
from rhythm.timer import PollingTimer

# 2026-10-18 is a Sunday, 2026-10-19 a Monday.
SUNDAY = datetime(2026, 10, 18)
MONDAY = datetime(2026, 10, 19)


class MockConfig:
    """Minimal config mock that supports dot-notation get()."""

    def __init__(self, values=None):
        self._values = {
            "retry.attempts": 2,
            "retry.backoff_seconds": 0,
            "scheduler.window_days": 3,
            "notifications.title": "Rhythm",
        }
        self._values.update(values or {})

    def get(self, key, default=None):
        return self._values.get(key, default)


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, **kwargs):
        self.now = self.now + timedelta(minutes=minutes, **kwargs)
        return self.now


class RecordingNotifier(BaseNotifier):
    """Notification surface fake that remembers what it was asked to do."""

    def __init__(self, fail=False):
        super().__init__(None)
        self.emitted = []
        self.cleared = []
        self.fail = fail

    def emit(self, notification_id, title, body, actions):
        if self.fail:
            raise NotificationError("surface unavailable")
        self.emitted.append({
            "id": notification_id,
            "title": title,
            "body": body,
            "actions": [a.key for a in actions],
        })

    def clear(self, notification_id):
        self.cleared.append(notification_id)

    @property
    def last(self):
        return self.emitted[-1]

    def press(self, index, notification_id=None):
        """Simulate the user pressing a button on the latest notification."""
        self._fire_action(notification_id or self.last["id"], index)


def make_routine(**overrides) -> RoutineDefinition:
    data = {
        "id": "walk",
        "name": "Walk",
        "description": "",
        "start_time": "09:00",
        "end_time": "10:00",
        "days_of_week": ["Mon"],
        "created_at": SUNDAY,
    }
    data.update(overrides)
    return RoutineDefinition.from_dict(data)


@pytest.fixture
def config():
    return MockConfig()


@pytest.fixture
def clock():
    return FrozenClock(MONDAY.replace(hour=8))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def routine():
    return make_routine()


@pytest.fixture
def routines(routine):
    return StaticRoutineSource([routine])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def core(config, clock, store, routines, notifier):
    """The scheduling core wired by hand, without the event loop."""
    ledger = AlarmLedger(store, config)
    status = StatusStore(store, config)
    history = NotificationHistory(store, config)
    timer = PollingTimer(config, clock=clock)
    renderer = MessageRenderer(config)
    locks = KeyedLocks()
    escalation = EscalationController(ledger, status, renderer, notifier, routines,
                                      history=history, config=config, locks=locks, clock=clock)
    dispatcher = ActionDispatcher(ledger, status, timer, notifier, routines, escalation,
                                  history=history, config=config, locks=locks, clock=clock)
    reconciler = Reconciler(ledger, status, timer, config=config, locks=locks, clock=clock)

    class Core:
        pass

    c = Core()
    c.ledger, c.status, c.history, c.timer = ledger, status, history, timer
    c.renderer, c.escalation, c.dispatcher, c.reconciler = renderer, escalation, dispatcher, reconciler
    c.routines, c.notifier, c.clock, c.store = routines, notifier, clock, store
    c.locks = locks
    return c


@pytest.fixture
def scheduler(config, clock, store, routines, notifier):
    timer = PollingTimer(config, clock=clock)
    return RoutineScheduler(config, store=store, routines=routines, notifier=notifier,
                            timer=timer, clock=clock)
