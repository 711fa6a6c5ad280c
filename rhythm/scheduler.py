"""
Routine Scheduler

Wires the scheduling core together and runs it in the background:

- timer fires, notification actions/dismissals and resync triggers are
  queued as Events and handled by worker thread(s)
- a tick thread requests the periodic resync, runs the status promotion
  sweep and polls the routine source for definition changes

Handler failures are logged and never stop the loop; a failed resync is
retried on the next tick.

Uses a singleton pattern so entry points and tools share one instance.
"""

import queue
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from rhythm.alarm_ledger import AlarmLedger
from rhythm.dispatcher import ActionDispatcher
from rhythm.escalation import EscalationController
from rhythm.events import Event, EventType
from rhythm.history import NotificationHistory
from rhythm.locks import KeyedLocks
from rhythm.logger import get_logger
from rhythm.messages import MessageRenderer
from rhythm.notifier import NotificationError, create_notifier
from rhythm.reconciler import Reconciler
from rhythm.routine_source import YamlRoutineSource
from rhythm.status_store import StatusStore
from rhythm.store import open_store
from rhythm.timer import PollingTimer


# Singleton instance
_instance: Optional["RoutineScheduler"] = None


def get_scheduler(config=None, **kwargs) -> Optional["RoutineScheduler"]:
    """Get or create the singleton RoutineScheduler.

    Call with config on first invocation (from the entry point).
    Call with no args afterwards to retrieve the existing instance.
    """
    global _instance
    if _instance is None and config is not None:
        _instance = RoutineScheduler(config, **kwargs)
    return _instance


class RoutineScheduler:
    """Background routine reminder engine."""

    def __init__(self, config, store=None, routines=None, notifier=None, timer=None,
                 renderer=None, clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self.clock = clock
        self.logger = get_logger(__name__, config)

        self.store = store if store is not None else open_store(config)
        if routines is None:
            routines = YamlRoutineSource(
                config.get("routines.file", "routines.yaml"), self.store, config
            )
        self.routines = routines
        self.notifier = notifier if notifier is not None else create_notifier(config)
        self.timer = timer if timer is not None else PollingTimer(config, clock=clock)
        self.renderer = renderer if renderer is not None else MessageRenderer(config)

        self.ledger = AlarmLedger(self.store, config)
        self.status = StatusStore(self.store, config)
        self.history = NotificationHistory(self.store, config)
        self.locks = KeyedLocks()

        self.escalation = EscalationController(
            self.ledger, self.status, self.renderer, self.notifier, self.routines,
            history=self.history, config=config, locks=self.locks,
            clock=clock,
        )
        self.dispatcher = ActionDispatcher(
            self.ledger, self.status, self.timer, self.notifier, self.routines,
            self.escalation, history=self.history, config=config, locks=self.locks,
            clock=clock,
        )
        self.reconciler = Reconciler(
            self.ledger, self.status, self.timer, config=config, locks=self.locks, clock=clock,
        )

        # Loop config
        self.window_days = config.get("scheduler.window_days", 3)
        self.resync_interval = config.get("scheduler.resync_interval_minutes", 30) * 60
        self.promotion_interval = config.get("scheduler.promotion_interval_seconds", 30)
        self.source_poll_interval = config.get("routines.poll_interval_seconds", 10)
        self.worker_count = max(1, int(config.get("scheduler.workers", 1)))

        # Event plumbing
        self._events: "queue.Queue[Event]" = queue.Queue()
        self.notifier.set_callbacks(self._on_action, self._on_dismiss, self._on_surface_error)
        self.timer.set_fire_callback(self._on_fire)
        self.routines.subscribe(lambda: self.request_resync("definition change"))

        # Background thread state
        self._running = False
        self._workers = []
        self._tick_thread = None
        self._resync_pending = False
        self._last_resync = 0.0
        self._last_promotion = 0.0
        self._last_source_poll = 0.0

        self.logger.info("RoutineScheduler initialized")

    # ------------------------------------------------------------------
    # Event sources
    # ------------------------------------------------------------------

    def _on_fire(self, alarm_id: str):
        self._events.put(Event(EventType.ALARM_FIRE, alarm_id))

    def _on_action(self, notification_id: str, action_index: int):
        self._events.put(Event(EventType.NOTIFICATION_ACTION,
                               (notification_id, action_index)))

    def _on_dismiss(self, notification_id: str):
        self._events.put(Event(EventType.NOTIFICATION_DISMISSED, notification_id))

    def _on_surface_error(self, notification_id: str, reason: str):
        self.logger.error(f"Notification {notification_id} failed on the host surface: {reason}")
        self._resync_pending = True

    def request_resync(self, reason: str = "on demand"):
        self._events.put(Event(EventType.RESYNC_REQUEST, reason))

    def request_promotion(self):
        self._events.put(Event(EventType.PROMOTION_TICK))

    # ------------------------------------------------------------------
    # Handling
    # ------------------------------------------------------------------

    def handle(self, event: Event):
        """Handle one event. Never raises."""
        try:
            if event.type == EventType.ALARM_FIRE:
                self.escalation.on_fire(event.data)
            elif event.type == EventType.NOTIFICATION_ACTION:
                notification_id, action = event.data
                self.dispatcher.handle_action(notification_id, action)
            elif event.type == EventType.NOTIFICATION_DISMISSED:
                self.dispatcher.handle_dismiss(event.data)
            elif event.type == EventType.RESYNC_REQUEST:
                self.resync(event.data)
            elif event.type == EventType.PROMOTION_TICK:
                self.promote()
        except NotificationError as e:
            self.logger.error(f"Notification surface failed for {event!r}: {e}")
            self._resync_pending = True
        except Exception as e:
            self.logger.error(f"Error handling {event!r}: {e}")

    def resync(self, reason: str = "on demand"):
        self.logger.info(f"Resync triggered ({reason})")
        self._last_resync = time.monotonic()
        try:
            result = self.reconciler.resync(self.routines.list_routines(),
                                            now=self.clock(), window_days=self.window_days)
        except Exception as e:
            self.logger.error(f"Resync failed, will retry on next tick: {e}")
            self._resync_pending = True
            return None
        self._resync_pending = not result.ok
        return result

    def promote(self):
        now = self.clock()
        promoted = self.status.promote_due(self.routines.list_routines(), now)
        if promoted:
            self.logger.info(f"Promoted {len(promoted)} occurrence(s) to in-progress")
        self.status.collect_garbage(now.date())
        return promoted

    def drain(self, max_events: int = 1000) -> int:
        """Handle queued events on the calling thread. Returns how many ran."""
        handled = 0
        while handled < max_events:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            if event.type != EventType.SHUTDOWN:
                self.handle(event)
            handled += 1
        return handled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Resync, then start workers, the timer and the tick thread."""
        if not self.config.get("scheduler.enabled", True):
            self.logger.info("Scheduler disabled in config")
            return

        self.logger.info("Starting routine scheduler")
        self._running = True
        self._last_resync = time.monotonic()
        self.request_resync("startup")

        for i in range(self.worker_count):
            worker = threading.Thread(target=self._worker_loop, daemon=True,
                                      name=f"rhythm-worker-{i}")
            worker.start()
            self._workers.append(worker)

        self.timer.start()
        self._tick_thread = threading.Thread(target=self._tick_loop, daemon=True,
                                             name="rhythm-tick")
        self._tick_thread.start()
        self.logger.info("Routine scheduler started")

    def stop(self):
        self._running = False
        self.timer.stop()
        for _ in self._workers:
            self._events.put(Event(EventType.SHUTDOWN))
        for worker in self._workers:
            worker.join(timeout=10)
        self._workers = []
        if self._tick_thread:
            self._tick_thread.join(timeout=10)
            self._tick_thread = None
        self.logger.info("Routine scheduler stopped")

    def _worker_loop(self):
        while self._running:
            event = self._events.get()
            if event.type == EventType.SHUTDOWN:
                break
            self.handle(event)

    def _tick_loop(self):
        """Periodic resync, promotion sweep and routine-source polling."""
        self._last_promotion = time.monotonic()
        self._last_source_poll = time.monotonic()
        while self._running:
            now = time.monotonic()
            try:
                if now - self._last_source_poll >= self.source_poll_interval:
                    self._last_source_poll = now
                    self.routines.check_for_changes()

                if now - self._last_promotion >= self.promotion_interval:
                    self._last_promotion = now
                    self.request_promotion()

                if now - self._last_resync >= self.resync_interval:
                    self._last_resync = now
                    self.request_resync("periodic")
                elif self._resync_pending and now - self._last_resync >= self.promotion_interval:
                    self._last_resync = now
                    self.request_resync("retry after failure")
            except Exception as e:
                self.logger.error(f"Scheduler tick error: {e}")

            time.sleep(1)
