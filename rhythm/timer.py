"""
Timer subsystem adapter.

Holds alarm_id -> instant in memory and fires due alarms from a background
polling thread. Precision is the poll interval; missed instants (sleep,
clock jumps) fire on the next poll. Durable alarm state lives in the
ledger, so after a restart the reconciler simply reschedules everything.
"""

import threading
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from rhythm.logger import get_logger
from rhythm.models import AlarmRecord


class TimerError(Exception):
    """The timer subsystem refused to schedule an alarm."""


class PollingTimer:

    def __init__(self, config=None, clock: Callable[[], datetime] = datetime.now):
        self.logger = get_logger(__name__, config)
        self.poll_interval = config.get("timer.poll_interval_seconds", 5) if config else 5
        self.clock = clock
        self._alarms: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._fire_callback: Optional[Callable[[str], None]] = None

        self._running = False
        self._thread = None

    def set_fire_callback(self, callback: Callable[[str], None]):
        """callback(alarm_id) is invoked once per due alarm."""
        self._fire_callback = callback

    # ------------------------------------------------------------------
    # Host timer contract
    # ------------------------------------------------------------------

    def schedule(self, alarm_id: str, when: datetime):
        if not isinstance(when, datetime):
            raise TimerError(f"Invalid instant for {alarm_id}: {when!r}")
        with self._lock:
            self._alarms[alarm_id] = when

    def cancel(self, alarm_id: str) -> bool:
        with self._lock:
            return self._alarms.pop(alarm_id, None) is not None

    def list_all(self) -> List[str]:
        with self._lock:
            return sorted(self._alarms, key=self._alarms.get)

    def when(self, alarm_id: str) -> Optional[datetime]:
        with self._lock:
            return self._alarms.get(alarm_id)

    def schedule_records(self, records: Iterable[AlarmRecord]):
        for record in records:
            self.schedule(record.alarm_id, record.firing_instant)

    def cancel_records(self, records: Iterable[AlarmRecord]):
        for record in records:
            self.cancel(record.alarm_id)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def fire_due(self, now: Optional[datetime] = None) -> List[str]:
        """Pop every alarm whose instant has arrived and hand it to the callback."""
        if now is None:
            now = self.clock()
        with self._lock:
            due = sorted((w, a) for a, w in self._alarms.items() if w <= now)
            for _, alarm_id in due:
                del self._alarms[alarm_id]

        fired = []
        for _, alarm_id in due:
            fired.append(alarm_id)
            if self._fire_callback is None:
                continue
            try:
                self._fire_callback(alarm_id)
            except Exception as e:
                self.logger.error(f"Fire callback failed for {alarm_id}: {e}")
        return fired

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._poll_loop, daemon=True,
                                        name="rhythm-timer")
        self._thread.start()
        self.logger.info(f"Timer polling started ({self.poll_interval}s)")

    def stop(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None

    def _poll_loop(self):
        while self._running:
            try:
                self.fire_due()
            except Exception as e:
                self.logger.error(f"Timer poll error: {e}")

            # Sleep in small increments for responsive shutdown
            slept = 0.0
            while self._running and slept < self.poll_interval:
                time.sleep(0.5)
                slept += 0.5
