"""
Routine Source

Read-only view of the routine definitions owned by the CRUD side. The
scheduler only needs ``list_routines()``, ``get(routine_id)`` and a change
notification.

YamlRoutineSource reads a routines file, e.g.::

    routines:
      - id: morning-run
        name: Morning run
        description: Run a 5k before work
        start_time: "07:00"
        end_time: "07:45"
        days_of_week: [Mon, Wed, Fri]
        created_at: "2026-01-05T00:00:00"

The last good list is cached in the durable store so an unreadable file
never wipes everyone's alarms.
"""

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yaml

from rhythm.logger import get_logger
from rhythm.models import RoutineDefinition

CACHE_KEY = "cache/routines"


class StaticRoutineSource:
    """Routines held in memory; ``set_routines`` notifies listeners."""

    def __init__(self, routines: Optional[List[RoutineDefinition]] = None):
        self._routines: Dict[str, RoutineDefinition] = {r.id: r for r in routines or []}
        self._listeners: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    def list_routines(self) -> List[RoutineDefinition]:
        with self._lock:
            return list(self._routines.values())

    def get(self, routine_id: str) -> Optional[RoutineDefinition]:
        with self._lock:
            return self._routines.get(routine_id)

    def subscribe(self, callback: Callable[[], None]):
        self._listeners.append(callback)

    def set_routines(self, routines: List[RoutineDefinition]):
        with self._lock:
            self._routines = {r.id: r for r in routines}
        self._notify()

    def upsert(self, routine: RoutineDefinition):
        with self._lock:
            self._routines[routine.id] = routine
        self._notify()

    def remove(self, routine_id: str) -> bool:
        with self._lock:
            removed = self._routines.pop(routine_id, None) is not None
        if removed:
            self._notify()
        return removed

    def check_for_changes(self) -> bool:
        return False

    def _notify(self):
        for callback in list(self._listeners):
            callback()


class YamlRoutineSource(StaticRoutineSource):
    """Routines from a YAML file, with mtime-based change detection."""

    def __init__(self, path, store=None, config=None):
        super().__init__()
        self.path = Path(path)
        self.store = store
        self.logger = get_logger(__name__, config)
        self._mtime: Optional[float] = None
        self.reload()

    def _parse(self) -> List[RoutineDefinition]:
        with open(self.path) as f:
            data = yaml.safe_load(f) or {}
        items = data.get("routines", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ValueError("'routines' must be a list")
        return [RoutineDefinition.from_dict(item) for item in items]

    def reload(self) -> List[RoutineDefinition]:
        """Re-read the file; on failure fall back to the cached list."""
        try:
            routines = self._parse()
            self._mtime = self.path.stat().st_mtime
        except (OSError, yaml.YAMLError, ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Routine file {self.path} unusable ({e}), using cached routines")
            routines = self._load_cache()
        else:
            self._save_cache(routines)

        with self._lock:
            self._routines = {r.id: r for r in routines}
        self.logger.info(f"Loaded {len(routines)} routine(s)")
        return routines

    def check_for_changes(self) -> bool:
        """Reload and notify listeners if the file's mtime moved."""
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            mtime = None
        if mtime == self._mtime:
            return False
        self.logger.info(f"Routine file changed: {self.path}")
        self.reload()
        self._mtime = mtime
        self._notify()
        return True

    def _save_cache(self, routines: List[RoutineDefinition]):
        if self.store is None:
            return
        try:
            self.store.put(CACHE_KEY, [r.to_dict() for r in routines])
        except Exception as e:
            self.logger.warning(f"Could not cache routines: {e}")

    def _load_cache(self) -> List[RoutineDefinition]:
        cached = self.store.get(CACHE_KEY) if self.store is not None else None
        if cached is None:
            self.logger.warning("No cached routines available, starting empty")
            return []
        return [RoutineDefinition.from_dict(item) for item in cached]
