"""
Notification history per occurrence.

Every emitted notification and every user response is appended to
``history/{routine_id}/{date_key}`` so the diary side can show what the
scheduler said and how the user answered.
"""

from datetime import datetime
from typing import Dict, List, Optional

from rhythm.logger import get_logger

PREFIX = "history/"
MAX_ENTRIES = 50


class NotificationHistory:

    def __init__(self, store, config=None):
        self.store = store
        self.logger = get_logger(__name__, config)
        self.max_entries = config.get("history.max_entries", MAX_ENTRIES) if config else MAX_ENTRIES

    def append(self, routine_id: str, date_key: str, kind: str, text: str,
               when: Optional[datetime] = None):
        entry = {
            "at": (when or datetime.now()).strftime("%Y-%m-%d %H:%M:%S"),
            "kind": kind,
            "text": text,
        }
        limit = self.max_entries

        def add(current):
            entries = list(current or [])
            entries.append(entry)
            return entries[-limit:]

        self.store.update(f"{PREFIX}{routine_id}/{date_key}", add)

    def record(self, routine_id: str, date_key: str, kind: str, text: str,
               when: Optional[datetime] = None):
        """Best-effort append; history must never break a notification flow."""
        try:
            self.append(routine_id, date_key, kind, text, when)
        except Exception as e:
            self.logger.warning(f"History write failed for {routine_id}/{date_key}: {e}")

    def entries(self, routine_id: str, date_key: str) -> List[Dict]:
        return list(self.store.get(f"{PREFIX}{routine_id}/{date_key}", []))
