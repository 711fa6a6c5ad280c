"""
Alarm Ledger

Durable map alarm_id -> AlarmRecord. Writes go straight to the store and
any failure propagates: a lost alarm record is a missed reminder.
"""

from typing import Iterable, List, Optional

from rhythm.logger import get_logger
from rhythm.models import AlarmKind, AlarmRecord

PREFIX = "alarms/"


class AlarmNotFound(KeyError):
    """No ledger record for the requested alarm id."""


class AlarmLedger:

    def __init__(self, store, config=None):
        self.store = store
        self.logger = get_logger(__name__, config)

    @staticmethod
    def _key(alarm_id: str) -> str:
        return f"{PREFIX}{alarm_id}"

    def put(self, record: AlarmRecord):
        """Idempotent upsert keyed by alarm_id."""
        self.store.put(self._key(record.alarm_id), record.to_dict())
        self.logger.debug(f"Ledger put {record.alarm_id} at {record.firing_instant}")

    def get(self, alarm_id: str) -> AlarmRecord:
        data = self.store.get(self._key(alarm_id))
        if data is None:
            raise AlarmNotFound(alarm_id)
        return AlarmRecord.from_dict(data)

    def find(self, alarm_id: str) -> Optional[AlarmRecord]:
        try:
            return self.get(alarm_id)
        except AlarmNotFound:
            return None

    def remove(self, alarm_id: str) -> bool:
        """Delete one record (after it fired or was superseded)."""
        return self.store.delete(self._key(alarm_id))

    def list(self) -> List[AlarmRecord]:
        return [AlarmRecord.from_dict(v) for _, v in self.store.items(PREFIX)]

    def list_for(self, routine_id: str, date_key: Optional[str] = None) -> List[AlarmRecord]:
        return [
            r for r in self.list()
            if r.routine_id == routine_id and (date_key is None or r.date_key == date_key)
        ]

    def cancel_all(self, routine_id: str) -> List[AlarmRecord]:
        """Remove every record for a routine. Returns what was removed."""
        return self._remove_records(self.list_for(routine_id))

    def cancel_occurrence(self, routine_id: str, date_key: str,
                          kinds: Optional[Iterable[AlarmKind]] = None) -> List[AlarmRecord]:
        """Remove pending records for one occurrence, optionally only some kinds."""
        records = self.list_for(routine_id, date_key)
        if kinds is not None:
            kinds = set(kinds)
            records = [r for r in records if r.kind in kinds]
        return self._remove_records(records)

    def _remove_records(self, records: List[AlarmRecord]) -> List[AlarmRecord]:
        removed = []
        for record in records:
            if self.store.delete(self._key(record.alarm_id)):
                removed.append(record)
        if removed:
            self.logger.info(f"Cancelled {len(removed)} alarm(s) for routine {removed[0].routine_id}")
        return removed
