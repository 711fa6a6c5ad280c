#!/usr/bin/env python3
"""Quick scheduler store query tool for testing/debugging.

Usage:
    python3 scripts/query_schedule.py                 # Today's statuses + pending alarms
    python3 scripts/query_schedule.py alarms          # All pending alarms
    python3 scripts/query_schedule.py status          # All stored occurrence statuses
    python3 scripts/query_schedule.py active          # Notifications awaiting an answer
    python3 scripts/query_schedule.py history ID [DATE]  # Notification log for a routine
"""
import sys
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rhythm.alarm_ledger import AlarmLedger
from rhythm.config import load_config
from rhythm.history import NotificationHistory
from rhythm.status_store import StatusStore
from rhythm.store import open_store


def fmt_alarms(records):
    if not records:
        print("  (none)")
        return
    for r in sorted(records, key=lambda r: r.firing_instant):
        tier = f" [tier {r.snooze_tier}]" if r.snooze_tier else ""
        print(f"  {r.firing_instant:%Y-%m-%d %H:%M} | {r.kind.value:6s} | {r.routine_id}{tier}")


def fmt_statuses(rows):
    if not rows:
        print("  (none)")
        return
    for routine_id, date_key, status in rows:
        print(f"  {date_key} | {status.value:11s} | {routine_id}")


def main():
    config = load_config()
    store = open_store(config)
    ledger = AlarmLedger(store, config)
    status = StatusStore(store, config)

    arg = sys.argv[1] if len(sys.argv) > 1 else "today"

    if arg == "today":
        today = datetime.now().strftime("%Y-%m-%d")
        print(f"=== Occurrences for {today} ===")
        fmt_statuses([row for row in status.list_statuses() if row[1] == today])
        print("=== Pending alarms for today ===")
        fmt_alarms([r for r in ledger.list() if r.date_key == today])
    elif arg == "alarms":
        print("=== Pending alarms ===")
        fmt_alarms(ledger.list())
    elif arg == "status":
        print("=== Occurrence statuses ===")
        fmt_statuses(status.list_statuses())
    elif arg == "active":
        print("=== Active notifications ===")
        active = status.list_active()
        if not active:
            print("  (none)")
        for a in active:
            print(f"  {a.notification_id} | {a.kind.value:6s} | {a.routine_id}/{a.date_key} "
                  f"| tier {a.snooze_tier} | {', '.join(a.actions)}")
    elif arg == "history" and len(sys.argv) > 2:
        routine_id = sys.argv[2]
        date_key = sys.argv[3] if len(sys.argv) > 3 else datetime.now().strftime("%Y-%m-%d")
        print(f"=== History: {routine_id} on {date_key} ===")
        entries = NotificationHistory(store, config).entries(routine_id, date_key)
        if not entries:
            print("  (none)")
        for e in entries:
            print(f"  {e['at']} | {e['kind']:6s} | {e['text']}")
    else:
        print(__doc__)


if __name__ == "__main__":
    main()
