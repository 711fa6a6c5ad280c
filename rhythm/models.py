"""
Data model for the routine scheduler.

Routines come from the external CRUD side and are read-only here. Alarms,
occurrence statuses and active notifications are owned by the scheduler
and persisted through the durable store as plain dicts.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from dateutil import parser as dateutil_parser


WEEKDAY_TAGS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

_WEEKDAY_ALIASES = {
    "mon": "Mon", "monday": "Mon",
    "tue": "Tue", "tues": "Tue", "tuesday": "Tue",
    "wed": "Wed", "wednesday": "Wed",
    "thu": "Thu", "thur": "Thu", "thurs": "Thu", "thursday": "Thu",
    "fri": "Fri", "friday": "Fri",
    "sat": "Sat", "saturday": "Sat",
    "sun": "Sun", "sunday": "Sun",
}

# End time is bumped to start + 10m, unless start is within the last 10 minutes
# of the day (no rollover past midnight).
MIN_DURATION_MINUTES = 10
LAST_BUMPABLE_START = 23 * 60 + 50


class AlarmKind(Enum):
    START = "start"
    END = "end"
    SNOOZE = "snooze"
    ESCALATED_NUDGE = "nudge"


class OccurrenceStatus(Enum):
    UPCOMING = "upcoming"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (OccurrenceStatus.COMPLETED, OccurrenceStatus.SKIPPED)


# ----------------------------------------------------------------------
# Date / time helpers (always local calendar, never UTC-shifted)
# ----------------------------------------------------------------------

def date_key(d: Union[date, datetime]) -> str:
    """Return the YYYY-MM-DD key for a local date."""
    if isinstance(d, datetime):
        d = d.date()
    return d.strftime("%Y-%m-%d")


def parse_date_key(key: str) -> date:
    """Parse YYYY-MM-DD as a local calendar date."""
    year, month, day = (int(p) for p in key.split("-"))
    return date(year, month, day)


def weekday_tag(d: Union[date, str]) -> str:
    """Weekday tag ("Mon".."Sun") of a local date or date key."""
    if isinstance(d, str):
        d = parse_date_key(d)
    return WEEKDAY_TAGS[d.weekday()]


def normalize_weekday(tag: str) -> str:
    key = str(tag).strip().lower()
    if key not in _WEEKDAY_ALIASES:
        raise ValueError(f"Unknown weekday: {tag!r}")
    return _WEEKDAY_ALIASES[key]


def parse_hhmm(text: str) -> Tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    parts = str(text).strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Expected HH:MM, got {text!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Time out of range: {text!r}")
    return hour, minute


def minutes_of_day(text: str) -> int:
    hour, minute = parse_hhmm(text)
    return hour * 60 + minute


def format_minutes(total: int) -> str:
    total %= 24 * 60
    return f"{total // 60:02d}:{total % 60:02d}"


def at_local_time(d: Union[date, str], hhmm: str) -> datetime:
    """Combine a local date (or date key) with an HH:MM wall-clock time."""
    if isinstance(d, str):
        d = parse_date_key(d)
    hour, minute = parse_hhmm(hhmm)
    return datetime.combine(d, time(hour, minute))


def ensure_end_after_start(start_time: str, end_time: Optional[str]) -> str:
    """Return an end time strictly after start_time.

    If end <= start, end becomes start + 10 minutes. A start inside the last
    10 minutes of the day keeps its end time unchanged.
    """
    if not end_time:
        end_time = start_time
    start = minutes_of_day(start_time)
    if start >= LAST_BUMPABLE_START:
        return end_time
    if minutes_of_day(end_time) <= start:
        return format_minutes(start + MIN_DURATION_MINUTES)
    return end_time


def _coerce_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    parsed = dateutil_parser.isoparse(str(value))
    if parsed.tzinfo is not None:
        # Device-local scheduling only: shift to local wall clock
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


# ----------------------------------------------------------------------
# Routine definitions
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RoutineDefinition:
    """A recurring time-boxed routine, owned by the external CRUD side."""

    id: str
    name: str
    start_time: str
    end_time: str
    days_of_week: FrozenSet[str]
    created_at: datetime
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "RoutineDefinition":
        """Build from a plain dict (camelCase or snake_case keys)."""
        days = data.get("days_of_week", data.get("daysOfWeek", data.get("days", [])))
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            description=data.get("description") or "",
            start_time=data.get("start_time", data.get("startTime")),
            end_time=data.get("end_time", data.get("endTime")) or "",
            days_of_week=frozenset(normalize_weekday(d) for d in days),
            created_at=_coerce_datetime(data.get("created_at", data.get("createdAt"))),
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "days_of_week": [d for d in WEEKDAY_TAGS if d in self.days_of_week],
            "created_at": self.created_at.isoformat(),
        }

    def normalized(self) -> "RoutineDefinition":
        """Copy with end_time adjusted by ensure_end_after_start()."""
        end = ensure_end_after_start(self.start_time, self.end_time)
        if end == self.end_time:
            return self
        return replace(self, end_time=end)

    def runs_on(self, d: Union[date, str]) -> bool:
        """True if the routine has an occurrence on this local date."""
        if isinstance(d, str):
            d = parse_date_key(d)
        return weekday_tag(d) in self.days_of_week and d >= self.created_at.date()


# ----------------------------------------------------------------------
# Alarms
# ----------------------------------------------------------------------

def make_alarm_id(routine_id: str, date_key_: str, kind: AlarmKind, firing_instant: datetime) -> str:
    """Deterministic alarm id: same inputs always give the same id."""
    stamp = firing_instant.strftime("%Y%m%dT%H%M%S")
    return f"{kind.value}_{routine_id}_{date_key_}_{stamp}"


@dataclass(frozen=True)
class AlarmRecord:
    alarm_id: str
    routine_id: str
    date_key: str
    kind: AlarmKind
    firing_instant: datetime
    snooze_tier: int = 0

    @classmethod
    def create(cls, routine_id: str, date_key_: str, kind: AlarmKind,
               firing_instant: datetime, snooze_tier: int = 0) -> "AlarmRecord":
        firing_instant = firing_instant.replace(microsecond=0)
        return cls(
            alarm_id=make_alarm_id(routine_id, date_key_, kind, firing_instant),
            routine_id=routine_id,
            date_key=date_key_,
            kind=kind,
            firing_instant=firing_instant,
            snooze_tier=snooze_tier,
        )

    def to_dict(self) -> Dict:
        return {
            "alarm_id": self.alarm_id,
            "routine_id": self.routine_id,
            "date_key": self.date_key,
            "kind": self.kind.value,
            "firing_instant": self.firing_instant.strftime("%Y-%m-%d %H:%M:%S"),
            "snooze_tier": self.snooze_tier,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AlarmRecord":
        return cls(
            alarm_id=data["alarm_id"],
            routine_id=data["routine_id"],
            date_key=data["date_key"],
            kind=AlarmKind(data["kind"]),
            firing_instant=datetime.strptime(data["firing_instant"], "%Y-%m-%d %H:%M:%S"),
            snooze_tier=int(data.get("snooze_tier", 0)),
        )


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class NotificationAction:
    """One button on a notification: ``key`` is what the dispatcher receives."""

    key: str
    label: str


def actions_for(kind: AlarmKind, snooze_options: Iterable[int] = (2, 5, 10)) -> List[NotificationAction]:
    """Button set for a notification of the given kind."""
    if kind in (AlarmKind.START, AlarmKind.SNOOZE):
        actions = [NotificationAction("start", "Start"), NotificationAction("skip", "Skip")]
        actions.extend(NotificationAction(f"snooze{m}", f"{m} min") for m in snooze_options)
        return actions
    if kind == AlarmKind.END:
        return [NotificationAction("completed", "Completed"), NotificationAction("skipped", "Skipped")]
    if kind == AlarmKind.ESCALATED_NUDGE:
        return [NotificationAction("start", "Start"), NotificationAction("skip", "Skip")]
    return []


@dataclass
class ActiveNotification:
    """Links a visible notification to its occurrence until the user responds."""

    notification_id: str
    routine_id: str
    date_key: str
    kind: AlarmKind
    snooze_tier: int = 0
    routine_name: str = ""
    routine_description: str = ""
    actions: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "notification_id": self.notification_id,
            "routine_id": self.routine_id,
            "date_key": self.date_key,
            "kind": self.kind.value,
            "snooze_tier": self.snooze_tier,
            "routine_name": self.routine_name,
            "routine_description": self.routine_description,
            "actions": list(self.actions),
            "created_at": self.created_at.strftime("%Y-%m-%d %H:%M:%S") if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ActiveNotification":
        created = data.get("created_at")
        return cls(
            notification_id=data["notification_id"],
            routine_id=data["routine_id"],
            date_key=data["date_key"],
            kind=AlarmKind(data["kind"]),
            snooze_tier=int(data.get("snooze_tier", 0)),
            routine_name=data.get("routine_name", ""),
            routine_description=data.get("routine_description", ""),
            actions=list(data.get("actions", [])),
            created_at=datetime.strptime(created, "%Y-%m-%d %H:%M:%S") if created else None,
        )


def parse_snooze_minutes(action: str) -> Optional[int]:
    """"snooze5" -> 5; anything else -> None."""
    if not action.startswith("snooze"):
        return None
    try:
        minutes = int(action[len("snooze"):])
    except ValueError:
        return None
    return minutes if minutes > 0 else None
