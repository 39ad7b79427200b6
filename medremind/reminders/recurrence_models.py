"""
Recurrence rule models for medication schedules
"""
from datetime import date, datetime
from typing import Optional, List, Dict, Any
from enum import Enum
from dataclasses import dataclass, field

from medremind.utils.timezone import parse_instant


class FrequencyKind(Enum):
    """How often dose days occur"""
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM_INTERVAL = "custom_interval"
    AS_NEEDED = "as_needed"


class DurationKind(Enum):
    """How long the schedule runs"""
    ONGOING = "ongoing"
    FIXED_END = "fixed_end"


class Weekday(Enum):
    """Days of the week (matches date.weekday())"""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


@dataclass(frozen=True)
class TimeSlot:
    """A time of day at which a dose is due"""
    hour: int
    minute: int
    label: Optional[str] = None

    @property
    def sort_key(self) -> tuple:
        return (self.hour, self.minute)

    def to_dict(self) -> Dict[str, Any]:
        return {"hour": self.hour, "minute": self.minute, "label": self.label}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimeSlot':
        return cls(hour=int(data["hour"]), minute=int(data["minute"]), label=data.get("label"))


@dataclass(frozen=True)
class CycleDefinition:
    """On/off cycle: active_days of dosing followed by break_days off"""
    active_days: int
    break_days: int
    start_date: date

    @property
    def length(self) -> int:
        return self.active_days + self.break_days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_days": self.active_days,
            "break_days": self.break_days,
            "start_date": self.start_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CycleDefinition':
        return cls(
            active_days=int(data["active_days"]),
            break_days=int(data["break_days"]),
            start_date=date.fromisoformat(data["start_date"]),
        )


@dataclass
class RecurrenceRule:
    """When a dose is due. Validated by schemas.parse_schedule before it gets here."""
    frequency: FrequencyKind
    time_slots: List[TimeSlot] = field(default_factory=list)
    days_of_week: List[Weekday] = field(default_factory=list)
    interval_days: Optional[int] = None
    cycle: Optional[CycleDefinition] = None
    start_date: Optional[date] = None
    duration: DurationKind = DurationKind.ONGOING
    end_date: Optional[date] = None
    is_active: bool = True
    is_paused: bool = False
    paused_until: Optional[datetime] = None

    def sorted_slots(self) -> List[TimeSlot]:
        return sorted(self.time_slots, key=lambda s: s.sort_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "time_slots": [s.to_dict() for s in self.time_slots],
            "days_of_week": [d.value for d in self.days_of_week],
            "interval_days": self.interval_days,
            "cycle": self.cycle.to_dict() if self.cycle else None,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "duration": self.duration.value,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "is_active": self.is_active,
            "is_paused": self.is_paused,
            "paused_until": self.paused_until.isoformat() if self.paused_until else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RecurrenceRule':
        return cls(
            frequency=FrequencyKind(data["frequency"]),
            time_slots=[TimeSlot.from_dict(s) for s in data.get("time_slots") or []],
            days_of_week=[Weekday(d) for d in data.get("days_of_week") or []],
            interval_days=data.get("interval_days"),
            cycle=CycleDefinition.from_dict(data["cycle"]) if data.get("cycle") else None,
            start_date=date.fromisoformat(data["start_date"]) if data.get("start_date") else None,
            duration=DurationKind(data.get("duration", DurationKind.ONGOING.value)),
            end_date=date.fromisoformat(data["end_date"]) if data.get("end_date") else None,
            is_active=data.get("is_active", True),
            is_paused=data.get("is_paused", False),
            paused_until=parse_instant(data["paused_until"]) if data.get("paused_until") else None,
        )


# Predefined rules for common regimens
class CommonRules:
    """Common recurrence rules"""

    @staticmethod
    def daily(*slots: TimeSlot) -> RecurrenceRule:
        return RecurrenceRule(frequency=FrequencyKind.DAILY, time_slots=list(slots))

    @staticmethod
    def weekdays(*slots: TimeSlot) -> RecurrenceRule:
        return RecurrenceRule(
            frequency=FrequencyKind.WEEKLY,
            time_slots=list(slots),
            days_of_week=[Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY,
                          Weekday.THURSDAY, Weekday.FRIDAY],
        )

    @staticmethod
    def weekly(days: List[Weekday], *slots: TimeSlot) -> RecurrenceRule:
        return RecurrenceRule(frequency=FrequencyKind.WEEKLY, time_slots=list(slots), days_of_week=days)

    @staticmethod
    def every_n_days(interval_days: int, start_date: date, *slots: TimeSlot) -> RecurrenceRule:
        return RecurrenceRule(
            frequency=FrequencyKind.CUSTOM_INTERVAL,
            time_slots=list(slots),
            interval_days=interval_days,
            start_date=start_date,
        )

    @staticmethod
    def cycle(active_days: int, break_days: int, start_date: date, *slots: TimeSlot) -> RecurrenceRule:
        return RecurrenceRule(
            frequency=FrequencyKind.DAILY,
            time_slots=list(slots),
            cycle=CycleDefinition(active_days=active_days, break_days=break_days, start_date=start_date),
            start_date=start_date,
        )
