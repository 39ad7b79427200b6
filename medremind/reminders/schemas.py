"""
Configuration-time validation for medication schedules

Everything the scheduling core assumes about a schedule is checked here, so a
schedule that reaches the resolver or the escalation state machine is well formed.
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .escalation_models import CHANNELS, EscalationLevel, EscalationRule
from .exceptions import ScheduleConfigError
from .interfaces import Schedule
from .recurrence_models import (
    CycleDefinition,
    DurationKind,
    FrequencyKind,
    RecurrenceRule,
    TimeSlot,
    Weekday,
)


class TimeSlotSchema(BaseModel):
    hour: int = Field(..., ge=0, le=23)
    minute: int = Field(..., ge=0, le=59)
    label: Optional[str] = None


class CycleSchema(BaseModel):
    """On/off cycle, e.g. 21 days on, 7 days off"""
    active_days: int = Field(..., ge=1)
    break_days: int = Field(..., ge=1)
    start_date: date


class RecurrenceRuleSchema(BaseModel):
    frequency: FrequencyKind
    time_slots: List[TimeSlotSchema] = Field(default_factory=list)
    days_of_week: List[Weekday] = Field(default_factory=list)
    interval_days: Optional[int] = None
    cycle: Optional[CycleSchema] = None
    start_date: Optional[date] = None
    duration: DurationKind = DurationKind.ONGOING
    end_date: Optional[date] = None
    is_active: bool = True
    is_paused: bool = False
    paused_until: Optional[datetime] = None

    @field_validator("time_slots")
    @classmethod
    def slots_unique(cls, v: List[TimeSlotSchema]) -> List[TimeSlotSchema]:
        seen = set()
        for slot in v:
            if (slot.hour, slot.minute) in seen:
                raise ValueError(f"duplicate time slot {slot.hour:02d}:{slot.minute:02d}")
            seen.add((slot.hour, slot.minute))
        return sorted(v, key=lambda s: (s.hour, s.minute))

    @field_validator("days_of_week")
    @classmethod
    def days_unique(cls, v: List[Weekday]) -> List[Weekday]:
        return sorted(set(v), key=lambda d: d.value)

    @model_validator(mode="after")
    def _check_frequency(self) -> "RecurrenceRuleSchema":
        if self.frequency == FrequencyKind.CUSTOM_INTERVAL:
            if self.interval_days is None or self.interval_days < 1:
                raise ValueError("CUSTOM_INTERVAL requires interval_days >= 1")
            if self.start_date is None:
                raise ValueError("CUSTOM_INTERVAL requires a start_date to count intervals from")
        elif self.interval_days is not None and self.interval_days < 1:
            raise ValueError("interval_days must be >= 1")
        if self.frequency != FrequencyKind.AS_NEEDED and not self.time_slots:
            raise ValueError(f"{self.frequency.value} schedules need at least one time slot")
        if self.duration == DurationKind.FIXED_END and self.end_date is None:
            raise ValueError("FIXED_END duration requires an end_date")
        if self.end_date and self.start_date and self.end_date < self.start_date:
            raise ValueError("end_date is before start_date")
        return self

    def to_rule(self) -> RecurrenceRule:
        return RecurrenceRule(
            frequency=self.frequency,
            time_slots=[TimeSlot(hour=s.hour, minute=s.minute, label=s.label) for s in self.time_slots],
            days_of_week=list(self.days_of_week),
            interval_days=self.interval_days,
            cycle=CycleDefinition(**self.cycle.model_dump()) if self.cycle else None,
            start_date=self.start_date,
            duration=self.duration,
            end_date=self.end_date,
            is_active=self.is_active,
            is_paused=self.is_paused,
            paused_until=self.paused_until,
        )


class EscalationRuleSchema(BaseModel):
    level: EscalationLevel
    delay_minutes: float = Field(..., ge=0)
    max_attempts: int = Field(..., ge=1)
    notify_caregiver: bool = False
    channels: List[str] = Field(..., min_length=1)

    @field_validator("channels")
    @classmethod
    def known_channels(cls, v: List[str]) -> List[str]:
        unknown = [c for c in v if c not in CHANNELS]
        if unknown:
            raise ValueError(f"unknown channel(s) {unknown}, expected any of {list(CHANNELS)}")
        return list(dict.fromkeys(v))

    def to_rule(self) -> EscalationRule:
        return EscalationRule(
            level=self.level,
            delay=timedelta(minutes=self.delay_minutes),
            max_attempts=self.max_attempts,
            notify_caregiver=self.notify_caregiver,
            channels=tuple(self.channels),
        )


class ScheduleSchema(BaseModel):
    """Schema for creating or editing a medication schedule"""
    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    medication_id: Optional[str] = None
    timezone: str = "UTC"
    recurrence: RecurrenceRuleSchema
    escalation_rules: List[EscalationRuleSchema] = Field(default_factory=list)
    is_critical: bool = False
    caregiver_ids: List[str] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        if v.upper() == "UTC":
            return "UTC"
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown time zone {v!r}")
        return v

    @field_validator("escalation_rules")
    @classmethod
    def ladder_ordered(cls, v: List[EscalationRuleSchema]) -> List[EscalationRuleSchema]:
        # Empty means "use the system ladder"
        for prev, cur in zip(v, v[1:]):
            if cur.level.rank <= prev.level.rank:
                raise ValueError(
                    f"escalation levels must be strictly increasing ({prev.level.value} then {cur.level.value})"
                )
            if cur.delay_minutes < prev.delay_minutes:
                raise ValueError(
                    f"escalation delays must not decrease ({prev.level.value} {prev.delay_minutes}m "
                    f"then {cur.level.value} {cur.delay_minutes}m)"
                )
        return v

    def to_schedule(self) -> Schedule:
        return Schedule(
            id=self.id,
            user_id=self.user_id,
            medication_id=self.medication_id,
            timezone=self.timezone,
            recurrence=self.recurrence.to_rule(),
            escalation_rules=[r.to_rule() for r in self.escalation_rules],
            is_critical=self.is_critical,
            caregiver_ids=list(self.caregiver_ids),
        )


def parse_schedule(data: Dict[str, Any]) -> Schedule:
    """Validate raw schedule configuration, raising ScheduleConfigError on rejection."""
    try:
        return ScheduleSchema.model_validate(data).to_schedule()
    except ValidationError as e:
        raise ScheduleConfigError(f"Invalid schedule configuration: {e.error_count()} error(s)", errors=e.errors()) from e
