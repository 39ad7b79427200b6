"""
Next-dose computation for recurrence rules
"""
from datetime import date, datetime, timedelta
from typing import Optional
import logging

from medremind.utils.timezone import UTC, combine_local, to_local, to_utc_aware
from .recurrence_models import (
    CycleDefinition,
    DurationKind,
    FrequencyKind,
    RecurrenceRule,
)

logger = logging.getLogger(__name__)

# Upper bound on the forward day scan so that rules matching no day terminate
MAX_SCAN_DAYS = 365


class RecurrenceResolver:
    """Calculates the next dose instant for a recurrence rule.

    Pure functions only: no I/O, no clock reads. All day arithmetic happens on
    local calendar dates in the schedule's time zone, and results are returned
    as UTC-aware datetimes.
    """

    @staticmethod
    def next_occurrence(
        rule: RecurrenceRule,
        reference: datetime,
        tz=None,
    ) -> Optional[datetime]:
        """Earliest dose instant strictly after ``reference``, or None."""
        zone = tz or UTC
        reference = to_utc_aware(reference)

        if not RecurrenceResolver.is_schedulable(rule, reference):
            return None

        slots = rule.sorted_slots()
        if not slots:
            return None

        local_ref = to_local(reference, zone)
        today = local_ref.date()

        if rule.duration == DurationKind.FIXED_END and rule.end_date and today > rule.end_date:
            return None

        cycle = rule.cycle
        if cycle is not None:
            if today < cycle.start_date:
                # Cycle not started yet: first dose is on the anchor day
                candidate = combine_local(cycle.start_date, slots[0].hour, slots[0].minute, zone)
                return RecurrenceResolver._within_duration(rule, candidate, zone)
            if RecurrenceResolver.is_break_day(cycle, today):
                next_start = RecurrenceResolver.next_active_window_start(cycle, today)
                candidate = combine_local(next_start, slots[0].hour, slots[0].minute, zone)
                return RecurrenceResolver._within_duration(rule, candidate, zone)

        if RecurrenceResolver.is_dose_day(rule, today):
            for slot in slots:
                candidate = combine_local(today, slot.hour, slot.minute, zone)
                if candidate > reference:
                    return RecurrenceResolver._within_duration(rule, candidate, zone)

        day = today
        for _ in range(MAX_SCAN_DAYS):
            day = day + timedelta(days=1)
            if RecurrenceResolver.is_dose_day(rule, day):
                candidate = combine_local(day, slots[0].hour, slots[0].minute, zone)
                return RecurrenceResolver._within_duration(rule, candidate, zone)

        logger.debug(f"No qualifying day within {MAX_SCAN_DAYS} days for rule {rule.frequency.value}")
        return None

    @staticmethod
    def is_schedulable(rule: RecurrenceRule, reference: datetime) -> bool:
        """Inactive rules and rules paused past ``reference`` produce no doses."""
        if not rule.is_active:
            return False
        if rule.is_paused:
            resume_at = to_utc_aware(rule.paused_until)
            if resume_at is None or resume_at > reference:
                return False
        return True

    @staticmethod
    def is_dose_day(rule: RecurrenceRule, day: date) -> bool:
        """Frequency predicate, plus the start date and cycle window."""
        if rule.start_date and day < rule.start_date:
            return False
        if rule.duration == DurationKind.FIXED_END and rule.end_date and day > rule.end_date:
            return False
        if rule.cycle is not None:
            if day < rule.cycle.start_date or RecurrenceResolver.is_break_day(rule.cycle, day):
                return False

        if rule.frequency == FrequencyKind.WEEKLY:
            if rule.days_of_week:
                return day.weekday() in {d.value for d in rule.days_of_week}
            return True
        if rule.frequency == FrequencyKind.CUSTOM_INTERVAL:
            anchor = rule.start_date or day
            return (day - anchor).days % (rule.interval_days or 1) == 0
        # DAILY and AS_NEEDED
        return True

    @staticmethod
    def is_break_day(cycle: CycleDefinition, day: date) -> bool:
        days_elapsed = (day - cycle.start_date).days
        return days_elapsed % cycle.length >= cycle.active_days

    @staticmethod
    def next_active_window_start(cycle: CycleDefinition, day: date) -> date:
        """First day of the active window following the cycle that contains ``day``."""
        cycle_index = (day - cycle.start_date).days // cycle.length
        return cycle.start_date + timedelta(days=(cycle_index + 1) * cycle.length)

    @staticmethod
    def _within_duration(rule: RecurrenceRule, candidate: datetime, zone) -> Optional[datetime]:
        if rule.duration == DurationKind.FIXED_END and rule.end_date:
            if to_local(candidate, zone).date() > rule.end_date:
                return None
        return candidate
