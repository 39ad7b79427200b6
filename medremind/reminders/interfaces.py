"""
Read model and collaborator contracts consumed by the scheduling core
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .escalation_models import (
    EscalationRule,
    ResolutionReason,
    critical_escalation_rules,
    default_escalation_rules,
)
from .recurrence_models import RecurrenceRule


@dataclass
class Schedule:
    """Read-only view of a medication schedule"""
    id: str
    user_id: str
    recurrence: RecurrenceRule
    timezone: str = "UTC"
    medication_id: Optional[str] = None
    escalation_rules: List[EscalationRule] = field(default_factory=list)
    is_critical: bool = False
    caregiver_ids: List[str] = field(default_factory=list)
    last_reminder_at: Optional[datetime] = None
    next_reminder_at: Optional[datetime] = None

    def ladder(self) -> List[EscalationRule]:
        """Own escalation rules, else the system ladder for this schedule"""
        if self.escalation_rules:
            return list(self.escalation_rules)
        return critical_escalation_rules() if self.is_critical else default_escalation_rules()


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    detail: Optional[str] = None


class NotificationDispatcher(ABC):
    """Sends one notification over a set of channels"""

    @abstractmethod
    def send(
        self,
        recipient_id: str,
        channels: List[str],
        priority: str,
        payload: Dict[str, Any],
    ) -> Dict[str, ChannelResult]:
        ...


class AdherenceGate(ABC):
    """Authority on whether a dose has been acted on by the user"""

    @abstractmethod
    def was_acknowledged(self, schedule_id: str, dose_at: datetime) -> bool:
        ...

    def acknowledgement_reason(self, schedule_id: str, dose_at: datetime) -> ResolutionReason:
        """Only asked after ``was_acknowledged`` returned True."""
        return ResolutionReason.TAKEN


class ScheduleRepository(ABC):
    """Schedule read model plus the advisory reminder-time hook"""

    @abstractmethod
    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        ...

    @abstractmethod
    def record_reminder_times(
        self,
        schedule_id: str,
        last_reminder_at: Optional[datetime] = None,
        next_reminder_at: Optional[datetime] = None,
    ) -> None:
        ...
