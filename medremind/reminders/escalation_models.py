"""
Escalation ladder and per-dose escalation state
"""
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any
from enum import Enum
from dataclasses import dataclass, field
import json

from medremind.utils.timezone import instant_token, parse_instant


class EscalationLevel(Enum):
    """Escalation levels, in ladder order"""
    GENTLE = "gentle"
    REPEAT = "repeat"
    SMS = "sms"
    CALL = "call"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @property
    def priority(self) -> str:
        """Dispatch priority handed to the notification dispatcher"""
        if self == EscalationLevel.EMERGENCY:
            return "critical"
        if self in (EscalationLevel.SMS, EscalationLevel.CALL):
            return "high"
        return "normal"


_LEVEL_ORDER = list(EscalationLevel)


class ResolutionReason(Enum):
    TAKEN = "taken"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    MANUAL = "manual"


CHANNELS = ("push", "sms", "call", "email")


@dataclass(frozen=True)
class EscalationRule:
    """One rung of the ladder"""
    level: EscalationLevel
    delay: timedelta
    max_attempts: int
    notify_caregiver: bool
    channels: tuple

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "delay_minutes": self.delay.total_seconds() / 60,
            "max_attempts": self.max_attempts,
            "notify_caregiver": self.notify_caregiver,
            "channels": list(self.channels),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationRule':
        return cls(
            level=EscalationLevel(data["level"]),
            delay=timedelta(minutes=float(data.get("delay_minutes", 0))),
            max_attempts=int(data["max_attempts"]),
            notify_caregiver=bool(data.get("notify_caregiver", False)),
            channels=tuple(data.get("channels") or ("push",)),
        )


def _rule(level, minutes, attempts, caregiver, *channels) -> EscalationRule:
    return EscalationRule(
        level=level,
        delay=timedelta(minutes=minutes),
        max_attempts=attempts,
        notify_caregiver=caregiver,
        channels=tuple(channels),
    )


def default_escalation_rules() -> List[EscalationRule]:
    return [
        _rule(EscalationLevel.GENTLE, 0, 1, False, "push"),
        _rule(EscalationLevel.REPEAT, 15, 2, False, "push"),
        _rule(EscalationLevel.SMS, 30, 1, True, "push", "sms"),
        _rule(EscalationLevel.CALL, 60, 1, True, "call"),
        _rule(EscalationLevel.EMERGENCY, 120, 1, True, "push", "sms", "call"),
    ]


def critical_escalation_rules() -> List[EscalationRule]:
    """Tighter ladder for medications where a missed dose is dangerous"""
    return [
        _rule(EscalationLevel.GENTLE, 0, 1, False, "push"),
        _rule(EscalationLevel.REPEAT, 5, 2, False, "push", "sms"),
        _rule(EscalationLevel.SMS, 15, 1, True, "push", "sms"),
        _rule(EscalationLevel.CALL, 30, 1, True, "call"),
        _rule(EscalationLevel.EMERGENCY, 45, 1, True, "push", "sms", "call"),
    ]


def escalation_key(schedule_id: str, dose_at: datetime) -> str:
    return f"{schedule_id}:{instant_token(dose_at)}"


@dataclass
class EscalationState:
    """Progress of one escalation, keyed by (schedule_id, dose_at)"""
    schedule_id: str
    dose_at: datetime
    level: EscalationLevel
    started_at: datetime
    attempt_count: int = 0
    user_id: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution: Optional[ResolutionReason] = None
    last_advance_token: Optional[str] = None

    @property
    def key(self) -> str:
        return escalation_key(self.schedule_id, self.dose_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "dose_at": self.dose_at.isoformat(),
            "level": self.level.value,
            "started_at": self.started_at.isoformat(),
            "attempt_count": self.attempt_count,
            "user_id": self.user_id,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "is_resolved": self.is_resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution.value if self.resolution else None,
            "last_advance_token": self.last_advance_token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationState':
        return cls(
            schedule_id=data["schedule_id"],
            dose_at=parse_instant(data["dose_at"]),
            level=EscalationLevel(data["level"]),
            started_at=parse_instant(data["started_at"]),
            attempt_count=int(data.get("attempt_count", 0)),
            user_id=data.get("user_id"),
            last_attempt_at=parse_instant(data["last_attempt_at"]) if data.get("last_attempt_at") else None,
            is_resolved=bool(data.get("is_resolved", False)),
            resolved_at=parse_instant(data["resolved_at"]) if data.get("resolved_at") else None,
            resolution=ResolutionReason(data["resolution"]) if data.get("resolution") else None,
            last_advance_token=data.get("last_advance_token"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> 'EscalationState':
        return cls.from_dict(json.loads(raw))


@dataclass
class EscalationStats:
    active: int = 0
    resolved: int = 0
    by_level: Dict[str, int] = field(default_factory=lambda: {lvl.value: 0 for lvl in EscalationLevel})
