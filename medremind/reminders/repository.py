from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy import update
import logging

from medremind.utils.timezone import to_utc_aware, utc_now
from .escalation_models import EscalationRule
from .interfaces import Schedule, ScheduleRepository
from .models import DeviceToken, MedicationSchedule
from .recurrence_models import RecurrenceRule

logger = logging.getLogger(__name__)


def schedule_from_row(row: MedicationSchedule) -> Schedule:
    return Schedule(
        id=row.id,
        user_id=row.user_id,
        medication_id=row.medication_id,
        timezone=row.timezone or "UTC",
        recurrence=RecurrenceRule.from_dict(row.recurrence),
        escalation_rules=[EscalationRule.from_dict(r) for r in row.escalation_rules or []],
        is_critical=bool(row.is_critical),
        caregiver_ids=list(row.caregiver_ids or []),
        last_reminder_at=to_utc_aware(row.last_reminder_at),
        next_reminder_at=to_utc_aware(row.next_reminder_at),
    )


class SqlScheduleRepository(ScheduleRepository):
    """Schedule read model over the medication_schedules table"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        db: Session = self.session_factory()
        try:
            row = db.get(MedicationSchedule, schedule_id)
            return schedule_from_row(row) if row else None
        finally:
            db.close()

    def record_reminder_times(
        self,
        schedule_id: str,
        last_reminder_at: Optional[datetime] = None,
        next_reminder_at: Optional[datetime] = None,
    ) -> None:
        values = {}
        if last_reminder_at is not None:
            values["last_reminder_at"] = to_utc_aware(last_reminder_at)
        if next_reminder_at is not None:
            values["next_reminder_at"] = to_utc_aware(next_reminder_at)
        if not values:
            return
        values["updated_at"] = utc_now()

        db: Session = self.session_factory()
        try:
            db.execute(
                update(MedicationSchedule)
                .where(MedicationSchedule.id == schedule_id)
                .values(**values)
            )
            db.commit()
        finally:
            db.close()

    def upsert_schedule(self, schedule: Schedule) -> Schedule:
        """Insert or replace a schedule's configuration, keeping its reminder times."""
        db: Session = self.session_factory()
        try:
            row = db.get(MedicationSchedule, schedule.id)
            if row is None:
                row = MedicationSchedule(id=schedule.id)
            row.user_id = schedule.user_id
            row.medication_id = schedule.medication_id
            row.timezone = schedule.timezone
            row.recurrence = schedule.recurrence.to_dict()
            row.escalation_rules = [r.to_dict() for r in schedule.escalation_rules]
            row.is_critical = schedule.is_critical
            row.caregiver_ids = list(schedule.caregiver_ids)
            db.add(row)
            db.commit()
            db.refresh(row)
            return schedule_from_row(row)
        finally:
            db.close()

    def delete_schedule(self, schedule_id: str) -> bool:
        db: Session = self.session_factory()
        try:
            row = db.get(MedicationSchedule, schedule_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True
        finally:
            db.close()


def upsert_device_token(db: Session, user_id: str, platform: str, fcm_token: str) -> DeviceToken:
    existing = (
        db.query(DeviceToken)
        .filter(DeviceToken.user_id == user_id, DeviceToken.platform == platform)
        .order_by(DeviceToken.created_at.desc())
        .first()
    )
    if existing:
        existing.fcm_token = fcm_token
        db.add(existing)
        db.commit()
        db.refresh(existing)
        return existing
    token = DeviceToken(user_id=user_id, platform=platform, fcm_token=fcm_token)
    db.add(token)
    db.commit()
    db.refresh(token)
    return token


def get_tokens_for_user(db: Session, user_id: str) -> List[str]:
    """Latest token per platform for the user"""
    rows = (
        db.query(DeviceToken)
        .filter(DeviceToken.user_id == user_id)
        .order_by(DeviceToken.created_at.desc())
        .all()
    )
    tokens = {}
    for row in rows:
        tokens.setdefault(row.platform, row.fcm_token)
    return list(tokens.values())
