"""
Medication schedule read model and device token tables
"""
from sqlalchemy import Column, String, DateTime, Boolean, Index, JSON, Uuid
import uuid

from medremind.db.base import Base
from medremind.utils.timezone import utc_now


class MedicationSchedule(Base):
    """A user's medication schedule as the reminder core reads it"""
    __tablename__ = "medication_schedules"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    medication_id = Column(String, nullable=True)
    timezone = Column(String, nullable=False, default="UTC")
    recurrence = Column(JSON, nullable=False)  # RecurrenceRule.to_dict()
    escalation_rules = Column(JSON, nullable=False, default=list)  # empty means system ladder
    is_critical = Column(Boolean, nullable=False, default=False)
    caregiver_ids = Column(JSON, nullable=False, default=list)

    # Advisory only, written by the scheduler; the task queue is authoritative
    last_reminder_at = Column(DateTime(timezone=True), nullable=True)
    next_reminder_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_medication_schedules_user_next", "user_id", "next_reminder_at"),
    )


class DeviceToken(Base):
    """FCM registration token per user device"""
    __tablename__ = "device_tokens"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)  # ios, android, web
    fcm_token = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_device_tokens_user_platform", "user_id", "platform"),
    )
