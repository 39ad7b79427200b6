from datetime import datetime, timedelta, timezone

import pytest

from medremind.db.base import Base
from medremind.db.session import create_session_factory
from medremind.reminders.escalation_models import EscalationLevel, EscalationRule
from medremind.reminders.interfaces import Schedule
from medremind.reminders.recurrence_models import CommonRules, TimeSlot, Weekday
from medremind.reminders.repository import (
    SqlScheduleRepository,
    get_tokens_for_user,
    upsert_device_token,
)

DOSE = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    factory = create_session_factory("sqlite://")
    Base.metadata.create_all(factory.kw["bind"])
    return factory


@pytest.fixture
def repo(session_factory):
    return SqlScheduleRepository(session_factory)


def make_schedule(**overrides):
    data = dict(
        id="sched-1",
        user_id="user-1",
        medication_id="med-1",
        timezone="Asia/Kolkata",
        recurrence=CommonRules.weekly([Weekday.MONDAY, Weekday.THURSDAY], TimeSlot(8, 0, "morning")),
        escalation_rules=[
            EscalationRule(EscalationLevel.GENTLE, timedelta(0), 1, False, ("push",)),
            EscalationRule(EscalationLevel.CALL, timedelta(minutes=45), 1, True, ("call",)),
        ],
        caregiver_ids=["carer-1", "carer-2"],
    )
    data.update(overrides)
    return Schedule(**data)


def test_upsert_and_get_schedule(repo):
    repo.upsert_schedule(make_schedule())
    loaded = repo.get_schedule("sched-1")

    assert loaded == make_schedule()
    assert loaded.ladder()[1].delay == timedelta(minutes=45)


def test_get_missing_schedule(repo):
    assert repo.get_schedule("nope") is None


def test_upsert_replaces_configuration_and_keeps_times(repo):
    repo.upsert_schedule(make_schedule())
    repo.record_reminder_times("sched-1", next_reminder_at=DOSE)

    repo.upsert_schedule(make_schedule(recurrence=CommonRules.daily(TimeSlot(21, 0)), caregiver_ids=[]))
    loaded = repo.get_schedule("sched-1")

    assert [s.hour for s in loaded.recurrence.time_slots] == [21]
    assert loaded.caregiver_ids == []
    assert loaded.next_reminder_at == DOSE


def test_record_reminder_times_only_touches_given_fields(repo):
    repo.upsert_schedule(make_schedule())
    repo.record_reminder_times("sched-1", next_reminder_at=DOSE)
    repo.record_reminder_times("sched-1", last_reminder_at=DOSE)
    repo.record_reminder_times("sched-1")

    loaded = repo.get_schedule("sched-1")
    assert loaded.last_reminder_at == DOSE
    assert loaded.next_reminder_at == DOSE


def test_record_reminder_times_for_unknown_schedule_is_harmless(repo):
    repo.record_reminder_times("ghost", next_reminder_at=DOSE)
    assert repo.get_schedule("ghost") is None


def test_delete_schedule(repo):
    repo.upsert_schedule(make_schedule())
    assert repo.delete_schedule("sched-1") is True
    assert repo.delete_schedule("sched-1") is False


def test_device_tokens_latest_per_platform(session_factory):
    db = session_factory()
    try:
        upsert_device_token(db, "user-1", "ios", "ios-old")
        upsert_device_token(db, "user-1", "ios", "ios-new")
        upsert_device_token(db, "user-1", "android", "android-1")
        upsert_device_token(db, "user-2", "ios", "other")

        assert sorted(get_tokens_for_user(db, "user-1")) == ["android-1", "ios-new"]
        assert get_tokens_for_user(db, "nobody") == []
    finally:
        db.close()
