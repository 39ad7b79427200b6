from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import fakeredis
import pytest

from medremind.reminders.escalation import EscalationStateMachine, InMemoryEscalationStore
from medremind.reminders.escalation_models import ResolutionReason
from medremind.reminders.interfaces import (
    AdherenceGate,
    ChannelResult,
    NotificationDispatcher,
    Schedule,
    ScheduleRepository,
)
from medremind.reminders.queue import TaskQueue
from medremind.reminders.scheduler import ReminderScheduler
from medremind.reminders.task_registry import TaskRegistry
from medremind.utils.timezone import instant_token, to_utc_aware


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingQueue(TaskQueue):
    def __init__(self):
        self.enqueued: List[Dict[str, Any]] = []
        self.revoked: List[str] = []

    def enqueue(self, task_name, payload, task_id=None, countdown=0.0):
        self.enqueued.append(
            {"task_name": task_name, "payload": payload, "task_id": task_id, "countdown": countdown}
        )

    def revoke(self, task_ids):
        self.revoked.extend(task_ids)

    def of(self, task_name: str) -> List[Dict[str, Any]]:
        return [m for m in self.enqueued if m["task_name"] == task_name]

    def take(self, task_name: str) -> List[Dict[str, Any]]:
        """Remove and return every queued message for ``task_name``."""
        taken = self.of(task_name)
        self.enqueued = [m for m in self.enqueued if m["task_name"] != task_name]
        return taken


class FakeDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.failing_channels = set()

    def send(self, recipient_id, channels, priority, payload):
        self.sent.append(
            {"recipient_id": recipient_id, "channels": list(channels), "priority": priority, "payload": payload}
        )
        return {
            channel: ChannelResult(channel, channel not in self.failing_channels)
            for channel in channels
        }


class FakeGate(AdherenceGate):
    def __init__(self):
        self.acknowledged: Dict[tuple, ResolutionReason] = {}

    def acknowledge(self, schedule_id: str, dose_at: datetime, reason=ResolutionReason.TAKEN) -> None:
        self.acknowledged[(schedule_id, instant_token(dose_at))] = reason

    def was_acknowledged(self, schedule_id, dose_at):
        return (schedule_id, instant_token(dose_at)) in self.acknowledged

    def acknowledgement_reason(self, schedule_id, dose_at):
        return self.acknowledged[(schedule_id, instant_token(dose_at))]


class InMemoryRepository(ScheduleRepository):
    def __init__(self):
        self.schedules: Dict[str, Schedule] = {}
        self.fail_writes = False

    def add(self, schedule: Schedule) -> Schedule:
        self.schedules[schedule.id] = schedule
        return schedule

    def get_schedule(self, schedule_id) -> Optional[Schedule]:
        return self.schedules.get(schedule_id)

    def record_reminder_times(self, schedule_id, last_reminder_at=None, next_reminder_at=None):
        if self.fail_writes:
            raise RuntimeError("database unavailable")
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            return
        if last_reminder_at is not None:
            schedule.last_reminder_at = to_utc_aware(last_reminder_at)
        if next_reminder_at is not None:
            schedule.next_reminder_at = to_utc_aware(next_reminder_at)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 10, 7, 0, tzinfo=timezone.utc))


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def gate():
    return FakeGate()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def registry(fake_redis):
    return TaskRegistry(fake_redis)


@pytest.fixture
def state_machine(clock):
    return EscalationStateMachine(InMemoryEscalationStore(), clock=clock)


@pytest.fixture
def scheduler(repository, state_machine, registry, queue, dispatcher, gate, clock):
    executor = ThreadPoolExecutor(max_workers=2)
    sched = ReminderScheduler(
        repository=repository,
        state_machine=state_machine,
        registry=registry,
        queue=queue,
        dispatcher=dispatcher,
        adherence_gate=gate,
        clock=clock,
        call_timeout=5.0,
        executor=executor,
    )
    yield sched
    executor.shutdown(wait=True)
