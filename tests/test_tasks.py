from datetime import datetime, timezone

import pytest

from medremind.reminders.celery_app import create_celery_app, task_routes
from medremind.reminders.config import ReminderSettings
from medremind.reminders.exceptions import DeliveryError
from medremind.reminders.interfaces import Schedule
from medremind.reminders.queue import DELIVERY_TASK, ESCALATION_TASK, FIRE_TASK, PURGE_TASK
from medremind.reminders.recurrence_models import CommonRules, TimeSlot
from medremind.reminders.tasks import register_tasks

DOSE = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def make_settings(**overrides):
    values = dict(CELERY_BROKER_URL="memory://", RETRY_BACKOFF_SECONDS=1, RETRY_BACKOFF_MAX_SECONDS=2)
    values.update(overrides)
    return ReminderSettings(_env_file=None, **values)


@pytest.fixture
def schedule(repository):
    return repository.add(
        Schedule(id="sched-1", user_id="user-1", recurrence=CommonRules.daily(TimeSlot(8, 0)))
    )


def bind(scheduler, **overrides):
    settings = make_settings(**overrides)
    app = create_celery_app(settings)
    return register_tasks(app, scheduler, settings)


def test_celery_app_routes_and_beat():
    settings = make_settings()
    app = create_celery_app(settings)

    assert app.conf.task_acks_late is True
    assert app.conf.worker_prefetch_multiplier == 1
    assert app.conf.task_routes[FIRE_TASK]["queue"] == "reminders.fire"
    assert app.conf.task_routes[ESCALATION_TASK]["queue"] == "reminders.escalate"
    assert app.conf.task_routes[DELIVERY_TASK]["queue"] == "reminders.deliver"
    assert {q.name for q in app.conf.task_queues} == {"reminders.fire", "reminders.escalate", "reminders.deliver"}
    assert app.conf.beat_schedule["purge-escalations"]["task"] == PURGE_TASK
    assert task_routes(settings)[PURGE_TASK] == "reminders.escalate"


def test_fire_task_runs_scheduler(scheduler, queue, schedule, clock):
    tasks = bind(scheduler)
    scheduler.schedule_next(schedule)
    [message] = queue.take(FIRE_TASK)

    clock.set(DOSE)
    result = tasks[FIRE_TASK].apply(args=[message["payload"]], task_id=message["task_id"])

    assert result.get() is True
    assert len(queue.of(DELIVERY_TASK)) == 1
    assert len(queue.of(ESCALATION_TASK)) == 1


def test_task_retries_then_succeeds(scheduler, monkeypatch):
    calls = []

    def flaky(kind, payload, task_id):
        calls.append(kind)
        if len(calls) < 3:
            raise ConnectionError("redis went away")
        return True

    monkeypatch.setattr(scheduler, "execute", flaky)
    tasks = bind(scheduler, TASK_MAX_RETRIES=3)

    result = tasks[ESCALATION_TASK].apply(args=[{"task_key": "k", "schedule_id": "s"}], task_id="t-1")

    assert result.get() is True
    assert len(calls) == 3


def test_exhausted_fire_task_is_marked_failed(scheduler, queue, schedule, clock, monkeypatch):
    def broken(payload):
        raise RuntimeError("dispatcher unavailable")

    monkeypatch.setattr(scheduler, "_handle_fire", broken)
    tasks = bind(scheduler, TASK_MAX_RETRIES=0)
    scheduler.schedule_next(schedule)
    [message] = queue.take(FIRE_TASK)

    clock.set(DOSE)
    result = tasks[FIRE_TASK].apply(args=[message["payload"]], task_id=message["task_id"])

    assert result.failed()
    assert isinstance(result.result, RuntimeError)
    assert scheduler.get_queue_stats()["reminders"]["failed"] == 1
    # The next occurrence is still scheduled
    assert len(queue.of(FIRE_TASK)) == 1


def test_exhausted_delivery_is_reported(scheduler, dispatcher, monkeypatch):
    failures = []
    monkeypatch.setattr(scheduler, "delivery_failed", lambda message, exc: failures.append(exc))
    dispatcher.failing_channels = {"push"}
    tasks = bind(scheduler, TASK_MAX_RETRIES=0)

    message = {"recipient_id": "user-1", "audience": "patient", "channels": ["push"], "priority": "normal", "payload": {}}
    result = tasks[DELIVERY_TASK].apply(args=[message])

    assert result.failed()
    assert len(failures) == 1
    assert isinstance(failures[0], DeliveryError)


def test_delivery_task_returns_channel_outcomes(scheduler, dispatcher):
    dispatcher.failing_channels = {"sms"}
    tasks = bind(scheduler)
    message = {"recipient_id": "user-1", "audience": "patient", "channels": ["push", "sms"], "priority": "high", "payload": {}}
    assert tasks[DELIVERY_TASK].apply(args=[message]).get() == {"push": True, "sms": False}


def test_purge_task(scheduler):
    tasks = bind(scheduler)
    assert tasks[PURGE_TASK].apply().get() == 0
