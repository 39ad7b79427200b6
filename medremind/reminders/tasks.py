"""
Celery task wrappers around the reminder scheduler
"""
from typing import Any, Callable, Dict

from celery import Celery, Task
from celery.utils.log import get_task_logger
from celery.utils.time import get_exponential_backoff_interval

from .config import ReminderSettings
from .queue import DELIVERY_TASK, ESCALATION_TASK, FIRE_TASK, PURGE_TASK
from .scheduler import ReminderScheduler
from .task_registry import TaskKind

logger = get_task_logger(__name__)


def register_tasks(
    celery_app: Celery,
    scheduler: ReminderScheduler,
    settings: ReminderSettings,
) -> Dict[str, Task]:
    """Bind the reminder tasks to ``celery_app``; returns them by task name."""

    def _retry_or_fail(task: Task, exc: Exception, on_final_failure: Callable[[], None]):
        retries = task.request.retries
        if retries >= settings.TASK_MAX_RETRIES:
            on_final_failure()
            raise exc
        countdown = get_exponential_backoff_interval(
            factor=settings.RETRY_BACKOFF_SECONDS,
            retries=retries,
            maximum=settings.RETRY_BACKOFF_MAX_SECONDS,
            full_jitter=True,
        )
        logger.warning(
            f"[Tasks] {task.name} {task.request.id} failed ({exc!r}), retry {retries + 1}/{settings.TASK_MAX_RETRIES} in {countdown}s"
        )
        raise task.retry(exc=exc, countdown=countdown, max_retries=settings.TASK_MAX_RETRIES)

    def _run(task: Task, kind: TaskKind, payload: Dict[str, Any]) -> bool:
        task_id = task.request.id
        try:
            return scheduler.execute(kind, payload, task_id)
        except Exception as exc:
            _retry_or_fail(task, exc, lambda: scheduler.task_failed(kind, payload, task_id, exc))

    @celery_app.task(name=FIRE_TASK, bind=True)
    def fire_reminder(self, payload: Dict[str, Any]) -> bool:
        """Notify at the first escalation level and enqueue the next reminder."""
        return _run(self, TaskKind.FIRE_REMINDER, payload)

    @celery_app.task(name=ESCALATION_TASK, bind=True)
    def advance_escalation(self, payload: Dict[str, Any]) -> bool:
        """Check the dose and climb the escalation ladder if it is still open."""
        return _run(self, TaskKind.ADVANCE_ESCALATION, payload)

    @celery_app.task(name=DELIVERY_TASK, bind=True)
    def deliver_notification(self, message: Dict[str, Any]) -> Dict[str, bool]:
        try:
            results = scheduler.deliver(message)
        except Exception as exc:
            _retry_or_fail(self, exc, lambda: scheduler.delivery_failed(message, exc))
        return {channel: result.success for channel, result in results.items()}

    @celery_app.task(name=PURGE_TASK)
    def purge_escalations() -> int:
        return scheduler.purge_escalations()

    return {
        FIRE_TASK: fire_reminder,
        ESCALATION_TASK: advance_escalation,
        DELIVERY_TASK: deliver_notification,
        PURGE_TASK: purge_escalations,
    }
