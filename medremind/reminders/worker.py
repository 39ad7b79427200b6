"""
Worker entry point

    celery -A medremind.reminders.worker worker -Q reminders.fire,reminders.escalate,reminders.deliver
    celery -A medremind.reminders.worker beat
"""
from medremind.core.logging import configure_logging
from .bootstrap import build_worker
from .config import ReminderSettings

settings = ReminderSettings()
configure_logging(settings.LOG_LEVEL)

worker = build_worker(settings)
celery_app = worker.celery_app
scheduler = worker.scheduler
