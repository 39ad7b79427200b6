from typing import Dict

from celery import Celery
from kombu import Exchange, Queue

from .config import ReminderSettings
from .queue import DELIVERY_TASK, ESCALATION_TASK, FIRE_TASK, PURGE_TASK


def task_routes(settings: ReminderSettings) -> Dict[str, str]:
    """Task name -> queue name"""
    return {
        FIRE_TASK: settings.FIRE_QUEUE,
        ESCALATION_TASK: settings.ESCALATION_QUEUE,
        DELIVERY_TASK: settings.DELIVERY_QUEUE,
        PURGE_TASK: settings.ESCALATION_QUEUE,
    }


def create_celery_app(settings: ReminderSettings) -> Celery:
    celery_app = Celery(
        "reminders",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
    )

    exchange = Exchange(settings.EXCHANGE, type="direct", durable=True)
    routes = task_routes(settings)

    celery_app.conf.update(
        task_acks_late=True,
        # A worker lost mid-task leaves the message on the broker for redelivery
        task_reject_on_worker_lost=True,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_ignore_result=settings.CELERY_RESULT_BACKEND is None,
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.WORKER_CONCURRENCY,
        task_default_queue=settings.FIRE_QUEUE,
        task_default_exchange=settings.EXCHANGE,
        task_default_routing_key=settings.FIRE_QUEUE,
        task_routes={name: {"queue": queue, "routing_key": queue} for name, queue in routes.items()},
        task_queues=tuple(
            Queue(name, exchange=exchange, routing_key=name, durable=True)
            for name in (settings.FIRE_QUEUE, settings.ESCALATION_QUEUE, settings.DELIVERY_QUEUE)
        ),
        # Delayed tasks can sit far longer than the redis transport's default hour
        broker_transport_options={"visibility_timeout": 2 * 24 * 3600},
    )

    # Celery Beat schedule for escalation state GC
    celery_app.conf.beat_schedule = {
        "purge-escalations": {
            "task": PURGE_TASK,
            "schedule": settings.ESCALATION_SWEEP_INTERVAL_SECONDS,
        },
    }
    return celery_app
