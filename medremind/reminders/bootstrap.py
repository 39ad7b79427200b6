"""
Builds every reminder collaborator once per process and wires them into the Celery app
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

from celery import Celery, Task
from kombu.utils.imports import symbol_by_name
from sqlalchemy.orm import sessionmaker
import logging
import redis

from medremind.db.session import create_session_factory
from .adherence import EscalationStateGate
from .celery_app import create_celery_app, task_routes
from .config import ReminderSettings
from .escalation import EscalationStateMachine, RedisEscalationStore
from .interfaces import AdherenceGate, NotificationDispatcher, ScheduleRepository
from .queue import CeleryTaskQueue
from .repository import SqlScheduleRepository
from .scheduler import ReminderScheduler
from .task_registry import TaskRegistry
from .tasks import register_tasks

logger = logging.getLogger(__name__)


@dataclass
class ReminderWorker:
    settings: ReminderSettings
    celery_app: Celery
    scheduler: ReminderScheduler
    registry: TaskRegistry
    state_machine: EscalationStateMachine
    tasks: Dict[str, Task]


def build_worker(
    settings: ReminderSettings,
    redis_client: Optional[redis.Redis] = None,
    session_factory: Optional[sessionmaker] = None,
    repository: Optional[ScheduleRepository] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    adherence_gate: Optional[AdherenceGate] = None,
) -> ReminderWorker:
    """Wire a worker from settings; any collaborator may be passed in pre-built."""
    redis_client = redis_client or redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    if session_factory is None and (repository is None or dispatcher is None):
        session_factory = create_session_factory(settings.DATABASE_URL)

    celery_app = create_celery_app(settings)
    state_machine = EscalationStateMachine(
        RedisEscalationStore(
            redis_client,
            retention_seconds=settings.ESCALATION_RETENTION_SECONDS,
            stale_seconds=settings.ESCALATION_STALE_SECONDS,
        ),
        retention=timedelta(seconds=settings.ESCALATION_RETENTION_SECONDS),
        stale_after=timedelta(seconds=settings.ESCALATION_STALE_SECONDS),
    )
    registry = TaskRegistry(redis_client)

    if repository is None:
        repository = SqlScheduleRepository(session_factory)
    if dispatcher is None:
        dispatcher = symbol_by_name(settings.DISPATCHER_FACTORY)(settings, session_factory)
    if adherence_gate is None:
        if settings.ADHERENCE_GATE_FACTORY:
            adherence_gate = symbol_by_name(settings.ADHERENCE_GATE_FACTORY)(settings, session_factory)
        else:
            adherence_gate = EscalationStateGate(state_machine)

    scheduler = ReminderScheduler(
        repository=repository,
        state_machine=state_machine,
        registry=registry,
        queue=CeleryTaskQueue(celery_app, task_routes(settings)),
        dispatcher=dispatcher,
        adherence_gate=adherence_gate,
        call_timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
        max_fire_lateness=timedelta(seconds=settings.MAX_FIRE_LATENESS_SECONDS),
    )
    tasks = register_tasks(celery_app, scheduler, settings)
    logger.info(
        f"[Worker] Reminder worker ready | queues={settings.FIRE_QUEUE},{settings.ESCALATION_QUEUE},"
        f"{settings.DELIVERY_QUEUE} dispatcher={type(dispatcher).__name__} gate={type(adherence_gate).__name__}"
    )
    return ReminderWorker(
        settings=settings,
        celery_app=celery_app,
        scheduler=scheduler,
        registry=registry,
        state_machine=state_machine,
        tasks=tasks,
    )

