"""
Thin adapter between the scheduler and the Celery broker
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

from celery import Celery

logger = logging.getLogger(__name__)

FIRE_TASK = "reminders.fire_reminder"
ESCALATION_TASK = "reminders.advance_escalation"
DELIVERY_TASK = "reminders.deliver_notification"
PURGE_TASK = "reminders.purge_escalations"


class TaskQueue(ABC):
    @abstractmethod
    def enqueue(
        self,
        task_name: str,
        payload: Dict[str, Any],
        task_id: Optional[str] = None,
        countdown: float = 0.0,
    ) -> None:
        ...

    @abstractmethod
    def revoke(self, task_ids: List[str]) -> None:
        ...


class CeleryTaskQueue(TaskQueue):
    """Publishes by task name so producers need not import the worker's tasks"""

    def __init__(self, celery_app: Celery, routes: Dict[str, str]):
        self.celery_app = celery_app
        self.routes = routes

    def enqueue(
        self,
        task_name: str,
        payload: Dict[str, Any],
        task_id: Optional[str] = None,
        countdown: float = 0.0,
    ) -> None:
        self.celery_app.send_task(
            task_name,
            args=[payload],
            task_id=task_id,
            countdown=max(countdown, 0.0),
            queue=self.routes.get(task_name),
        )

    def revoke(self, task_ids: List[str]) -> None:
        if not task_ids:
            return
        # Broadcast only; the registry claim is what actually stops revoked work
        self.celery_app.control.revoke(task_ids)
        logger.debug(f"[Queue] Revoked {len(task_ids)} task(s)")
