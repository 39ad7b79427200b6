"""
Reminder scheduling: durable fire/escalate task loop around the resolver and
the escalation state machine
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import logging

from medremind.utils.timezone import get_zoneinfo, parse_instant, to_utc_aware, utc_now
from . import metrics
from .escalation import EscalationStateMachine
from .escalation_models import EscalationRule, EscalationState, ResolutionReason
from .exceptions import DeliveryError, ExternalCallTimeout
from .interfaces import (
    AdherenceGate,
    ChannelResult,
    NotificationDispatcher,
    Schedule,
    ScheduleRepository,
)
from .queue import DELIVERY_TASK, ESCALATION_TASK, FIRE_TASK, TaskQueue
from .recurrence import RecurrenceResolver
from .task_registry import RegisteredTask, TaskKind, TaskRegistry

logger = logging.getLogger(__name__)


class ReminderScheduler:
    """Owns the FIRE_REMINDER / ADVANCE_ESCALATION task loop.

    Each fired reminder enqueues its own successor through the durable queue, so
    after a crash the loop resumes from whatever the broker still holds. All
    collaborators are injected; the worker entry point owns their lifetime.
    """

    def __init__(
        self,
        repository: ScheduleRepository,
        state_machine: EscalationStateMachine,
        registry: TaskRegistry,
        queue: TaskQueue,
        dispatcher: NotificationDispatcher,
        adherence_gate: AdherenceGate,
        clock: Callable[[], datetime] = utc_now,
        call_timeout: float = 10.0,
        max_fire_lateness: timedelta = timedelta(hours=1),
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.repository = repository
        self.state_machine = state_machine
        self.registry = registry
        self.queue = queue
        self.dispatcher = dispatcher
        self.adherence_gate = adherence_gate
        self.clock = clock
        self.call_timeout = call_timeout
        self.max_fire_lateness = max_fire_lateness
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="medremind-ext")

    # ------------------------------------------------------------------
    # Operations exposed to the rest of the system
    # ------------------------------------------------------------------

    def schedule_next(
        self,
        schedule: Schedule,
        generation: Optional[int] = None,
        reference: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Enqueue the FIRE_REMINDER task for the schedule's next dose.

        Returns the dose instant when a task was enqueued.
        """
        now = self.clock()
        reference = to_utc_aware(reference) if reference else now
        instant = RecurrenceResolver.next_occurrence(
            schedule.recurrence, reference, get_zoneinfo(schedule.timezone)
        )
        if instant is None:
            logger.debug(f"[Scheduler] No next reminder for schedule {schedule.id}")
            return None

        delay = instant - now
        if delay.total_seconds() < 0:
            logger.warning(
                f"[Scheduler] Reminder time {instant.isoformat()} is in the past for schedule {schedule.id}, not enqueuing"
            )
            metrics.reminders_stale_skipped_total.inc()
            return None

        task = self._enqueue(
            TaskKind.FIRE_REMINDER, FIRE_TASK, schedule, instant, delay, generation
        )
        if task is None:
            return None
        self._record_times(schedule.id, next_reminder_at=instant)
        metrics.reminders_scheduled_total.inc()
        logger.info(f"[Scheduler] Scheduled reminder for {schedule.id} at {instant.isoformat()}")
        return instant

    def cancel_all(self, schedule_id: str) -> int:
        """Remove every pending task of a schedule and block stale successors."""
        tokens = self.registry.cancel_schedule(schedule_id)
        self.queue.revoke(tokens)
        logger.info(f"[Scheduler] Cancelled {len(tokens)} pending task(s) for schedule {schedule_id}")
        return len(tokens)

    def reschedule(self, schedule: Schedule) -> Optional[datetime]:
        self.cancel_all(schedule.id)
        return self.schedule_next(schedule)

    def on_acknowledged(
        self,
        schedule_id: str,
        dose_at: datetime,
        reason: ResolutionReason = ResolutionReason.TAKEN,
    ) -> Optional[EscalationState]:
        """Hook for the adherence recorder: the user took or skipped the dose."""
        dose_at = to_utc_aware(dose_at)
        state = self.state_machine.resolve(schedule_id, dose_at, reason)
        token = self.registry.cancel_task(TaskKind.ADVANCE_ESCALATION, schedule_id, dose_at)
        if token:
            self.queue.revoke([token])
            logger.info(f"[Scheduler] Dropped pending escalation for {schedule_id} at {dose_at.isoformat()}")
        return state

    def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        now = self.clock()
        return {
            "reminders": self.registry.counts(TaskKind.FIRE_REMINDER, now).to_dict(),
            "escalations": self.registry.counts(TaskKind.ADVANCE_ESCALATION, now).to_dict(),
        }

    def purge_escalations(self) -> int:
        return self.state_machine.purge(self.clock())

    # ------------------------------------------------------------------
    # Task execution (called from the Celery task wrappers)
    # ------------------------------------------------------------------

    def execute(self, kind: TaskKind, payload: Dict[str, Any], task_id: str) -> bool:
        """Run a claimed task. Returns False when the message was dropped."""
        if not self.registry.claim(kind, payload["task_key"], task_id):
            logger.info(f"[Scheduler] Dropping {kind.value} task {task_id}: cancelled or already handled")
            return False
        if kind == TaskKind.FIRE_REMINDER:
            self._handle_fire(payload)
        else:
            self._handle_escalation(payload, task_id)
        self.registry.finish(kind, task_id, succeeded=True)
        return True

    def task_failed(self, kind: TaskKind, payload: Dict[str, Any], task_id: str, exc: BaseException) -> None:
        logger.error(
            f"[Scheduler] {kind.value} task {task_id} for schedule {payload.get('schedule_id')} "
            f"at {payload.get('dose_at')} failed after retries: {exc!r}",
            exc_info=exc,
        )
        metrics.task_failures_total.labels(task=kind.value).inc()
        self.registry.finish(kind, task_id, succeeded=False)
        if kind == TaskKind.FIRE_REMINDER:
            # The failed fire never reached its successor; keep the chain alive
            schedule = self.repository.get_schedule(payload["schedule_id"])
            if schedule is not None:
                self.schedule_next(
                    schedule,
                    generation=payload.get("generation"),
                    reference=max(self.clock(), parse_instant(payload["dose_at"])),
                )

    def deliver(self, message: Dict[str, Any]) -> Dict[str, ChannelResult]:
        results = self._call(
            self.dispatcher.send,
            message["recipient_id"],
            message["channels"],
            message["priority"],
            message["payload"],
        )
        for channel, result in results.items():
            if result.success:
                metrics.dispatch_success_total.labels(channel=channel).inc()
            else:
                metrics.dispatch_failed_total.labels(channel=channel).inc()
                logger.warning(
                    f"[Scheduler] {channel} delivery to {message['recipient_id']} failed: {result.detail}"
                )
        if results and not any(r.success for r in results.values()):
            raise DeliveryError(f"All channels failed for recipient {message['recipient_id']}")
        return results

    def delivery_failed(self, message: Dict[str, Any], exc: BaseException) -> None:
        logger.error(
            f"[Scheduler] Delivery failure: {message.get('audience')} {message.get('recipient_id')} "
            f"level={message.get('payload', {}).get('level')} channels={message.get('channels')}: {exc!r}",
            exc_info=exc,
        )
        metrics.task_failures_total.labels(task="deliver_notification").inc()

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_fire(self, payload: Dict[str, Any]) -> None:
        schedule_id = payload["schedule_id"]
        dose_at = parse_instant(payload["dose_at"])
        generation = payload.get("generation")

        schedule = self.repository.get_schedule(schedule_id)
        if schedule is None:
            logger.info(f"[Scheduler] Schedule {schedule_id} no longer exists, dropping reminder")
            return

        lateness = self.clock() - dose_at
        if lateness > self.max_fire_lateness:
            logger.warning(
                f"[Scheduler] Reminder for {schedule_id} at {dose_at.isoformat()} is {lateness} late, not notifying"
            )
            metrics.reminders_stale_skipped_total.inc()
        else:
            ladder = schedule.ladder()
            first = ladder[0]
            logger.info(f"[Scheduler] Firing reminder for {schedule_id} at {dose_at.isoformat()}")
            self._queue_notifications(schedule, dose_at, first, attempt=0)
            state = self.state_machine.start(schedule.id, dose_at, ladder, user_id=schedule.user_id)
            metrics.reminders_fired_total.inc()
            self._record_times(schedule.id, last_reminder_at=dose_at)
            if state.is_resolved:
                logger.info(f"[Scheduler] Dose {state.key} already resolved, no escalation")
            elif len(ladder) > 1:
                self._enqueue(
                    TaskKind.ADVANCE_ESCALATION, ESCALATION_TASK, schedule, dose_at, first.delay, generation
                )

        # Never earlier than the dose itself, so an early-running task cannot pick its own dose again
        self.schedule_next(schedule, generation=generation, reference=max(self.clock(), dose_at))

    def _handle_escalation(self, payload: Dict[str, Any], task_id: str) -> None:
        schedule_id = payload["schedule_id"]
        dose_at = parse_instant(payload["dose_at"])
        generation = payload.get("generation")

        if self._call(self.adherence_gate.was_acknowledged, schedule_id, dose_at):
            reason = self._call(self.adherence_gate.acknowledgement_reason, schedule_id, dose_at)
            self.state_machine.resolve(schedule_id, dose_at, reason)
            logger.info(f"[Scheduler] Dose for {schedule_id} at {dose_at.isoformat()} acknowledged, stopping escalation")
            return

        schedule = self.repository.get_schedule(schedule_id)
        if schedule is None:
            logger.info(f"[Scheduler] Schedule {schedule_id} no longer exists, dropping escalation")
            return

        ladder = schedule.ladder()
        state = self.state_machine.advance(schedule_id, dose_at, ladder, token=task_id)
        if state is None or state.is_resolved:
            return

        rule = self.state_machine.current_rule(state, ladder)
        self._queue_notifications(schedule, dose_at, rule, attempt=state.attempt_count)
        self._enqueue(TaskKind.ADVANCE_ESCALATION, ESCALATION_TASK, schedule, dose_at, rule.delay, generation)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enqueue(
        self,
        kind: TaskKind,
        task_name: str,
        schedule: Schedule,
        dose_at: datetime,
        delay: timedelta,
        generation: Optional[int],
    ) -> Optional[RegisteredTask]:
        eta = self.clock() + delay
        task = self.registry.register(kind, schedule.id, dose_at, eta, generation=generation)
        if task is None:
            return None
        payload = {
            "task_key": task.key,
            "schedule_id": schedule.id,
            "user_id": schedule.user_id,
            "dose_at": dose_at.isoformat(),
            "generation": task.generation,
        }
        try:
            self.queue.enqueue(task_name, payload, task_id=task.token, countdown=delay.total_seconds())
        except Exception:
            # Free the key so a later attempt can enqueue it again
            self.registry.cancel_task(kind, schedule.id, dose_at)
            raise
        return task

    def _queue_notifications(
        self,
        schedule: Schedule,
        dose_at: datetime,
        rule: EscalationRule,
        attempt: int,
    ) -> None:
        content = {
            "schedule_id": schedule.id,
            "medication_id": schedule.medication_id,
            "dose_at": dose_at.isoformat(),
            "level": rule.level.value,
            "attempt": attempt,
        }
        recipients = [(schedule.user_id, "patient")]
        if rule.notify_caregiver:
            if not schedule.caregiver_ids:
                logger.warning(f"[Scheduler] Level {rule.level.value} wants a caregiver but {schedule.id} has none")
            recipients.extend((caregiver_id, "caregiver") for caregiver_id in schedule.caregiver_ids)
            metrics.caregiver_notifications_total.inc(len(schedule.caregiver_ids))

        for recipient_id, audience in recipients:
            self.queue.enqueue(
                DELIVERY_TASK,
                {
                    "recipient_id": recipient_id,
                    "audience": audience,
                    "channels": list(rule.channels),
                    "priority": rule.level.priority,
                    "payload": {**content, "audience": audience},
                },
            )

    def _call(self, fn: Callable, *args):
        """Run a collaborator call with a bounded wait."""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.call_timeout)
        except FuturesTimeout:
            future.cancel()
            raise ExternalCallTimeout(
                f"{getattr(fn, '__qualname__', fn)} did not answer within {self.call_timeout}s"
            )

    def _record_times(
        self,
        schedule_id: str,
        last_reminder_at: Optional[datetime] = None,
        next_reminder_at: Optional[datetime] = None,
    ) -> None:
        # Advisory only: the queue is authoritative, so a failed write never blocks scheduling
        try:
            self.repository.record_reminder_times(
                schedule_id, last_reminder_at=last_reminder_at, next_reminder_at=next_reminder_at
            )
        except Exception as e:
            logger.warning(f"[Scheduler] Could not record reminder times for {schedule_id}: {e!r}")
