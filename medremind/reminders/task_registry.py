"""
Identity, cancellation and bookkeeping for durable delayed reminder tasks

The broker only knows how to deliver messages later. This registry is what makes
those messages idempotent and cancellable:

- every pending task has a deterministic key (kind, schedule, dose instant) and a
  unique token that doubles as the Celery task id; registering a key that is
  already pending is a no-op
- a worker must ``claim`` a token before running it; cancelled or duplicate
  messages fail the claim and are dropped
- ``cancel_schedule`` bumps the schedule's generation, and tasks enqueued under an
  older generation can no longer register successors
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
import json
import logging
import uuid

import redis

from medremind.utils.timezone import instant_token, to_utc_aware

logger = logging.getLogger(__name__)


class TaskKind(Enum):
    FIRE_REMINDER = "fire_reminder"
    ADVANCE_ESCALATION = "advance_escalation"


def build_task_key(kind: TaskKind, schedule_id: str, dose_at: datetime) -> str:
    return f"{kind.value}:{schedule_id}:{instant_token(dose_at)}"


@dataclass(frozen=True)
class RegisteredTask:
    key: str
    token: str
    generation: int


@dataclass
class QueueCounts:
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "delayed": self.delayed,
            "completed": self.completed,
            "failed": self.failed,
        }


class TaskRegistry:
    """Redis-backed registry of pending and running scheduled tasks"""

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "medremind:tasks",
        pending_grace_seconds: int = 86400,
        run_ttl_seconds: int = 86400,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.pending_grace_seconds = pending_grace_seconds
        self.run_ttl_seconds = run_ttl_seconds

    # Redis key layout
    def _generation_key(self, schedule_id: str) -> str:
        return f"{self.prefix}:gen:{schedule_id}"

    def _entry_key(self, task_key: str) -> str:
        return f"{self.prefix}:pending:{task_key}"

    def _schedule_set(self, schedule_id: str) -> str:
        return f"{self.prefix}:schedule:{schedule_id}"

    def _pending_index(self, kind: TaskKind) -> str:
        return f"{self.prefix}:eta:{kind.value}"

    def _run_key(self, token: str) -> str:
        return f"{self.prefix}:run:{token}"

    def _active_set(self, kind: TaskKind) -> str:
        return f"{self.prefix}:active:{kind.value}"

    def _counter(self, kind: TaskKind, outcome: str) -> str:
        return f"{self.prefix}:{outcome}:{kind.value}"

    def current_generation(self, schedule_id: str) -> int:
        return int(self.redis.get(self._generation_key(schedule_id)) or 0)

    def register(
        self,
        kind: TaskKind,
        schedule_id: str,
        dose_at: datetime,
        eta: datetime,
        generation: Optional[int] = None,
    ) -> Optional[RegisteredTask]:
        """Reserve a pending task slot.

        Returns None when the key is already pending, or when ``generation`` is
        given and the schedule has since been cancelled.
        """
        task_key = build_task_key(kind, schedule_id, dose_at)
        gen_key = self._generation_key(schedule_id)
        entry_key = self._entry_key(task_key)
        token = str(uuid.uuid4())
        eta = to_utc_aware(eta)

        def _txn(pipe):
            current = int(pipe.get(gen_key) or 0)
            if generation is not None and generation != current:
                logger.info(
                    f"[Registry] Not registering {task_key}: generation {generation} superseded by {current}"
                )
                return None
            if pipe.exists(entry_key):
                logger.debug(f"[Registry] {task_key} already pending")
                return None
            entry = {
                "token": token,
                "key": task_key,
                "kind": kind.value,
                "schedule_id": schedule_id,
                "generation": current,
                "eta": eta.isoformat(),
            }
            pipe.multi()
            pipe.set(entry_key, json.dumps(entry), ex=self._pending_ttl(eta))
            pipe.sadd(self._schedule_set(schedule_id), task_key)
            pipe.zadd(self._pending_index(kind), {task_key: eta.timestamp()})
            return RegisteredTask(key=task_key, token=token, generation=current)

        return self.redis.transaction(_txn, gen_key, entry_key, value_from_callable=True)

    def _pending_ttl(self, eta: datetime) -> int:
        now_ts = datetime.now(eta.tzinfo).timestamp()
        return max(int(eta.timestamp() - now_ts), 0) + self.pending_grace_seconds

    def claim(self, kind: TaskKind, task_key: str, token: str) -> bool:
        """Move a pending task to running. False means drop the message."""
        entry_key = self._entry_key(task_key)
        run_key = self._run_key(token)

        def _txn(pipe):
            if pipe.exists(run_key):
                # Retry or redelivery of a task this registry already handed out
                return True
            raw = pipe.get(entry_key)
            if not raw:
                return False
            entry = json.loads(raw)
            if entry.get("token") != token:
                return False
            pipe.multi()
            pipe.delete(entry_key)
            pipe.srem(self._schedule_set(entry["schedule_id"]), task_key)
            pipe.zrem(self._pending_index(kind), task_key)
            pipe.set(run_key, raw, ex=self.run_ttl_seconds)
            pipe.sadd(self._active_set(kind), token)
            return True

        return self.redis.transaction(_txn, entry_key, run_key, value_from_callable=True)

    def finish(self, kind: TaskKind, token: str, succeeded: bool = True) -> None:
        outcome = "completed" if succeeded else "failed"
        pipe = self.redis.pipeline()
        pipe.delete(self._run_key(token))
        pipe.srem(self._active_set(kind), token)
        pipe.incr(self._counter(kind, outcome))
        pipe.execute()

    def cancel_schedule(self, schedule_id: str) -> List[str]:
        """Drop every pending task of a schedule; returns their tokens for revocation."""
        gen_key = self._generation_key(schedule_id)
        schedule_set = self._schedule_set(schedule_id)

        def _txn(pipe):
            task_keys = pipe.smembers(schedule_set)
            tokens = []
            for task_key in task_keys:
                raw = pipe.get(self._entry_key(task_key))
                if raw:
                    tokens.append(json.loads(raw)["token"])
            pipe.multi()
            pipe.incr(gen_key)
            for task_key in task_keys:
                pipe.delete(self._entry_key(task_key))
                for kind in TaskKind:
                    pipe.zrem(self._pending_index(kind), task_key)
            pipe.delete(schedule_set)
            return tokens

        return self.redis.transaction(_txn, gen_key, schedule_set, value_from_callable=True)

    def cancel_task(self, kind: TaskKind, schedule_id: str, dose_at: datetime) -> Optional[str]:
        """Drop a single pending task; returns its token if one was pending."""
        task_key = build_task_key(kind, schedule_id, dose_at)
        entry_key = self._entry_key(task_key)

        def _txn(pipe):
            raw = pipe.get(entry_key)
            if not raw:
                return None
            pipe.multi()
            pipe.delete(entry_key)
            pipe.srem(self._schedule_set(schedule_id), task_key)
            pipe.zrem(self._pending_index(kind), task_key)
            return json.loads(raw)["token"]

        return self.redis.transaction(_txn, entry_key, value_from_callable=True)

    def pending_keys(self, schedule_id: str) -> List[str]:
        return sorted(self.redis.smembers(self._schedule_set(schedule_id)))

    def counts(self, kind: TaskKind, now: datetime) -> QueueCounts:
        now_ts = to_utc_aware(now).timestamp()
        index = self._pending_index(kind)
        pipe = self.redis.pipeline()
        pipe.zcount(index, "-inf", now_ts)
        pipe.zcount(index, f"({now_ts}", "+inf")
        pipe.scard(self._active_set(kind))
        pipe.get(self._counter(kind, "completed"))
        pipe.get(self._counter(kind, "failed"))
        waiting, delayed, active, completed, failed = pipe.execute()
        return QueueCounts(
            waiting=int(waiting),
            active=int(active),
            delayed=int(delayed),
            completed=int(completed or 0),
            failed=int(failed or 0),
        )
