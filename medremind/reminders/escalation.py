"""
Escalation state machine and its per-key atomic state stores
"""
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional
import logging
import threading

import redis

from medremind.utils.timezone import to_utc_aware, utc_now
from . import metrics
from .escalation_models import (
    EscalationRule,
    EscalationState,
    EscalationStats,
    ResolutionReason,
    escalation_key,
)

logger = logging.getLogger(__name__)

# Receives a private copy of the current state (or None) and returns the state
# to write, or None to leave the stored value untouched. May run more than once.
Mutator = Callable[[Optional[EscalationState]], Optional[EscalationState]]


class EscalationStore(ABC):
    """Key-value store with an atomic read-modify-write per key"""

    @abstractmethod
    def get(self, key: str) -> Optional[EscalationState]:
        ...

    @abstractmethod
    def update(self, key: str, mutate: Mutator) -> Optional[EscalationState]:
        """Apply ``mutate`` atomically and return the resulting state."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def items(self) -> Iterator[EscalationState]:
        ...


class InMemoryEscalationStore(EscalationStore):
    """Single-process store: one lock per key, copies in and out"""

    def __init__(self):
        self._states: Dict[str, EscalationState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def get(self, key: str) -> Optional[EscalationState]:
        state = self._states.get(key)
        return replace(state) if state else None

    def update(self, key: str, mutate: Mutator) -> Optional[EscalationState]:
        with self._lock_for(key):
            current = self._states.get(key)
            updated = mutate(replace(current) if current else None)
            if updated is not None:
                self._states[key] = updated
                return replace(updated)
            return replace(current) if current else None

    def delete(self, key: str) -> None:
        # The lock entry stays: a waiter may still hold a reference to it
        with self._lock_for(key):
            self._states.pop(key, None)

    def items(self) -> Iterator[EscalationState]:
        for state in list(self._states.values()):
            yield replace(state)


class RedisEscalationStore(EscalationStore):
    """Shared store for multi-worker deployments.

    Updates are WATCH/MULTI compare-and-swap transactions, so concurrent
    ``advance`` and ``resolve`` calls on one key serialize. Every write sets a
    TTL: resolved states live for the retention window, unresolved ones until
    they go stale.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "medremind:escalation",
        retention_seconds: int = 900,
        stale_seconds: int = 86400,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.retention_seconds = retention_seconds
        self.stale_seconds = stale_seconds

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[EscalationState]:
        raw = self.redis.get(self._key(key))
        return EscalationState.from_json(raw) if raw else None

    def update(self, key: str, mutate: Mutator) -> Optional[EscalationState]:
        redis_key = self._key(key)

        def _txn(pipe):
            raw = pipe.get(redis_key)
            current = EscalationState.from_json(raw) if raw else None
            updated = mutate(EscalationState.from_json(raw) if raw else None)
            pipe.multi()
            if updated is None:
                return current
            ttl = self.retention_seconds if updated.is_resolved else self.stale_seconds
            pipe.set(redis_key, updated.to_json(), ex=ttl)
            return updated

        return self.redis.transaction(_txn, redis_key, value_from_callable=True)

    def delete(self, key: str) -> None:
        self.redis.delete(self._key(key))

    def items(self) -> Iterator[EscalationState]:
        for redis_key in self.redis.scan_iter(match=f"{self.prefix}:*", count=500):
            raw = self.redis.get(redis_key)
            if raw:
                yield EscalationState.from_json(raw)


class EscalationStateMachine:
    """Per-dose escalation ladder progression.

    ``start`` opens a state at the ladder's first level, ``advance`` consumes one
    attempt and climbs the ladder when a level's attempts are used up, and
    ``resolve`` closes the state for good. Resolution is terminal: once a state
    is resolved every later ``advance`` is a no-op, whichever path the two calls
    arrived on.
    """

    def __init__(
        self,
        store: EscalationStore,
        clock: Callable[[], datetime] = utc_now,
        retention: timedelta = timedelta(minutes=15),
        stale_after: timedelta = timedelta(days=1),
    ):
        self.store = store
        self.clock = clock
        self.retention = retention
        self.stale_after = stale_after

    def start(
        self,
        schedule_id: str,
        dose_at: datetime,
        ladder: List[EscalationRule],
        user_id: Optional[str] = None,
    ) -> EscalationState:
        now = self.clock()
        created = False

        def _mutate(current):
            nonlocal created
            created = current is None
            if current is not None:
                return None
            return EscalationState(
                schedule_id=schedule_id,
                dose_at=to_utc_aware(dose_at),
                level=ladder[0].level,
                started_at=now,
                user_id=user_id,
            )

        state = self.store.update(escalation_key(schedule_id, dose_at), _mutate)
        if created:
            logger.info(f"[Escalation] Started {state.key} at {state.level.value}")
        else:
            logger.debug(f"[Escalation] {state.key} already started, reusing existing state")
        return state

    def advance(
        self,
        schedule_id: str,
        dose_at: datetime,
        ladder: List[EscalationRule],
        token: Optional[str] = None,
    ) -> Optional[EscalationState]:
        """Consume one attempt.

        ``token`` identifies the escalation check doing the advancing. A redelivery
        of the same check gets the stored state back without stepping again.
        """
        now = self.clock()
        outcome = None

        def _mutate(current):
            nonlocal outcome
            outcome = None
            if current is None or current.is_resolved:
                return None
            if token is not None and current.last_advance_token == token:
                outcome = "replayed"
                return None
            current.attempt_count += 1
            current.last_attempt_at = now
            current.last_advance_token = token
            rule = self.current_rule(current, ladder)
            if rule is None or current.attempt_count >= rule.max_attempts:
                nxt = self.next_rule(current, ladder)
                if nxt is None:
                    current.is_resolved = True
                    current.resolved_at = now
                    current.resolution = ResolutionReason.TIMEOUT
                    outcome = "timeout"
                else:
                    current.level = nxt.level
                    current.attempt_count = 0
                    outcome = "level"
            return current

        state = self.store.update(escalation_key(schedule_id, dose_at), _mutate)
        if state is None:
            logger.debug(f"[Escalation] No state for {escalation_key(schedule_id, dose_at)}, nothing to advance")
        elif outcome == "replayed":
            logger.info(f"[Escalation] {state.key} already advanced by {token}, keeping {state.level.value}")
        elif outcome == "level":
            logger.info(f"[Escalation] Advanced {state.key} to level {state.level.value}")
            metrics.escalations_advanced_total.labels(level=state.level.value).inc()
        elif outcome == "timeout":
            logger.info(f"[Escalation] Ladder exhausted for {state.key}, resolved by timeout")
            metrics.escalations_resolved_total.labels(reason=ResolutionReason.TIMEOUT.value).inc()
        return state

    def resolve(
        self,
        schedule_id: str,
        dose_at: datetime,
        reason: ResolutionReason,
    ) -> Optional[EscalationState]:
        now = self.clock()
        changed = False

        def _mutate(current):
            nonlocal changed
            changed = False
            if current is None or current.is_resolved:
                return None
            current.is_resolved = True
            current.resolved_at = now
            current.resolution = reason
            changed = True
            return current

        state = self.store.update(escalation_key(schedule_id, dose_at), _mutate)
        if changed:
            logger.info(f"[Escalation] Resolved {state.key} by {reason.value}")
            metrics.escalations_resolved_total.labels(reason=reason.value).inc()
        return state

    def get_state(self, schedule_id: str, dose_at: datetime) -> Optional[EscalationState]:
        return self.store.get(escalation_key(schedule_id, dose_at))

    @staticmethod
    def current_rule(state: EscalationState, ladder: List[EscalationRule]) -> Optional[EscalationRule]:
        return next((r for r in ladder if r.level == state.level), None)

    @staticmethod
    def next_rule(state: EscalationState, ladder: List[EscalationRule]) -> Optional[EscalationRule]:
        # Ladders are strictly increasing, so the first higher rank is the next rung
        return next((r for r in ladder if r.level.rank > state.level.rank), None)

    def should_notify_caregiver(self, state: EscalationState, ladder: List[EscalationRule]) -> bool:
        rule = self.current_rule(state, ladder)
        return bool(rule and rule.notify_caregiver)

    def channels_for(self, state: EscalationState, ladder: List[EscalationRule]) -> List[str]:
        rule = self.current_rule(state, ladder)
        return list(rule.channels) if rule else ["push"]

    def time_until_next_escalation(
        self,
        state: EscalationState,
        ladder: List[EscalationRule],
        now: Optional[datetime] = None,
    ) -> Optional[timedelta]:
        if state.is_resolved:
            return None
        rule = self.current_rule(state, ladder)
        if rule is None:
            return None
        if state.attempt_count < rule.max_attempts:
            delay = rule.delay
        else:
            nxt = self.next_rule(state, ladder)
            if nxt is None:
                return None
            delay = nxt.delay
        anchor = state.last_attempt_at or state.started_at
        remaining = anchor + delay - (now or self.clock())
        return max(remaining, timedelta(0))

    def active_states(self, user_id: Optional[str] = None) -> List[EscalationState]:
        states = [s for s in self.store.items() if not s.is_resolved]
        if user_id:
            states = [s for s in states if s.user_id == user_id]
        return states

    def stats(self) -> EscalationStats:
        stats = EscalationStats()
        for state in self.store.items():
            if state.is_resolved:
                stats.resolved += 1
            else:
                stats.active += 1
                stats.by_level[state.level.value] += 1
        return stats

    def purge(self, now: Optional[datetime] = None) -> int:
        """Drop resolved states past retention and unresolved ones gone stale."""
        now = now or self.clock()
        purged = 0
        for state in list(self.store.items()):
            if state.is_resolved:
                expired = state.resolved_at is None or state.resolved_at <= now - self.retention
            else:
                expired = state.started_at <= now - self.stale_after
            if expired:
                self.store.delete(state.key)
                purged += 1
        if purged:
            logger.info(f"[Escalation] Purged {purged} escalation states")
        return purged
