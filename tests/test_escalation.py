from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from medremind.reminders.escalation import (
    EscalationStateMachine,
    InMemoryEscalationStore,
    RedisEscalationStore,
)
from medremind.reminders.escalation_models import (
    EscalationLevel,
    EscalationRule,
    ResolutionReason,
    default_escalation_rules,
)

DOSE = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def rule(level, minutes, attempts, caregiver=False, channels=("push",)):
    return EscalationRule(level, timedelta(minutes=minutes), attempts, caregiver, tuple(channels))


LADDER = [
    rule(EscalationLevel.GENTLE, 0, 1),
    rule(EscalationLevel.REPEAT, 15, 2),
    rule(EscalationLevel.SMS, 30, 1, caregiver=True, channels=("push", "sms")),
]


@pytest.fixture(params=["memory", "redis"])
def machine(request, clock, fake_redis):
    if request.param == "memory":
        store = InMemoryEscalationStore()
    else:
        store = RedisEscalationStore(fake_redis)
    return EscalationStateMachine(store, clock=clock)


def test_start_creates_state_at_first_level(machine, clock):
    state = machine.start("s1", DOSE, LADDER, user_id="u1")
    assert state.level == EscalationLevel.GENTLE
    assert state.attempt_count == 0
    assert state.is_resolved is False
    assert state.started_at == clock()
    assert state.user_id == "u1"


def test_start_is_idempotent(machine, clock):
    first = machine.start("s1", DOSE, LADDER)
    clock.advance(minutes=5)
    second = machine.start("s1", DOSE, LADDER)
    assert second == first
    assert len(machine.active_states()) == 1


def test_advance_climbs_ladder_and_times_out(machine):
    machine.start("s1", DOSE, LADDER)
    levels = []
    state = None
    for _ in range(10):
        state = machine.advance("s1", DOSE, LADDER)
        levels.append(state.level.rank)
        if state.is_resolved:
            break
    assert levels == sorted(levels)
    assert state.is_resolved
    assert state.resolution == ResolutionReason.TIMEOUT
    # GENTLE x1, REPEAT x2, SMS x1
    assert len(levels) == 4


def test_advance_resets_attempts_on_level_change(machine):
    machine.start("s1", DOSE, LADDER)
    state = machine.advance("s1", DOSE, LADDER)
    assert state.level == EscalationLevel.REPEAT
    assert state.attempt_count == 0
    state = machine.advance("s1", DOSE, LADDER)
    assert state.level == EscalationLevel.REPEAT
    assert state.attempt_count == 1


def test_resolve_stops_advancement(machine, clock):
    machine.start("s1", DOSE, LADDER)
    machine.advance("s1", DOSE, LADDER)
    resolved = machine.resolve("s1", DOSE, ResolutionReason.TAKEN)
    clock.advance(minutes=30)
    for _ in range(5):
        state = machine.advance("s1", DOSE, LADDER)
        assert state.level == resolved.level
        assert state.resolved_at == resolved.resolved_at
        assert state.resolution == ResolutionReason.TAKEN


def test_resolve_keeps_first_resolution(machine, clock):
    machine.start("s1", DOSE, LADDER)
    first = machine.resolve("s1", DOSE, ResolutionReason.SKIPPED)
    clock.advance(minutes=1)
    second = machine.resolve("s1", DOSE, ResolutionReason.TAKEN)
    assert second.resolution == ResolutionReason.SKIPPED
    assert second.resolved_at == first.resolved_at


def test_missing_state_is_a_no_op(machine):
    assert machine.advance("missing", DOSE, LADDER) is None
    assert machine.resolve("missing", DOSE, ResolutionReason.TAKEN) is None
    assert machine.get_state("missing", DOSE) is None


def test_level_removed_from_ladder_moves_to_next_higher(machine):
    machine.start("s1", DOSE, default_escalation_rules())
    assert machine.advance("s1", DOSE, default_escalation_rules()).level == EscalationLevel.REPEAT
    shorter = [LADDER[0], LADDER[2]]
    state = machine.advance("s1", DOSE, shorter)
    assert state.level == EscalationLevel.SMS


def test_query_helpers(machine, clock):
    state = machine.start("s1", DOSE, LADDER)
    assert machine.current_rule(state, LADDER) == LADDER[0]
    assert machine.next_rule(state, LADDER) == LADDER[1]
    assert machine.should_notify_caregiver(state, LADDER) is False
    assert machine.channels_for(state, LADDER) == ["push"]

    state = machine.advance("s1", DOSE, LADDER)
    state = machine.advance("s1", DOSE, LADDER)
    state = machine.advance("s1", DOSE, LADDER)
    assert state.level == EscalationLevel.SMS
    assert machine.next_rule(state, LADDER) is None
    assert machine.should_notify_caregiver(state, LADDER) is True
    assert machine.channels_for(state, LADDER) == ["push", "sms"]


def test_time_until_next_escalation(machine, clock):
    state = machine.start("s1", DOSE, LADDER)
    assert machine.time_until_next_escalation(state, LADDER) == timedelta(0)

    state = machine.advance("s1", DOSE, LADDER)
    clock.advance(minutes=5)
    assert machine.time_until_next_escalation(state, LADDER) == timedelta(minutes=10)

    resolved = machine.resolve("s1", DOSE, ResolutionReason.TAKEN)
    assert machine.time_until_next_escalation(resolved, LADDER) is None


def test_time_until_next_escalation_none_at_ladder_end(machine):
    machine.start("s1", DOSE, LADDER)
    for _ in range(3):
        state = machine.advance("s1", DOSE, LADDER)
    assert state.level == EscalationLevel.SMS
    state.attempt_count = 1
    assert machine.time_until_next_escalation(state, LADDER) is None


def test_stats_and_active_states(machine):
    machine.start("s1", DOSE, LADDER, user_id="u1")
    machine.start("s2", DOSE, LADDER, user_id="u2")
    machine.advance("s2", DOSE, LADDER)
    machine.start("s3", DOSE, LADDER, user_id="u1")
    machine.resolve("s3", DOSE, ResolutionReason.TAKEN)

    stats = machine.stats()
    assert stats.active == 2
    assert stats.resolved == 1
    assert stats.by_level["gentle"] == 1
    assert stats.by_level["repeat"] == 1
    assert [s.schedule_id for s in machine.active_states(user_id="u1")] == ["s1"]


def test_purge_respects_retention(machine, clock):
    machine.start("s1", DOSE, LADDER)
    machine.resolve("s1", DOSE, ResolutionReason.TAKEN)
    machine.start("s2", DOSE, LADDER)

    clock.advance(minutes=10)
    assert machine.purge() == 0
    clock.advance(minutes=6)
    assert machine.purge() == 1
    assert machine.get_state("s1", DOSE) is None
    assert machine.get_state("s2", DOSE) is not None

    clock.advance(days=1)
    assert machine.purge() == 1
    assert machine.get_state("s2", DOSE) is None


def test_concurrent_resolve_and_advance_resolution_wins(machine):
    ladder = [rule(EscalationLevel.GENTLE, 0, 1000)]
    machine.start("s1", DOSE, ladder)

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(machine.advance, "s1", DOSE, ladder) for _ in range(200)]
        futures.append(pool.submit(machine.resolve, "s1", DOSE, ResolutionReason.TAKEN))
        futures += [pool.submit(machine.advance, "s1", DOSE, ladder) for _ in range(200)]
        for f in futures:
            f.result()

    state = machine.get_state("s1", DOSE)
    assert state.is_resolved
    assert state.resolution == ResolutionReason.TAKEN
    count_at_resolution = state.attempt_count
    machine.advance("s1", DOSE, ladder)
    assert machine.get_state("s1", DOSE).attempt_count == count_at_resolution


def test_redis_store_sets_ttls(fake_redis, clock):
    store = RedisEscalationStore(fake_redis, retention_seconds=900, stale_seconds=86400)
    machine = EscalationStateMachine(store, clock=clock)
    state = machine.start("s1", DOSE, LADDER)
    redis_key = f"{store.prefix}:{state.key}"
    assert 0 < fake_redis.ttl(redis_key) <= 86400

    machine.resolve("s1", DOSE, ResolutionReason.TAKEN)
    assert 0 < fake_redis.ttl(redis_key) <= 900


def test_concurrent_advances_are_not_lost(machine):
    ladder = [rule(EscalationLevel.GENTLE, 0, 1000)]
    machine.start("s1", DOSE, ladder)

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(machine.advance, "s1", DOSE, ladder, f"check-{i}") for i in range(50)]
        for f in futures:
            f.result()

    assert machine.get_state("s1", DOSE).attempt_count == 50


def test_advance_with_same_token_steps_once(machine):
    machine.start("s1", DOSE, LADDER)
    machine.advance("s1", DOSE, LADDER, token="check-1")
    first = machine.advance("s1", DOSE, LADDER, token="check-2")
    assert (first.level, first.attempt_count) == (EscalationLevel.REPEAT, 1)

    again = machine.advance("s1", DOSE, LADDER, token="check-2")
    assert again == first
    assert machine.get_state("s1", DOSE).last_advance_token == "check-2"

    after = machine.advance("s1", DOSE, LADDER, token="check-3")
    assert after.level == EscalationLevel.SMS


def test_delete_keeps_lock_for_waiting_writers(clock):
    store = InMemoryEscalationStore()
    machine = EscalationStateMachine(store, clock=clock)
    state = machine.start("s1", DOSE, LADDER)
    lock = store._lock_for(state.key)

    store.delete(state.key)

    assert store._lock_for(state.key) is lock
    assert store.get(state.key) is None
