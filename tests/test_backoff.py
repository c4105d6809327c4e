from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from jobwarden import backoff
from jobwarden.backoff import RetryPolicy, RetryState
from jobwarden.notify import Event

UTC = timezone.utc
T0 = datetime(2024, 9, 1, 12, 0, tzinfo=UTC)


class MemoryStore:
    def __init__(self) -> None:
        self.states: Dict[str, RetryState] = {}

    def get_retry_state(self, key: str) -> Optional[RetryState]:
        return self.states.get(key)

    def put_retry_state(self, state: RetryState) -> None:
        self.states[state.key] = state

    def delete_retry_state(self, key: str) -> bool:
        return self.states.pop(key, None) is not None


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[Event] = []

    def emit(self, event: Event) -> None:
        self.events.append(event)


def _policy(store: MemoryStore, sink: Optional[RecordingSink] = None) -> RetryPolicy:
    return RetryPolicy(store, sink, base_seconds=60, max_seconds=3600, clock=lambda: T0)


def test_backoff_doubles_and_caps() -> None:
    assert backoff.backoff_seconds(0) == 0
    assert [backoff.backoff_seconds(n) for n in range(1, 8)] == [60, 120, 240, 480, 960, 1920, 3600]
    assert backoff.backoff_seconds(40) == 3600
    assert backoff.backoff_seconds(3, base_seconds=1, max_seconds=3) == 3


def test_escalation_tiers() -> None:
    assert [backoff.escalation_tier(n) for n in (1, 2, 3, 4, 5, 9)] == [
        "retry",
        "retry",
        "warn",
        "warn",
        "blocked",
        "blocked",
    ]


def test_failure_key_is_stable_hex() -> None:
    key = backoff.failure_key("job:a\ncommand:true")
    assert key == backoff.failure_key("job:a\ncommand:true")
    assert key != backoff.failure_key("job:b\ncommand:true")
    assert len(key) == 64
    int(key, 16)


def test_unknown_key_may_run() -> None:
    assert _policy(MemoryStore()).should_retry("nothing-yet", T0) == (True, 0.0)


def test_failure_delays_next_attempt() -> None:
    store = MemoryStore()
    policy = _policy(store)
    assert policy.record_failure("k", "exit status 1", now=T0) == "retry"

    allowed, remaining = policy.should_retry("k", T0 + timedelta(seconds=15))
    assert allowed is False
    assert remaining == 45.0
    assert policy.should_retry("k", T0 + timedelta(seconds=60)) == (True, 0.0)

    policy.record_failure("k", "exit status 1", now=T0)
    assert policy.should_retry("k", T0 + timedelta(seconds=100))[0] is False
    assert policy.should_retry("k", T0 + timedelta(seconds=120))[0] is True


def test_blocked_after_five_failures_until_cleared() -> None:
    store = MemoryStore()
    sink = RecordingSink()
    policy = _policy(store, sink)
    tiers = [policy.record_failure("k", f"boom {n}", label="job nightly", now=T0) for n in range(5)]
    assert tiers == ["retry", "retry", "warn", "warn", "blocked"]

    far_future = T0 + timedelta(days=30)
    assert policy.should_retry("k", far_future) == (False, None)
    assert sink.events[-1].level == "CRITICAL"
    assert "blocked" in sink.events[-1].message
    assert sink.events[-1].metadata["failures"] == 5

    assert policy.clear("k") is True
    assert policy.should_retry("k", far_future) == (True, 0.0)
    assert policy.clear("k") is False


def test_success_resets_and_emits_recovery() -> None:
    store = MemoryStore()
    sink = RecordingSink()
    policy = _policy(store, sink)
    policy.record_failure("k", "exit status 2", label="job x", job_name="x", now=T0)
    assert policy.state("k").failures == 1

    assert policy.record_success("k", job_name="x") is True
    assert policy.state("k") is None
    assert sink.events[-1].event_type == "failure.recovered"
    assert sink.events[-1].job_name == "x"
    assert policy.record_success("k") is False


def test_retry_state_round_trips_through_dict() -> None:
    state = RetryState(key="k", failures=3, last_attempt=T0, last_error="exit 1", label="job a")
    restored = RetryState.from_dict(state.to_dict())
    assert restored == state
    assert restored.tier == "warn"
