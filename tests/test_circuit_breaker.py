"""Tests for the shared circuit breaker."""

import threading
import time

import pytest

from forgebox.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from forgebox.exceptions import CircuitOpenError, RateLimitExceeded, SandboxServiceError, SandboxTimeout
from forgebox.models import BreakerState, TelemetryEvent
from forgebox.store import MemoryStateStore, SqlStateStore


def failing():
    raise SandboxServiceError("upstream 503", status_code=503)


def trip(breaker, times=5):
    for _ in range(times):
        with pytest.raises(SandboxServiceError):
            breaker.execute(failing)


class TestClosedState:
    def test_passes_calls_through(self, breaker):
        assert breaker.execute(lambda x: x * 2, 21) == 42
        assert breaker.state().state == BreakerState.CLOSED

    def test_opens_after_threshold_consecutive_failures(self, breaker):
        trip(breaker, times=4)
        assert breaker.state().state == BreakerState.CLOSED

        trip(breaker, times=1)

        record = breaker.state()
        assert record.state == BreakerState.OPEN
        assert record.consecutive_failures == 5

    def test_success_resets_failure_count(self, breaker):
        trip(breaker, times=4)
        breaker.execute(lambda: None)
        trip(breaker, times=4)
        assert breaker.state().state == BreakerState.CLOSED

    def test_non_upstream_errors_do_not_count(self, breaker):
        for _ in range(10):
            with pytest.raises(SandboxTimeout):
                breaker.execute(self._timeout)
        assert breaker.state().consecutive_failures == 0

    @staticmethod
    def _timeout():
        raise SandboxTimeout("npm run build", 120)


class TestOpenState:
    def test_rejects_without_calling_operation(self, breaker, clock):
        trip(breaker)
        calls = []

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.execute(lambda: calls.append(1), operation_type="sandbox_create")

        assert calls == []
        assert exc_info.value.operation_type == "sandbox_create"
        assert exc_info.value.retry_after == pytest.approx(60)

    def test_ensure_available_raises_while_open(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.ensure_available()
        assert exc_info.value.retry_after == pytest.approx(30)

    def test_reports_half_open_after_cooldown(self, breaker, clock):
        trip(breaker)
        clock.advance(60)
        assert breaker.state().state == BreakerState.HALF_OPEN
        assert not breaker.is_open()


class TestHalfOpenProbe:
    def test_successful_probe_closes_circuit(self, breaker, clock):
        trip(breaker)
        clock.advance(60)

        assert breaker.execute(lambda: "ok") == "ok"

        record = breaker.state()
        assert record.state == BreakerState.CLOSED
        assert record.consecutive_failures == 0
        assert record.cooldown_seconds == 60

    def test_failed_probe_reopens_with_backoff(self, breaker, clock):
        trip(breaker)
        clock.advance(60)

        with pytest.raises(SandboxServiceError):
            breaker.execute(failing)

        record = breaker.state()
        assert record.state == BreakerState.OPEN
        assert record.cooldown_seconds == 120
        assert record.next_probe_at == pytest.approx(clock.now + 120)

    def test_backoff_is_capped(self, store, clock):
        breaker = CircuitBreaker(
            "sandbox",
            store,
            CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=60, max_cooldown_seconds=200),
            clock=clock,
        )
        trip(breaker, times=1)
        for _ in range(4):
            clock.advance(breaker.state().cooldown_seconds)
            with pytest.raises(SandboxServiceError):
                breaker.execute(failing)
        assert breaker.state().cooldown_seconds == 200

    def test_second_caller_rejected_while_probe_in_flight(self, breaker, clock):
        trip(breaker)
        clock.advance(60)
        inner_errors = []

        def probe():
            try:
                breaker.execute(lambda: None)
            except CircuitOpenError as e:
                inner_errors.append(e)
            return "probe"

        assert breaker.execute(probe) == "probe"
        assert len(inner_errors) == 1
        assert breaker.state().state == BreakerState.CLOSED

    def test_non_counted_error_releases_probe(self, breaker, clock):
        trip(breaker)
        clock.advance(60)

        with pytest.raises(ValueError):
            breaker.execute(self._bad_input)

        record = breaker.state()
        assert record.state == BreakerState.HALF_OPEN
        assert not record.probe_in_flight
        assert breaker.execute(lambda: "next probe") == "next probe"

    @staticmethod
    def _bad_input():
        raise ValueError("bad input")

    def test_abandoned_probe_lease_expires(self, store, clock):
        breaker = CircuitBreaker(
            "sandbox", store, CircuitBreakerConfig(probe_timeout_seconds=300), clock=clock
        )
        trip(breaker)
        clock.advance(60)
        # Simulate a probe whose process died after claiming
        breaker._admit("sandbox_command")
        with pytest.raises(CircuitOpenError):
            breaker.execute(lambda: None)

        clock.advance(300)

        assert breaker.execute(lambda: "recovered") == "recovered"

    def test_exactly_one_concurrent_probe(self, clock):
        store = MemoryStateStore()
        breaker = CircuitBreaker("sandbox", store, CircuitBreakerConfig(failure_threshold=1), clock=clock)
        trip(breaker, times=1)
        clock.advance(60)

        admitted = []
        rejected = []
        barrier = threading.Barrier(10)
        release = threading.Event()

        def slow_probe():
            admitted.append(1)
            release.wait(timeout=5)

        def caller():
            barrier.wait()
            try:
                breaker.execute(slow_probe)
            except CircuitOpenError:
                rejected.append(1)

        threads = [threading.Thread(target=caller) for _ in range(10)]
        for t in threads:
            t.start()
        deadline = time.monotonic() + 5
        while len(rejected) < 9 and time.monotonic() < deadline:
            time.sleep(0.01)
        release.set()
        for t in threads:
            t.join()

        assert len(admitted) == 1
        assert len(rejected) == 9
        assert breaker.state().state == BreakerState.CLOSED


class TestGuard:
    def test_upstream_failures_in_block_are_counted(self, breaker):
        for _ in range(5):
            with pytest.raises(SandboxServiceError):
                with breaker.guard("sandbox_create"):
                    failing()

        assert breaker.state().state == BreakerState.OPEN

    def test_rejected_caller_never_enters_block(self, breaker):
        trip(breaker)
        entered = []

        with pytest.raises(CircuitOpenError):
            with breaker.guard("sandbox_create"):
                entered.append(1)

        assert entered == []

    def test_admission_denial_in_block_frees_half_open_slot(self, breaker, clock):
        trip(breaker)
        clock.advance(60)

        with pytest.raises(RateLimitExceeded):
            with breaker.guard("sandbox_create"):
                raise RateLimitExceeded("sandbox_create", 30.0)

        record = breaker.state()
        assert record.state == BreakerState.HALF_OPEN
        assert not record.probe_in_flight


class TestSharedState:
    def test_breaker_state_shared_through_database(self, session_factory, clock):
        config = CircuitBreakerConfig(failure_threshold=2)
        replica_a = CircuitBreaker("sandbox", SqlStateStore(session_factory), config, clock=clock)
        replica_b = CircuitBreaker("sandbox", SqlStateStore(session_factory), config, clock=clock)

        trip(replica_a, times=1)
        trip(replica_b, times=1)

        with pytest.raises(CircuitOpenError):
            replica_a.execute(lambda: None)
        assert replica_b.is_open()

    def test_reset_closes_circuit(self, breaker):
        trip(breaker)
        breaker.reset()
        assert breaker.state().state == BreakerState.CLOSED
        assert breaker.execute(lambda: 1) == 1

    def test_transitions_emit_telemetry(self, breaker, clock, session_factory):
        trip(breaker)
        clock.advance(60)
        breaker.execute(lambda: None)

        db = session_factory()
        try:
            events = [e.event for e in db.query(TelemetryEvent).filter(TelemetryEvent.stage == "circuit_breaker")]
        finally:
            db.close()
        assert events == ["transition_open", "transition_half_open", "transition_closed"]

    def test_snapshot_shape(self, breaker):
        snapshot = breaker.snapshot()
        assert snapshot["name"] == "sandbox"
        assert snapshot["state"] == "CLOSED"
        assert snapshot["probe_in_flight"] is False
