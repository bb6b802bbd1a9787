"""Circuit Breaker Pattern Implementation.

Guards calls to the sandbox service. State lives in the shared state store
so every API replica and sweep worker sees the same breaker:

- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are rejected with CircuitOpenError until the cooldown elapses
- HALF_OPEN: exactly one caller (the probe) is let through to test recovery

Probe admission is an atomic claim (compare-and-set on ``probe_in_flight``),
so concurrent callers at the cooldown boundary cannot both become probes.
A failed probe reopens the circuit with a longer cooldown. A probe whose
process dies is recovered once its lease (``probe_timeout_seconds``) expires.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Type

from prometheus_client import Counter, Gauge

from .exceptions import CircuitOpenError, SandboxServiceError
from .models import BreakerState
from .store.base import BreakerRecord, StateStore

logger = logging.getLogger(__name__)

BREAKER_STATE = Gauge(
    "forgebox_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["name"],
)
BREAKER_REJECTED = Counter(
    "forgebox_circuit_breaker_rejected_total",
    "Calls short-circuited by the breaker",
    ["name"],
)
BREAKER_TRANSITIONS = Counter(
    "forgebox_circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    ["name", "from_state", "to_state"],
)

_STATE_GAUGE_VALUES = {BreakerState.CLOSED: 0, BreakerState.OPEN: 1, BreakerState.HALF_OPEN: 2}

MAX_CAS_RETRIES = 32


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0
    max_cooldown_seconds: float = 900.0
    backoff_multiplier: float = 2.0
    probe_timeout_seconds: float = 300.0
    # Only these exceptions count as upstream failures
    failure_exceptions: Tuple[Type[BaseException], ...] = (SandboxServiceError,)


class CircuitBreaker:
    """Shared circuit breaker for one upstream dependency.

    Example:
        breaker = CircuitBreaker("sandbox", store, CircuitBreakerConfig(failure_threshold=5))
        handle = breaker.execute(service.create, template)
    """

    def __init__(
        self,
        name: str,
        store: StateStore,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
        telemetry=None,
    ):
        self.name = name
        self.store = store
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.telemetry = telemetry

    # -- state access -------------------------------------------------------

    def _load(self) -> BreakerRecord:
        record = self.store.get_breaker(self.name)
        if record is None:
            return BreakerRecord(name=self.name, cooldown_seconds=self.config.cooldown_seconds)
        return record

    def _update(self, change: Callable[[BreakerRecord, float], Optional[BreakerRecord]]):
        """Apply ``change`` atomically; ``change`` returning None means no write."""
        for _ in range(MAX_CAS_RETRIES):
            current = self._load()
            new = change(current, self.clock())
            if new is None:
                return current, None
            if self.store.cas_breaker(new, current.version):
                if new.state != current.state:
                    self._on_transition(current.state, new.state, new)
                return current, new
        logger.warning(f"[CircuitBreaker] '{self.name}': gave up after {MAX_CAS_RETRIES} CAS conflicts")
        return None, None

    def _on_transition(self, from_state: BreakerState, to_state: BreakerState, record: BreakerRecord):
        BREAKER_TRANSITIONS.labels(
            name=self.name, from_state=from_state.value, to_state=to_state.value
        ).inc()
        BREAKER_STATE.labels(name=self.name).set(_STATE_GAUGE_VALUES[to_state])
        logger.info(
            f"[CircuitBreaker] '{self.name}' {from_state.value} -> {to_state.value} "
            f"(failures={record.consecutive_failures}, cooldown={record.cooldown_seconds:.0f}s)"
        )
        if self.telemetry is not None:
            self.telemetry.emit(
                "circuit_breaker",
                f"transition_{to_state.value.lower()}",
                breaker=self.name,
                from_state=from_state.value,
                consecutive_failures=record.consecutive_failures,
            )

    def state(self) -> BreakerRecord:
        """Current state, reporting OPEN as HALF_OPEN once the cooldown has elapsed."""
        record = self._load()
        if record.state == BreakerState.OPEN and self._cooldown_elapsed(record, self.clock()):
            return record.evolve(state=BreakerState.HALF_OPEN)
        return record

    def snapshot(self) -> Dict[str, Any]:
        record = self.state()
        return {
            "name": record.name,
            "state": record.state.value,
            "consecutive_failures": record.consecutive_failures,
            "opened_at": record.opened_at,
            "next_probe_at": record.next_probe_at,
            "probe_in_flight": record.probe_in_flight,
            "cooldown_seconds": record.cooldown_seconds,
        }

    def is_open(self) -> bool:
        return self.state().state == BreakerState.OPEN

    # -- admission ----------------------------------------------------------

    @staticmethod
    def _cooldown_elapsed(record: BreakerRecord, now: float) -> bool:
        return record.next_probe_at is None or now >= record.next_probe_at

    def _probe_active(self, record: BreakerRecord, now: float) -> bool:
        if not record.probe_in_flight:
            return False
        started = record.probe_started_at or 0.0
        return now - started < self.config.probe_timeout_seconds

    def _reject(self, record: BreakerRecord, now: float, operation_type: str):
        if record.state == BreakerState.OPEN and record.next_probe_at is not None:
            retry_after = record.next_probe_at - now
        else:
            # A probe is running; callers should come back once it resolves
            retry_after = min(record.cooldown_seconds, self.config.probe_timeout_seconds)
        BREAKER_REJECTED.labels(name=self.name).inc()
        logger.warning(f"[CircuitBreaker] '{self.name}' is {record.state.value}, rejecting call")
        return CircuitOpenError(self.name, retry_after, operation_type=operation_type)

    def ensure_available(self, operation_type: str = "sandbox_command") -> None:
        """Raise CircuitOpenError if a call made now would be short-circuited.

        Does not claim the probe; :meth:`execute` still decides who probes.
        """
        record = self._load()
        now = self.clock()
        if record.state == BreakerState.CLOSED:
            return
        if record.state == BreakerState.OPEN and not self._cooldown_elapsed(record, now):
            raise self._reject(record, now, operation_type)
        if self._probe_active(record, now):
            raise self._reject(record, now, operation_type)

    def _admit(self, operation_type: str) -> Optional[float]:
        """Admit a call. Returns the probe start time if this caller is the probe."""
        rejection = []

        def claim(record: BreakerRecord, now: float) -> Optional[BreakerRecord]:
            rejection.clear()
            if record.state == BreakerState.CLOSED:
                return None
            if record.state == BreakerState.OPEN and not self._cooldown_elapsed(record, now):
                rejection.append(self._reject(record, now, operation_type))
                return None
            if self._probe_active(record, now):
                rejection.append(self._reject(record, now, operation_type))
                return None
            return record.evolve(
                state=BreakerState.HALF_OPEN, probe_in_flight=True, probe_started_at=now
            )

        current, new = self._update(claim)
        if rejection:
            raise rejection[0]
        if current is None:
            # CAS contention while claiming: treat as not admitted
            raise CircuitOpenError(self.name, 1.0, operation_type=operation_type)
        if new is None:
            return None
        logger.info(f"[CircuitBreaker] '{self.name}' admitted half-open probe")
        return new.probe_started_at

    # -- outcomes -----------------------------------------------------------

    def _record_success(self, probe_started_at: Optional[float]) -> None:
        def succeed(record: BreakerRecord, now: float) -> Optional[BreakerRecord]:
            if probe_started_at is not None:
                return record.evolve(
                    state=BreakerState.CLOSED,
                    consecutive_failures=0,
                    opened_at=None,
                    next_probe_at=None,
                    probe_in_flight=False,
                    probe_started_at=None,
                    cooldown_seconds=self.config.cooldown_seconds,
                )
            if record.state == BreakerState.CLOSED and record.consecutive_failures:
                return record.evolve(consecutive_failures=0)
            return None

        self._update(succeed)

    def _record_failure(self, probe_started_at: Optional[float]) -> None:
        def fail(record: BreakerRecord, now: float) -> Optional[BreakerRecord]:
            failures = record.consecutive_failures + 1
            if probe_started_at is not None:
                cooldown = min(
                    record.cooldown_seconds * self.config.backoff_multiplier,
                    self.config.max_cooldown_seconds,
                )
                return record.evolve(
                    state=BreakerState.OPEN,
                    consecutive_failures=failures,
                    opened_at=now,
                    next_probe_at=now + cooldown,
                    probe_in_flight=False,
                    probe_started_at=None,
                    cooldown_seconds=cooldown,
                )
            if record.state != BreakerState.CLOSED:
                # Call was admitted before the circuit opened; state already reflects the outage
                return None
            if failures >= self.config.failure_threshold:
                cooldown = self.config.cooldown_seconds
                return record.evolve(
                    state=BreakerState.OPEN,
                    consecutive_failures=failures,
                    opened_at=now,
                    next_probe_at=now + cooldown,
                    cooldown_seconds=cooldown,
                )
            return record.evolve(consecutive_failures=failures)

        self._update(fail)

    def _release_probe(self) -> None:
        def release(record: BreakerRecord, now: float) -> Optional[BreakerRecord]:
            if not record.probe_in_flight:
                return None
            return record.evolve(probe_in_flight=False, probe_started_at=None)

        self._update(release)

    @contextmanager
    def guard(self, operation_type: str = "sandbox_command") -> Iterator[None]:
        """Run the enclosed block under circuit breaker protection.

        Admission (including the half-open claim) happens on entry, so a
        rejected caller never reaches the block. Errors matching
        ``failure_exceptions`` count as upstream failures; anything else only
        frees the half-open slot.

        Raises:
            CircuitOpenError: If the circuit is open or another probe is in flight
        """
        probe_started_at = self._admit(operation_type)
        try:
            yield
        except self.config.failure_exceptions:
            self._record_failure(probe_started_at)
            raise
        except BaseException:
            # Not an upstream failure; free the probe slot for the next caller
            if probe_started_at is not None:
                self._release_probe()
            raise
        self._record_success(probe_started_at)

    def execute(
        self,
        operation: Callable[..., Any],
        *args,
        operation_type: str = "sandbox_command",
        **kwargs,
    ) -> Any:
        """Execute ``operation`` with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is open or another probe is in flight
            Exception: Whatever ``operation`` raises
        """
        with self.guard(operation_type):
            return operation(*args, **kwargs)

    def reset(self) -> None:
        """Force the circuit closed (manual intervention)."""

        def close(record: BreakerRecord, now: float) -> BreakerRecord:
            return record.evolve(
                state=BreakerState.CLOSED,
                consecutive_failures=0,
                opened_at=None,
                next_probe_at=None,
                probe_in_flight=False,
                probe_started_at=None,
                cooldown_seconds=self.config.cooldown_seconds,
            )

        self._update(close)
        logger.info(f"[CircuitBreaker] '{self.name}' manually reset to CLOSED")
