"""Fixed-window rate limiter with per-operation limits.

Each operation type has one counter per window, held in the shared state
store. Admission is a compare-and-set loop: read the window, reset it if it
has expired, refuse if the count has reached the limit, otherwise write
``count + 1`` conditioned on the version that was read. Two concurrent
callers can never both consume the last slot.

Part of every window is held back for queued work: while jobs of an
operation type are pending, live traffic may use at most
``limit - min(pending, max(1, floor(limit * reserved_share)))`` slots. The sweep
runs its handlers inside :func:`reserved_capacity` and sees the full limit.
"""

import logging
import math
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from prometheus_client import Counter

from .exceptions import RateLimitExceeded
from .store.base import StateStore, WindowRecord

logger = logging.getLogger(__name__)

ADMISSIONS_TOTAL = Counter(
    "forgebox_rate_limit_admissions_total",
    "Rate limiter admission decisions",
    ["operation_type", "outcome"],
)

# Set while the sweep executes a queued job; lifts the live-traffic reservation
_reserved_capacity: ContextVar[bool] = ContextVar("reserved_capacity", default=False)

DEFAULT_MAX_CAS_RETRIES = 32


@contextmanager
def reserved_capacity() -> Iterator[None]:
    """Admit calls made in this context against the full window limit."""
    token = _reserved_capacity.set(True)
    try:
        yield
    finally:
        _reserved_capacity.reset(token)


@dataclass(frozen=True)
class Admission:
    """Outcome of an admission check (Allowed, or Denied with retry_after)."""

    allowed: bool
    operation_type: str
    remaining: int = 0
    retry_after: float = 0.0


class RateLimiter:
    """Per-operation fixed-window admission control.

    Example:
        limiter = RateLimiter(store, {"sandbox_create": 100}, window_seconds=3600)
        decision = limiter.admit("sandbox_create")
        if not decision.allowed:
            enqueue_for_later(retry_after=decision.retry_after)
    """

    def __init__(
        self,
        store: StateStore,
        limits: Dict[str, int],
        window_seconds: float = 3600.0,
        default_limit: int = 100,
        reserved_share: float = 0.5,
        clock: Callable[[], float] = time.time,
        max_cas_retries: int = DEFAULT_MAX_CAS_RETRIES,
    ):
        self.store = store
        self.limits = dict(limits)
        self.window_seconds = window_seconds
        self.default_limit = default_limit
        self.reserved_share = reserved_share
        self.clock = clock
        self.max_cas_retries = max_cas_retries
        self._pending_count: Optional[Callable[[str], int]] = None

    def set_reservation_source(self, pending_count: Callable[[str], int]) -> None:
        """Register the callable reporting queued jobs per operation type."""
        self._pending_count = pending_count

    def limit_for(self, operation_type: str) -> int:
        return self.limits.get(operation_type, self.default_limit)

    def _reserved(self, operation_type: str, limit: int) -> int:
        if self._pending_count is None:
            return 0
        pending = self._pending_count(operation_type)
        if pending <= 0:
            return 0
        # At least one slot while anything waits
        return min(pending, max(1, math.floor(limit * self.reserved_share)))

    def _effective_limit(self, operation_type: str, include_reserved: bool) -> int:
        limit = self.limit_for(operation_type)
        if include_reserved:
            return limit
        return limit - self._reserved(operation_type, limit)

    def admit(self, operation_type: str) -> Admission:
        """Consume one slot of the current window if one is available."""
        effective = self._effective_limit(operation_type, _reserved_capacity.get())

        for _ in range(self.max_cas_retries):
            now = self.clock()
            current = self.store.get_window(operation_type)
            version = current.version if current else 0

            if current is None or now - current.window_start >= self.window_seconds:
                window_start, count = now, 0
            else:
                window_start, count = current.window_start, current.count

            if count >= effective:
                retry_after = max(0.0, window_start + self.window_seconds - now)
                ADMISSIONS_TOTAL.labels(operation_type=operation_type, outcome="denied").inc()
                logger.info(
                    f"[RateLimiter] Denied {operation_type}: {count}/{effective} used, "
                    f"retry in {retry_after:.1f}s"
                )
                return Admission(False, operation_type, remaining=0, retry_after=retry_after)

            record = WindowRecord(operation_type, window_start=window_start, count=count + 1)
            if self.store.cas_window(record, version):
                ADMISSIONS_TOTAL.labels(operation_type=operation_type, outcome="allowed").inc()
                return Admission(True, operation_type, remaining=effective - count - 1)

        # Persistent contention: fail closed rather than risk over-admitting
        ADMISSIONS_TOTAL.labels(operation_type=operation_type, outcome="contention").inc()
        logger.warning(
            f"[RateLimiter] Gave up on {operation_type} after {self.max_cas_retries} CAS conflicts"
        )
        return Admission(False, operation_type, remaining=0, retry_after=1.0)

    def require(self, operation_type: str) -> Admission:
        """Like :meth:`admit` but raise :class:`RateLimitExceeded` on denial."""
        decision = self.admit(operation_type)
        if not decision.allowed:
            raise RateLimitExceeded(operation_type, decision.retry_after)
        return decision

    def _current_count(self, operation_type: str, now: float):
        current = self.store.get_window(operation_type)
        if current is None or now - current.window_start >= self.window_seconds:
            return 0, self.window_seconds
        return current.count, current.window_start + self.window_seconds - now

    def remaining(self, operation_type: str, include_reserved: bool = False) -> int:
        """Slots left in the current window, without consuming any."""
        count, _ = self._current_count(operation_type, self.clock())
        return max(0, self._effective_limit(operation_type, include_reserved) - count)

    def usage(self) -> Dict[str, Dict[str, float]]:
        """Per-operation usage for the health view."""
        now = self.clock()
        report = {}
        for operation_type in sorted(self.limits):
            count, resets_in = self._current_count(operation_type, now)
            limit = self.limit_for(operation_type)
            report[operation_type] = {
                "count": count,
                "limit": limit,
                "remaining": max(0, limit - count),
                "window_resets_in": round(max(0.0, resets_in), 3),
            }
        return report
