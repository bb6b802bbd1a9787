"""Durable state backends for rate-limit windows and circuit breaker state."""

from .base import BreakerRecord, StateStore, WindowRecord
from .memory import MemoryStateStore
from .redis_store import RedisStateStore
from .sql import SqlStateStore

__all__ = [
    "BreakerRecord",
    "MemoryStateStore",
    "RedisStateStore",
    "SqlStateStore",
    "StateStore",
    "WindowRecord",
    "build_state_store",
]


def build_state_store(backend: str, session_factory=None, redis_url: str = None) -> StateStore:
    """Create the configured state store backend."""
    if backend == "sql":
        if session_factory is None:
            from ..database import SessionLocal

            session_factory = SessionLocal
        return SqlStateStore(session_factory)
    if backend == "redis":
        return RedisStateStore(redis_url or "redis://localhost:6379/1")
    if backend == "memory":
        return MemoryStateStore()
    raise ValueError(f"Unknown state backend: {backend}")
