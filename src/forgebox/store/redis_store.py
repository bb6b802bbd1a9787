"""Redis-backed state store.

Records are JSON strings; CAS uses WATCH/MULTI optimistic transactions so a
concurrent write between the version check and the SET aborts the
transaction.
"""

import json
import logging
from typing import Any, Dict, Optional

import redis

from .base import BreakerRecord, WindowRecord

logger = logging.getLogger(__name__)


class RedisStateStore:
    KEY_PREFIX = "forgebox:"

    def __init__(self, redis_url: str = "redis://localhost:6379/1", client: Optional[redis.Redis] = None):
        """Initialize with a Redis URL, or an already-built client (tests pass fakeredis)."""
        self.redis_url = redis_url
        self._client = client

    @property
    def client(self) -> redis.Redis:
        """Get or create Redis client (lazy initialization)."""
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _window_key(self, operation_type: str) -> str:
        return f"{self.KEY_PREFIX}window:{operation_type}"

    def _breaker_key(self, name: str) -> str:
        return f"{self.KEY_PREFIX}breaker:{name}"

    def _load(self, key: str) -> Optional[Dict[str, Any]]:
        data = self.client.get(key)
        if data is None:
            return None
        return json.loads(data)

    def get_window(self, operation_type: str) -> Optional[WindowRecord]:
        data = self._load(self._window_key(operation_type))
        return WindowRecord.from_dict(data) if data else None

    def cas_window(self, record: WindowRecord, expected_version: int) -> bool:
        data = record.to_dict()
        data["version"] = expected_version + 1
        return self._cas(self._window_key(record.operation_type), data, expected_version)

    def get_breaker(self, name: str) -> Optional[BreakerRecord]:
        data = self._load(self._breaker_key(name))
        return BreakerRecord.from_dict(data) if data else None

    def cas_breaker(self, record: BreakerRecord, expected_version: int) -> bool:
        data = record.to_dict()
        data["version"] = expected_version + 1
        return self._cas(self._breaker_key(record.name), data, expected_version)

    def _cas(self, key: str, data: Dict[str, Any], expected_version: int) -> bool:
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                current_version = json.loads(raw)["version"] if raw else 0
                if current_version != expected_version:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, json.dumps(data))
                pipe.execute()
                return True
            except redis.WatchError:
                logger.debug(f"[StateStore] CAS conflict on {key}")
                return False
