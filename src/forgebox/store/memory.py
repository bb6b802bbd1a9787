"""In-process state store.

Correct only for a single-process deployment; used by tests and local runs.
"""

import threading
from dataclasses import replace
from typing import Dict, Optional

from .base import BreakerRecord, WindowRecord


class MemoryStateStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._windows: Dict[str, WindowRecord] = {}
        self._breakers: Dict[str, BreakerRecord] = {}

    def get_window(self, operation_type: str) -> Optional[WindowRecord]:
        with self._lock:
            return self._windows.get(operation_type)

    def cas_window(self, record: WindowRecord, expected_version: int) -> bool:
        with self._lock:
            current = self._windows.get(record.operation_type)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._windows[record.operation_type] = replace(record, version=expected_version + 1)
            return True

    def get_breaker(self, name: str) -> Optional[BreakerRecord]:
        with self._lock:
            return self._breakers.get(name)

    def cas_breaker(self, record: BreakerRecord, expected_version: int) -> bool:
        with self._lock:
            current = self._breakers.get(record.name)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._breakers[record.name] = replace(record, version=expected_version + 1)
            return True
