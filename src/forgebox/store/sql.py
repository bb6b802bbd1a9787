"""SQLAlchemy-backed state store.

CAS is a conditional ``UPDATE ... WHERE version = :expected``; the first
write for a key is an INSERT guarded by the primary key.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import CircuitBreakerState, RateLimitWindow
from .base import BreakerRecord, WindowRecord

logger = logging.getLogger(__name__)


class SqlStateStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # -- rate limit windows -------------------------------------------------

    def get_window(self, operation_type: str) -> Optional[WindowRecord]:
        db = self._session_factory()
        try:
            row = db.get(RateLimitWindow, operation_type)
            if row is None:
                return None
            return WindowRecord(
                operation_type=row.operation_type,
                window_start=row.window_start,
                count=row.count,
                version=row.version,
            )
        finally:
            db.close()

    def cas_window(self, record: WindowRecord, expected_version: int) -> bool:
        values = {
            "window_start": record.window_start,
            "count": record.count,
            "version": expected_version + 1,
        }
        if expected_version == 0:
            return self._insert(RateLimitWindow(operation_type=record.operation_type, **values))
        return self._conditional_update(
            RateLimitWindow,
            RateLimitWindow.operation_type == record.operation_type,
            RateLimitWindow.version == expected_version,
            values,
        )

    # -- circuit breakers ---------------------------------------------------

    def get_breaker(self, name: str) -> Optional[BreakerRecord]:
        db = self._session_factory()
        try:
            row = db.get(CircuitBreakerState, name)
            if row is None:
                return None
            return BreakerRecord(
                name=row.name,
                state=row.state,
                consecutive_failures=row.consecutive_failures,
                opened_at=row.opened_at,
                next_probe_at=row.next_probe_at,
                probe_in_flight=row.probe_in_flight,
                probe_started_at=row.probe_started_at,
                cooldown_seconds=row.cooldown_seconds,
                version=row.version,
            )
        finally:
            db.close()

    def cas_breaker(self, record: BreakerRecord, expected_version: int) -> bool:
        values = {
            "state": record.state,
            "consecutive_failures": record.consecutive_failures,
            "opened_at": record.opened_at,
            "next_probe_at": record.next_probe_at,
            "probe_in_flight": record.probe_in_flight,
            "probe_started_at": record.probe_started_at,
            "cooldown_seconds": record.cooldown_seconds,
            "version": expected_version + 1,
        }
        if expected_version == 0:
            return self._insert(CircuitBreakerState(name=record.name, **values))
        return self._conditional_update(
            CircuitBreakerState,
            CircuitBreakerState.name == record.name,
            CircuitBreakerState.version == expected_version,
            values,
        )

    # -- helpers ------------------------------------------------------------

    def _insert(self, row) -> bool:
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
            return True
        except IntegrityError:
            # Another writer inserted first
            db.rollback()
            return False
        finally:
            db.close()

    def _conditional_update(self, model, key_clause, version_clause, values) -> bool:
        db = self._session_factory()
        try:
            updated = (
                db.query(model)
                .filter(key_clause, version_clause)
                .update(values, synchronize_session=False)
            )
            db.commit()
            return updated == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
