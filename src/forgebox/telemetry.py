"""Telemetry emitter for pipeline lifecycle and error events.

A pure observer: every event is logged, counted in Prometheus and persisted
as a ``TelemetryEvent`` row. Recording failures are logged and swallowed so
telemetry can never change control flow.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter
from sqlalchemy.orm import Session

from .models import TelemetryEvent

logger = logging.getLogger(__name__)

EVENTS_TOTAL = Counter(
    "forgebox_events_total",
    "Lifecycle and error events emitted by the orchestration core",
    ["stage", "event", "error_kind"],
)


class TelemetryEmitter:
    """Records stage events.

    Args:
        session_factory: Callable returning a SQLAlchemy session; ``None``
            disables persistence (events are still logged and counted).
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def emit(
        self,
        stage: str,
        event: str,
        run_id: Optional[str] = None,
        error_kind: Optional[str] = None,
        **attributes: Any,
    ) -> None:
        level = logging.WARNING if error_kind else logging.INFO
        logger.log(
            level,
            f"[Telemetry] {stage}.{event}" + (f" run={run_id}" if run_id else "")
            + (f" error={error_kind}" if error_kind else ""),
            extra={"stage": stage, "event": event, "run_id": run_id, "error_kind": error_kind},
        )

        EVENTS_TOTAL.labels(stage=stage, event=event, error_kind=error_kind or "none").inc()

        if self._session_factory is None:
            return

        db = None
        try:
            db = self._session_factory()
            db.add(
                TelemetryEvent(
                    stage=stage,
                    event=event,
                    run_id=run_id,
                    error_kind=error_kind,
                    attributes=_jsonable(attributes) or None,
                )
            )
            db.commit()
        except Exception as e:
            if db is not None:
                db.rollback()
            logger.warning(f"[Telemetry] Failed to persist {stage}.{event}: {e}")
        finally:
            if db is not None:
                db.close()

    def recent(self, run_id: str, limit: int = 100) -> List[TelemetryEvent]:
        """Events recorded for one run, oldest first."""
        if self._session_factory is None:
            return []
        db = self._session_factory()
        try:
            return (
                db.query(TelemetryEvent)
                .filter(TelemetryEvent.run_id == run_id)
                .order_by(TelemetryEvent.id)
                .limit(limit)
                .all()
            )
        finally:
            db.close()


def _jsonable(attributes: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, value in attributes.items():
        if value is None or isinstance(value, (str, int, float, bool, list, dict)):
            result[key] = value
        else:
            result[key] = str(value)
    return result

