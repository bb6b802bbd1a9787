"""Persistence and stage transitions for agent runs.

Stage changes are conditional UPDATEs keyed on the allowed source stages, so
two workers can never both advance the same run. The repair counter is
incremented the same way, guarded by ``repair_count < max_repairs``, which
is what bounds the repair loop.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from .exceptions import ForgeboxError, InvalidRunTransition, RepairBudgetExhausted, RunNotFound
from .models import AgentRun, RunStage, utcnow
from .schemas import RunStatusResponse

logger = logging.getLogger(__name__)

RUN_TRANSITIONS = {
    RunStage.QUEUED: {RunStage.PLANNING, RunStage.CODING, RunStage.VALIDATING, RunStage.ERROR},
    RunStage.PLANNING: {RunStage.CODING, RunStage.QUEUED, RunStage.ERROR},
    RunStage.CODING: {RunStage.VALIDATING, RunStage.QUEUED, RunStage.ERROR},
    RunStage.VALIDATING: {RunStage.DONE, RunStage.REPAIRING, RunStage.QUEUED, RunStage.ERROR},
    RunStage.REPAIRING: {RunStage.CODING, RunStage.QUEUED, RunStage.ERROR},
    RunStage.DONE: set(),
    RunStage.ERROR: set(),
}

TERMINAL_STAGES = {RunStage.DONE, RunStage.ERROR}


def _sources(target: RunStage):
    return [stage for stage, targets in RUN_TRANSITIONS.items() if target in targets]


def to_status(run: AgentRun) -> RunStatusResponse:
    status = RunStatusResponse.model_validate(run)
    if run.stage == RunStage.ERROR:
        status.error = run.error_detail or {"kind": run.error_kind, "message": run.error_message}
    return status


class AgentRunRepository:
    def __init__(self, session_factory: Callable[[], Session], now: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self.now = now

    def create(
        self,
        project_id: str,
        user_request: str,
        fragment_id: Optional[str] = None,
        max_repairs: int = 2,
    ) -> str:
        run_id = str(uuid.uuid4())
        db = self._session_factory()
        try:
            now = self.now()
            db.add(
                AgentRun(
                    id=run_id,
                    project_id=project_id,
                    fragment_id=fragment_id,
                    user_request=user_request,
                    stage=RunStage.PLANNING,
                    repair_count=0,
                    max_repairs=max_repairs,
                    created_at=now,
                    updated_at=now,
                )
            )
            db.commit()
        finally:
            db.close()
        return run_id

    def load(self, run_id: str) -> AgentRun:
        """Detached snapshot of the run row."""
        db = self._session_factory()
        try:
            run = db.get(AgentRun, run_id)
            if run is None:
                raise RunNotFound(f"Agent run {run_id} not found")
            db.expunge(run)
            return run
        finally:
            db.close()

    def status(self, run_id: str) -> RunStatusResponse:
        return to_status(self.load(run_id))

    def update(self, run_id: str, **fields: Any) -> None:
        """Persist intermediate outputs without changing the stage."""
        if "stage" in fields:
            raise ValueError("use transition() to change the stage")
        fields["updated_at"] = self.now()
        db = self._session_factory()
        try:
            db.query(AgentRun).filter(AgentRun.id == run_id).update(
                {getattr(AgentRun, key): value for key, value in fields.items()},
                synchronize_session=False,
            )
            db.commit()
        finally:
            db.close()

    def transition(self, run_id: str, target: RunStage, **fields: Any) -> None:
        values: Dict[Any, Any] = {getattr(AgentRun, key): value for key, value in fields.items()}
        values[AgentRun.stage] = target
        values[AgentRun.updated_at] = self.now()
        if target in TERMINAL_STAGES:
            values[AgentRun.completed_at] = self.now()

        db = self._session_factory()
        try:
            updated = (
                db.query(AgentRun)
                .filter(AgentRun.id == run_id, AgentRun.stage.in_(_sources(target)))
                .update(values, synchronize_session=False)
            )
            db.commit()
            if updated == 1:
                logger.debug(f"[Pipeline] Run {run_id} -> {target.value}")
                return
            run = db.get(AgentRun, run_id)
        finally:
            db.close()

        if run is None:
            raise RunNotFound(f"Agent run {run_id} not found")
        raise InvalidRunTransition(f"Agent run {run_id} cannot move from {run.stage.value} to {target.value}")

    def record_repair(self, run_id: str, report: Dict[str, Any]) -> int:
        """VALIDATING -> REPAIRING, consuming one unit of the repair budget.

        Returns:
            The new repair count

        Raises:
            RepairBudgetExhausted: If the run has already used every repair
        """
        db = self._session_factory()
        try:
            updated = (
                db.query(AgentRun)
                .filter(
                    AgentRun.id == run_id,
                    AgentRun.stage == RunStage.VALIDATING,
                    AgentRun.repair_count < AgentRun.max_repairs,
                )
                .update(
                    {
                        AgentRun.repair_count: AgentRun.repair_count + 1,
                        AgentRun.stage: RunStage.REPAIRING,
                        AgentRun.last_report: report,
                        AgentRun.updated_at: self.now(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            run = db.get(AgentRun, run_id)
        finally:
            db.close()

        if run is None:
            raise RunNotFound(f"Agent run {run_id} not found")
        if updated == 1:
            return run.repair_count
        if run.stage != RunStage.VALIDATING:
            raise InvalidRunTransition(f"Agent run {run_id} is {run.stage.value}, not VALIDATING")
        raise RepairBudgetExhausted(run.repair_count, last_report=report)

    def queue(self, run_id: str, resume_stage: RunStage, job_id: Optional[int]) -> None:
        self.transition(run_id, RunStage.QUEUED, resume_stage=resume_stage, job_id=job_id)

    def fail(self, run_id: str, error: ForgeboxError) -> None:
        detail = error.to_dict()
        fields: Dict[str, Any] = {
            "error_kind": error.kind,
            "error_message": error.message,
            "error_detail": detail,
        }
        if detail.get("last_report") is not None:
            fields["last_report"] = detail["last_report"]
        self.transition(run_id, RunStage.ERROR, **fields)
