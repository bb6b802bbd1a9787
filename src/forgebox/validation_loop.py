"""Validate-then-repair loop for an agent run.

    CODING -> VALIDATING -> DONE
                         -> REPAIRING -> CODING   (while repair budget remains)
                         -> ERROR                 (budget exhausted)

Each validation runs the stack's static check and then its build inside the
sandbox. A failing report is handed back to the coder as repair context.
The repair counter is consumed before every retry, and ``record_repair``
refuses once the budget is spent, so the loop always terminates.
"""

import logging
from typing import Dict, List, Optional

from .agents.coder import Coder
from .agents.frameworks import validation_commands
from .agents.planner import Plan
from .models import RunStage
from .rate_limiter import RateLimiter
from .runs import AgentRunRepository
from .sandbox.base import COMMAND_NOT_FOUND_EXIT_CODE, OutputSink, ValidationReport
from .sandbox.lifecycle import SandboxLifecycleManager
from .schemas import SandboxSessionResponse

logger = logging.getLogger(__name__)


class ValidationLoop:
    def __init__(
        self,
        lifecycle: SandboxLifecycleManager,
        coder: Coder,
        runs: AgentRunRepository,
        limiter: RateLimiter,
        telemetry=None,
        command_timeout: Optional[float] = None,
    ):
        self.lifecycle = lifecycle
        self.coder = coder
        self.runs = runs
        self.limiter = limiter
        self.telemetry = telemetry
        self.command_timeout = command_timeout

    def _emit(self, event: str, run_id: str, error_kind: Optional[str] = None, **attrs) -> None:
        if self.telemetry is not None:
            self.telemetry.emit("validation", event, run_id=run_id, error_kind=error_kind, **attrs)

    def validate(
        self,
        session: SandboxSessionResponse,
        framework_id: str,
        on_output: Optional[OutputSink] = None,
    ) -> ValidationReport:
        """Run lint then build; returns the combined report."""
        reports: List[ValidationReport] = []
        for command in validation_commands(framework_id):
            report = self.lifecycle.run(session, command, timeout=self.command_timeout, on_output=on_output)
            if report.exit_code == COMMAND_NOT_FOUND_EXIT_CODE:
                logger.info(f"[Repair] '{command}' not available in sandbox, skipping")
                report.skipped = True
                report.passed = True
            reports.append(report)
            if report.timed_out:
                # Do not stack a second timeout on top of the first
                break
        return ValidationReport.combine(reports)

    def _code(self, run_id: str, session, user_request: str, framework_id: str, plan: Plan,
              last_report: Optional[ValidationReport]) -> Dict[str, str]:
        self.limiter.require("code_generation")
        output = self.coder.generate(user_request, framework_id, plan, last_report=last_report)
        files = output.as_mapping()
        self.runs.update(run_id, files=[f.model_dump() for f in output.files])
        self.lifecycle.write_files(session, files)
        return files

    def drive(
        self,
        run_id: str,
        session: SandboxSessionResponse,
        user_request: str,
        framework_id: str,
        plan: Plan,
        on_output: Optional[OutputSink] = None,
    ) -> ValidationReport:
        """Advance the run from CODING/VALIDATING/REPAIRING until DONE.

        Returns:
            The passing validation report

        Raises:
            RepairBudgetExhausted: Validation still failing with no repairs left
            TransientError: Admission refused mid-loop (caller queues the run)
        """
        while True:
            run = self.runs.load(run_id)
            last_report = ValidationReport.from_dict(run.last_report) if run.last_report else None

            if run.stage == RunStage.REPAIRING:
                self.runs.transition(run_id, RunStage.CODING)
                continue

            if run.stage == RunStage.CODING:
                repairing = run.repair_count > 0 and last_report is not None
                self._code(run_id, session, user_request, framework_id, plan,
                           last_report if repairing else None)
                self.runs.transition(run_id, RunStage.VALIDATING)
                continue

            if run.stage != RunStage.VALIDATING:
                raise ValueError(f"Run {run_id} is {run.stage.value}; validation loop cannot continue")

            report = self.validate(session, framework_id, on_output=on_output)
            if report.passed:
                self.runs.transition(run_id, RunStage.DONE, last_report=report.to_dict())
                logger.info(f"[Repair] Run {run_id} passed validation after {run.repair_count} repair(s)")
                self._emit("passed", run_id, repair_count=run.repair_count)
                return report

            error_kind = "sandbox_timeout" if report.timed_out else "validation_failed"
            self._emit("failed", run_id, error_kind=error_kind, exit_code=report.exit_code,
                       repair_count=run.repair_count)
            # Raises RepairBudgetExhausted once every repair has been used
            repair_count = self.runs.record_repair(run_id, report.to_dict())
            logger.info(f"[Repair] Run {run_id} failed validation, starting repair {repair_count}/{run.max_repairs}")
            self._emit("repair_started", run_id, repair_count=repair_count)
