"""Caller-facing orchestration service.

Wires the limiter, breaker, job queue, sandbox lifecycle and agent pipeline
together and exposes the operations used by the API and CLI:

- ``request_generation`` / ``execute_run`` / ``get_run_status``
- ``request_sandbox``
- ``get_health``
- ``sweep``

Transient admission failures never reach the caller as errors: the work is
enqueued and the caller gets a pending status. Fatal failures end the run in
ERROR with a structured error.
"""

import logging
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .agents.coder import Coder
from .agents.framework_selector import FrameworkSelector
from .agents.frameworks import get_framework
from .agents.planner import Plan, Planner
from .agents.text_generation import AnthropicTextGenerator, TextGenerator
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .config import Settings
from .exceptions import ForgeboxError, JobFailed, SandboxServiceError, TextGenerationError, TransientError
from .job_queue import Job, JobQueue
from .models import BreakerState, RunStage
from .rate_limiter import RateLimiter
from .runs import TERMINAL_STAGES, AgentRunRepository
from .sandbox import build_sandbox_service
from .sandbox.base import SandboxService
from .sandbox.lifecycle import SandboxLifecycleManager
from .schemas import (
    BreakerSnapshot,
    HealthResponse,
    OperationUsage,
    RunStatusResponse,
    SandboxRequestResponse,
)
from .store import StateStore, build_state_store
from .telemetry import TelemetryEmitter
from .validation_loop import ValidationLoop

logger = logging.getLogger(__name__)

RESUME_RUN_ACTION = "agent_run"
SANDBOX_CREATE_ACTION = "sandbox_create"

# Upstream failures a queued run retries under its job's attempt cap
RETRYABLE_ERRORS = (SandboxServiceError, TextGenerationError)


class ForgeboxService:
    def __init__(
        self,
        runs: AgentRunRepository,
        limiter: RateLimiter,
        breaker: CircuitBreaker,
        queue: JobQueue,
        lifecycle: SandboxLifecycleManager,
        selector: FrameworkSelector,
        planner: Planner,
        loop: ValidationLoop,
        telemetry: TelemetryEmitter,
        max_repairs: int = 2,
    ):
        self.runs = runs
        self.limiter = limiter
        self.breaker = breaker
        self.queue = queue
        self.lifecycle = lifecycle
        self.selector = selector
        self.planner = planner
        self.loop = loop
        self.telemetry = telemetry
        self.max_repairs = max_repairs

        queue.register(RESUME_RUN_ACTION, self._resume_run_job)
        queue.register(SANDBOX_CREATE_ACTION, self._sandbox_create_job)

    # -- agent runs ---------------------------------------------------------

    def create_run(self, project_id: str, user_request: str, fragment_id: Optional[str] = None) -> str:
        run_id = self.runs.create(project_id, user_request, fragment_id=fragment_id, max_repairs=self.max_repairs)
        logger.info(f"[Pipeline] Created run {run_id} for project {project_id}")
        self.telemetry.emit("pipeline", "run_created", run_id=run_id, project_id=project_id)
        return run_id

    def request_generation(self, project_id: str, user_request: str, fragment_id: Optional[str] = None) -> str:
        """Create a run and drive it as far as admission allows. Returns the run id."""
        run_id = self.create_run(project_id, user_request, fragment_id=fragment_id)
        self.execute_run(run_id)
        return run_id

    def get_run_status(self, run_id: str) -> RunStatusResponse:
        return self.runs.status(run_id)

    def execute_run(self, run_id: str, job: Optional[Job] = None) -> RunStatusResponse:
        """Drive a run through select -> plan -> code -> validate/repair.

        Stages already completed (persisted framework, plan, files) are
        skipped, so the same call resumes a queued run.

        Args:
            job: The queue job resuming this run, when called from the sweep.
                Admission failures and upstream failures are then re-raised
                so the queue releases or retries the job; the run is only
                failed on an upstream error once the job's attempts are spent.
        """
        run = self.runs.load(run_id)
        if run.stage in TERMINAL_STAGES:
            return self.runs.status(run_id)
        if run.stage == RunStage.QUEUED:
            self.runs.transition(run_id, run.resume_stage or RunStage.PLANNING)

        try:
            self._drive(run_id)
        except TransientError as e:
            self._defer(run_id, e, job)
            if job is not None:
                raise
        except RETRYABLE_ERRORS as e:
            if job is not None and job.attempts < job.max_attempts:
                self._retry_later(run_id, e, job)
                raise
            self._fail(run_id, e)
        except ForgeboxError as e:
            self._fail(run_id, e)
        except Exception as e:
            logger.error(f"[Pipeline] Run {run_id} crashed", exc_info=True)
            self._fail(run_id, ForgeboxError(f"Internal error: {type(e).__name__}: {e}"), kind="internal_error")
        return self.runs.status(run_id)

    def _drive(self, run_id: str) -> None:
        run = self.runs.load(run_id)

        framework_id = run.framework
        if not framework_id:
            framework_id = self.selector.select(run.user_request)
            self.runs.update(run_id, framework=framework_id)
            self.telemetry.emit("framework_selector", "selected", run_id=run_id, framework=framework_id)

        if run.plan:
            plan = Plan.model_validate(run.plan)
        else:
            plan = self.planner.plan(run.user_request, framework_id)
            self.runs.update(run_id, plan=plan.model_dump())
            self.telemetry.emit("planner", "planned", run_id=run_id, steps=len(plan.steps))

        owner_id = run.fragment_id or run.project_id
        session = self.lifecycle.get_or_create(owner_id, template=get_framework(framework_id).template)
        if session.id != run.sandbox_session_id:
            self.runs.update(run_id, sandbox_session_id=session.id)
            if run.stage == RunStage.VALIDATING and run.files:
                # Resumed on a fresh sandbox: the generated files must be written again
                self.lifecycle.write_files(session, {f["path"]: f["content"] for f in run.files})

        if run.stage == RunStage.PLANNING:
            self.runs.transition(run_id, RunStage.CODING)

        self.loop.drive(run_id, session, run.user_request, framework_id, plan)
        self.telemetry.emit("pipeline", "run_done", run_id=run_id)

    @staticmethod
    def _resume_stage(run) -> RunStage:
        return RunStage.CODING if run.stage == RunStage.REPAIRING else run.stage

    def _defer(self, run_id: str, error: TransientError, job: Optional[Job]) -> None:
        run = self.runs.load(run_id)
        resume_stage = self._resume_stage(run)
        job_id = job.id if job is not None else self.queue.enqueue(
            error.operation_type,
            {"run_id": run_id},
            action=RESUME_RUN_ACTION,
            owner_id=run.fragment_id or run.project_id,
        )
        self.runs.queue(run_id, resume_stage=resume_stage, job_id=job_id)
        logger.info(f"[Pipeline] Run {run_id} queued at {resume_stage.value}: {error.message}")
        self.telemetry.emit(
            "pipeline",
            "run_queued",
            run_id=run_id,
            error_kind=error.kind,
            retry_after=error.retry_after,
            job_id=job_id,
        )

    def _retry_later(self, run_id: str, error: ForgeboxError, job: Job) -> None:
        """Park the run under its job again; the queue spends one attempt on it."""
        run = self.runs.load(run_id)
        resume_stage = self._resume_stage(run)
        self.runs.queue(run_id, resume_stage=resume_stage, job_id=job.id)
        logger.warning(
            f"[Pipeline] Run {run_id} hit {error.kind} on attempt {job.attempts}/{job.max_attempts}, "
            f"will retry at {resume_stage.value}: {error.message}"
        )
        self.telemetry.emit(
            "pipeline",
            "run_retry",
            run_id=run_id,
            error_kind=error.kind,
            attempts=job.attempts,
            job_id=job.id,
        )

    def _fail(self, run_id: str, error: ForgeboxError, kind: Optional[str] = None) -> None:
        if kind:
            error.kind = kind
        if self.runs.load(run_id).stage in TERMINAL_STAGES:
            logger.warning(f"[Pipeline] Run {run_id} already finished, dropping {error.kind}: {error.message}")
            return
        logger.warning(f"[Pipeline] Run {run_id} failed: {error.kind}: {error.message}")
        self.runs.fail(run_id, error)
        self.telemetry.emit("pipeline", "run_failed", run_id=run_id, error_kind=error.kind,
                            attempts=error.attempts)

    def _resume_run_job(self, job: Job) -> None:
        status = self.execute_run(job.payload["run_id"], job=job)
        if status.stage == RunStage.ERROR.value:
            error = status.error or {}
            raise JobFailed(
                f"Run {status.id} ended in ERROR: {error.get('message', 'unknown error')}",
                cause_kind=error.get("kind"),
            )

    # -- sandboxes ----------------------------------------------------------

    def request_sandbox(self, owner_id: str, framework: Optional[str] = None) -> SandboxRequestResponse:
        """Return a ready session, or the job id the creation was queued under."""
        template = get_framework(framework).template
        try:
            session = self.lifecycle.get_or_create(owner_id, template=template)
        except TransientError as e:
            job_id = self.queue.enqueue(
                e.operation_type,
                {"owner_id": owner_id, "template": template},
                action=SANDBOX_CREATE_ACTION,
                owner_id=owner_id,
            )
            self.telemetry.emit("sandbox", "create_queued", error_kind=e.kind, owner_id=owner_id, job_id=job_id)
            return SandboxRequestResponse(status="pending", job_id=job_id, retry_after=e.retry_after)
        return SandboxRequestResponse(status="ready", session=session)

    def _sandbox_create_job(self, job: Job) -> None:
        self.lifecycle.get_or_create(job.payload["owner_id"], template=job.payload.get("template"))

    # -- operations ---------------------------------------------------------

    def get_health(self) -> HealthResponse:
        breaker = self.breaker.snapshot()
        return HealthResponse(
            status="ok" if breaker["state"] == BreakerState.CLOSED.value else "degraded",
            breaker=BreakerSnapshot(**breaker),
            rate_limit_usage={op: OperationUsage(**usage) for op, usage in self.limiter.usage().items()},
            queue_depth=self.queue.depth_by_status(),
        )

    def sweep(self) -> int:
        processed = self.queue.sweep()
        self.queue.purge_finished()
        return processed


def build_service(
    config: Settings,
    session_factory: Optional[Callable[[], Session]] = None,
    store: Optional[StateStore] = None,
    generator: Optional[TextGenerator] = None,
    sandbox_service: Optional[SandboxService] = None,
    clock: Callable[[], float] = time.time,
) -> ForgeboxService:
    """Assemble a ForgeboxService from configuration.

    Collaborators can be injected (tests pass fakes for the generator and
    sandbox service, and an in-memory database).
    """
    if session_factory is None:
        from .database import SessionLocal

        session_factory = SessionLocal

    telemetry = TelemetryEmitter(session_factory)
    store = store or build_state_store(config.state_backend, session_factory, config.redis_url)
    limiter = RateLimiter(
        store,
        config.rate_limits,
        window_seconds=config.rate_limit_window_seconds,
        default_limit=config.default_rate_limit,
        reserved_share=config.queue_reserved_share,
        clock=clock,
    )
    breaker = CircuitBreaker(
        config.breaker_name,
        store,
        CircuitBreakerConfig(
            failure_threshold=config.breaker_failure_threshold,
            cooldown_seconds=config.breaker_cooldown_seconds,
            max_cooldown_seconds=config.breaker_max_cooldown_seconds,
            backoff_multiplier=config.breaker_backoff_multiplier,
            probe_timeout_seconds=config.breaker_probe_timeout_seconds,
        ),
        clock=clock,
        telemetry=telemetry,
    )
    queue = JobQueue(
        session_factory,
        limiter,
        breaker,
        max_attempts=config.job_max_attempts,
        claim_ttl_seconds=config.job_claim_ttl_seconds,
        retention_days=config.job_retention_days,
        telemetry=telemetry,
    )
    limiter.set_reservation_source(queue.pending_count)

    lifecycle = SandboxLifecycleManager(
        session_factory,
        sandbox_service or build_sandbox_service(config),
        limiter,
        breaker,
        telemetry=telemetry,
        command_timeout=config.command_timeout_seconds,
        create_timeout=config.sandbox_create_timeout_seconds,
    )
    generator = generator or AnthropicTextGenerator(default_model=config.anthropic_model)
    attempts = config.agent_max_output_attempts
    coder = Coder(generator, model=config.anthropic_model, max_attempts=attempts, max_tokens=config.coder_max_tokens)
    runs = AgentRunRepository(session_factory)

    return ForgeboxService(
        runs=runs,
        limiter=limiter,
        breaker=breaker,
        queue=queue,
        lifecycle=lifecycle,
        selector=FrameworkSelector(generator, model=config.selector_model, max_attempts=attempts),
        planner=Planner(generator, model=config.anthropic_model, max_attempts=attempts),
        loop=ValidationLoop(
            lifecycle,
            coder,
            runs,
            limiter,
            telemetry=telemetry,
            command_timeout=config.command_timeout_seconds,
        ),
        telemetry=telemetry,
        max_repairs=config.max_repair_attempts,
    )
