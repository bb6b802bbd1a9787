"""End-to-end scenarios for the orchestration service.

Every scenario runs against the in-memory database, the fake sandbox
service and the fake text generator; the clock is advanced by hand to
cross rate-limit windows and breaker cooldowns.
"""

import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from forgebox.database import Base
from forgebox.exceptions import RunNotFound, SandboxServiceError
from forgebox.models import RunStage, SessionStatus
from forgebox.orchestrator import build_service
from forgebox.sandbox.base import CommandResult

from tests.conftest import FakeGenerator

BUILD_FAILED = CommandResult(stdout="", stderr="Type error: Cannot find name 'useState'", exit_code=1)
OK = CommandResult(stdout="ok\n", stderr="", exit_code=0)


def limits(**overrides):
    values = {"sandbox_create": 100, "sandbox_command": 1000, "code_generation": 200}
    values.update(overrides)
    return values


def run_events(service, run_id):
    return [e.event for e in service.telemetry.recent(run_id)]


class TestGeneration:
    def test_request_runs_to_done(self, service, generator, sandbox_service):
        run_id = service.request_generation("project-1", "A counter app with a reset button")

        status = service.get_run_status(run_id)
        assert status.stage == "DONE"
        assert status.framework == "nextjs"
        assert status.plan["steps"] == ["Create the page", "Add the counter component"]
        assert status.files[0]["path"] == "app/page.tsx"
        assert status.repair_count == 0
        assert status.error is None
        assert status.completed_at is not None

        session = service.lifecycle.find_active("project-1")
        assert status.sandbox_session_id == session.id
        assert session.template == "forgebox-nextjs"
        assert "app/page.tsx" in sandbox_service.files[session.handle]
        assert run_events(service, run_id) == ["run_created", "selected", "planned", "passed", "run_done"]

    def test_explicit_framework_uses_its_template(self, service, generator):
        run_id = service.request_generation("project-1", "A Vue kanban board")

        assert service.get_run_status(run_id).framework == "vue"
        assert generator.prompts("selector") == []
        assert service.lifecycle.find_active("project-1").template == "forgebox-vue"

    def test_fragment_owns_the_sandbox(self, service):
        service.request_generation("project-1", "A counter app", fragment_id="fragment-7")

        assert service.lifecycle.find_active("fragment-7") is not None
        assert service.lifecycle.find_active("project-1") is None

    def test_runs_for_one_owner_share_a_sandbox(self, service, sandbox_service):
        first = service.request_generation("project-1", "A counter app")
        second = service.request_generation("project-1", "Now add a dark mode toggle")

        assert len(sandbox_service.created) == 1
        assert (
            service.get_run_status(first).sandbox_session_id
            == service.get_run_status(second).sandbox_session_id
        )

    def test_unknown_run(self, service):
        with pytest.raises(RunNotFound):
            service.get_run_status("missing")
        with pytest.raises(RunNotFound):
            service.execute_run("missing")

    def test_finished_run_is_not_driven_again(self, service, generator):
        run_id = service.request_generation("project-1", "A counter app")
        calls = len(generator.calls)

        status = service.execute_run(run_id)

        assert status.stage == "DONE"
        assert len(generator.calls) == calls


class TestRepair:
    def test_failed_build_is_repaired(self, service, sandbox_service, generator):
        sandbox_service.results["npm run build"] = [BUILD_FAILED, OK]

        run_id = service.request_generation("project-1", "A counter app")

        status = service.get_run_status(run_id)
        assert status.stage == "DONE"
        assert status.repair_count == 1
        assert "useState" in generator.prompts("coder")[1]

    def test_exhausted_repair_budget_ends_in_error(self, service, sandbox_service, generator):
        sandbox_service.results["npm run build"] = [BUILD_FAILED]

        run_id = service.request_generation("project-1", "A counter app")

        status = service.get_run_status(run_id)
        assert status.stage == "ERROR"
        assert status.repair_count == 2
        assert status.error["kind"] == "repair_budget_exhausted"
        assert status.error["attempts"] == 2
        assert status.error["last_report"]["exit_code"] == 1
        assert status.last_report["exit_code"] == 1
        assert len(generator.prompts("coder")) == 3
        assert run_events(service, run_id)[-1] == "run_failed"

    def test_repair_budget_is_configurable(self, make_service, sandbox_service, generator):
        service = make_service(max_repair_attempts=0)
        sandbox_service.results["npm run build"] = [BUILD_FAILED]

        run_id = service.request_generation("project-1", "A counter app")

        assert service.get_run_status(run_id).stage == "ERROR"
        assert len(generator.prompts("coder")) == 1


class TestFatalErrors:
    def test_malformed_plan_fails_the_run(self, make_service):
        service = make_service(generator_override=FakeGenerator(planner=["I would build a counter."]))

        run_id = service.request_generation("project-1", "A counter app")

        status = service.get_run_status(run_id)
        assert status.stage == "ERROR"
        assert status.error["kind"] == "malformed_agent_output"
        assert status.error["stage"] == "planner"
        assert status.error["attempts"] == 3

    def test_unexpected_exception_is_an_internal_error(self, make_service):
        class ExplodingGenerator(FakeGenerator):
            def generate(self, system, prompt, **kwargs):
                raise RuntimeError("socket closed")

        service = make_service(generator_override=ExplodingGenerator())

        run_id = service.request_generation("project-1", "A counter app")

        status = service.get_run_status(run_id)
        assert status.stage == "ERROR"
        assert status.error["kind"] == "internal_error"
        assert "socket closed" in status.error["message"]

    def test_upstream_failure_fails_the_run(self, service, sandbox_service):
        sandbox_service.create_failures = 1

        run_id = service.request_generation("project-1", "A counter app")

        status = service.get_run_status(run_id)
        assert status.stage == "ERROR"
        assert status.error["kind"] == "sandbox_service_error"


class TestQueueing:
    def test_sandbox_over_limit_is_queued_then_swept(
        self, tmp_path, make_settings, store, clock, sandbox_service, generator
    ):
        # A file database gives each thread its own connection
        engine = create_engine(f"sqlite:///{tmp_path / 'forgebox.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=engine)
        service = build_service(
            make_settings(rate_limits=limits(sandbox_create=2)),
            session_factory=sessionmaker(autocommit=False, autoflush=False, bind=engine),
            store=store,
            generator=generator,
            sandbox_service=sandbox_service,
            clock=clock,
        )

        barrier = threading.Barrier(3)
        responses = {}

        def caller(owner_id):
            barrier.wait()
            responses[owner_id] = service.request_sandbox(owner_id)

        threads = [threading.Thread(target=caller, args=(f"owner-{i}",)) for i in range(1, 4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(r.status for r in responses.values()) == ["pending", "ready", "ready"]
        assert len(sandbox_service.created) == 2
        waiting_owner, pending = next((o, r) for o, r in responses.items() if r.status == "pending")

        assert pending.status == "pending"
        assert pending.session is None
        assert pending.retry_after > 0
        assert service.queue.get(pending.job_id).status == "PENDING"

        # Still inside the window: nothing is admissible
        assert service.sweep() == 0

        clock.advance(3600)
        assert service.sweep() == 1

        assert service.queue.get(pending.job_id).status == "COMPLETED"
        assert service.lifecycle.find_active(waiting_owner) is not None
        engine.dispose()

    def test_rate_limited_run_resumes_without_redoing_stages(self, make_service, clock, generator):
        service = make_service(rate_limits=limits(sandbox_create=1))
        service.request_sandbox("someone-else")

        run_id = service.request_generation("project-1", "A counter app")

        status = service.get_run_status(run_id)
        assert status.stage == "QUEUED"
        assert status.job_id is not None
        assert status.framework == "nextjs"
        assert status.plan is not None
        assert service.runs.load(run_id).resume_stage == RunStage.PLANNING

        clock.advance(3600)
        assert service.sweep() == 1

        status = service.get_run_status(run_id)
        assert status.stage == "DONE"
        assert len(generator.prompts("planner")) == 1
        assert service.queue.get(status.job_id).status == "COMPLETED"

    def test_queued_repair_keeps_failure_context(self, make_service, clock, sandbox_service, generator):
        service = make_service(rate_limits=limits(code_generation=1))
        sandbox_service.results["npm run build"] = [BUILD_FAILED, OK]

        run_id = service.request_generation("project-1", "A counter app")

        run = service.runs.load(run_id)
        assert run.stage == RunStage.QUEUED
        assert run.resume_stage == RunStage.CODING
        assert run.repair_count == 1

        clock.advance(3600)
        service.sweep()

        status = service.get_run_status(run_id)
        assert status.stage == "DONE"
        assert status.repair_count == 1
        assert "useState" in generator.prompts("coder")[1]

    def test_job_deferred_again_during_sweep_keeps_its_id(self, service):
        owner_session = service.lifecycle._insert_provisioning("project-1", None)

        run_id = service.request_generation("project-1", "A counter app")
        job_id = service.get_run_status(run_id).job_id
        assert service.get_run_status(run_id).stage == "QUEUED"

        # The concurrent provisioning is still in progress
        assert service.sweep() == 0
        status = service.get_run_status(run_id)
        assert status.stage == "QUEUED"
        assert status.job_id == job_id
        job = service.queue.get(job_id)
        assert job.status == "PENDING"
        assert job.attempts == 0

        service.lifecycle._transition(owner_session, SessionStatus.FAILED, reason="creator crashed")
        assert service.sweep() == 1
        assert service.get_run_status(run_id).stage == "DONE"
        assert len(service.queue.list_for_owner("project-1")) == 1

    def test_upstream_failure_on_resume_is_retried(self, make_service, clock, sandbox_service):
        service = make_service(rate_limits=limits(sandbox_create=1))
        service.request_sandbox("someone-else")
        run_id = service.request_generation("project-1", "A counter app")
        job_id = service.get_run_status(run_id).job_id

        clock.advance(3600)
        sandbox_service.create_failures = 1
        service.sweep()

        job = service.queue.get(job_id)
        assert job.status == "PENDING"
        assert job.attempts == 1
        assert "503" in job.last_error
        status = service.get_run_status(run_id)
        assert status.stage == "QUEUED"
        assert status.job_id == job_id
        assert "run_retry" in run_events(service, run_id)

        clock.advance(3600)
        assert service.sweep() == 1

        assert service.get_run_status(run_id).stage == "DONE"
        job = service.queue.get(job_id)
        assert job.status == "COMPLETED"
        assert job.attempts == 2

    def test_resume_failing_every_attempt_fails_job_and_run(self, make_service, clock, sandbox_service):
        service = make_service(rate_limits=limits(sandbox_create=1))
        service.request_sandbox("someone-else")
        run_id = service.request_generation("project-1", "A counter app")
        job_id = service.get_run_status(run_id).job_id

        sandbox_service.create_failures = 3
        for _ in range(3):
            clock.advance(3600)
            service.sweep()

        job = service.queue.get(job_id)
        assert job.status == "FAILED"
        assert job.attempts == 3
        status = service.get_run_status(run_id)
        assert status.stage == "ERROR"
        assert status.error["kind"] == "sandbox_service_error"

    def test_run_failing_on_resume_fails_its_job(self, make_service, clock, generator):
        service = make_service(rate_limits=limits(sandbox_create=1))
        service.request_sandbox("someone-else")
        run_id = service.request_generation("project-1", "A counter app")
        job_id = service.get_run_status(run_id).job_id

        generator.replies["coder"] = ["Here is your app!"]
        clock.advance(3600)
        service.sweep()

        assert service.get_run_status(run_id).stage == "ERROR"
        job = service.queue.get(job_id)
        assert job.status == "FAILED"
        assert job.attempts == 1
        assert "ended in ERROR" in job.last_error


class TestCircuitBreaker:
    def test_outage_opens_breaker_and_recovery_drains_queue(self, service, sandbox_service, clock):
        sandbox_service.create_failures = 5
        for _ in range(5):
            with pytest.raises(SandboxServiceError):
                service.request_sandbox("project-1")

        pending = service.request_sandbox("project-1")

        assert pending.status == "pending"
        assert pending.retry_after == pytest.approx(60)
        health = service.get_health()
        assert health.status == "degraded"
        assert health.breaker.state == "OPEN"
        assert health.queue_depth["PENDING"] == 1

        # Sweeps are skipped while the circuit is open
        assert service.sweep() == 0

        clock.advance(60)
        assert service.sweep() == 1

        assert service.lifecycle.find_active("project-1") is not None
        health = service.get_health()
        assert health.status == "ok"
        assert health.breaker.state == "CLOSED"


class TestHealth:
    def test_health_view(self, service):
        service.request_sandbox("project-1")

        health = service.get_health()

        assert health.status == "ok"
        assert health.breaker.consecutive_failures == 0
        assert health.rate_limit_usage["sandbox_create"].count == 1
        assert health.rate_limit_usage["sandbox_create"].limit == 100
        assert health.queue_depth == {"PENDING": 0, "PROCESSING": 0, "COMPLETED": 0, "FAILED": 0}
