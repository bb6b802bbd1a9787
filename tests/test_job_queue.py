"""Tests for the durable job queue and its sweep."""

from datetime import timedelta

import pytest

from forgebox.exceptions import CircuitOpenError, JobFailed, JobNotFound, RateLimitExceeded, SandboxServiceError
from forgebox.job_queue import JobQueue
from forgebox.models import JobStatus, PendingJob, utcnow


def statuses(queue, owner_id=None):
    jobs = queue.list_for_owner(owner_id) if owner_id else []
    return [job.status for job in jobs]


class Recorder:
    def __init__(self, fail_with=None):
        self.seen = []
        self.fail_with = fail_with

    def __call__(self, job):
        self.seen.append(job.payload.get("n"))
        if self.fail_with is not None:
            raise self.fail_with


class TestEnqueue:
    def test_enqueue_persists_pending_job(self, queue):
        job_id = queue.enqueue("sandbox_create", {"owner_id": "p1"}, owner_id="p1")

        job = queue.get(job_id)
        assert job.status == "PENDING"
        assert job.action == "sandbox_create"
        assert job.payload == {"owner_id": "p1"}
        assert job.attempts == 0
        assert job.max_attempts == 3

    def test_get_unknown_job(self, queue):
        with pytest.raises(JobNotFound):
            queue.get(999)

    def test_depth_by_status_lists_every_status(self, queue):
        queue.enqueue("sandbox_create", {})
        assert queue.depth_by_status() == {"PENDING": 1, "PROCESSING": 0, "COMPLETED": 0, "FAILED": 0}

    def test_pending_count_per_operation_type(self, queue):
        queue.enqueue("sandbox_create", {})
        queue.enqueue("sandbox_create", {})
        queue.enqueue("code_generation", {})
        assert queue.pending_count("sandbox_create") == 2
        assert queue.pending_count("sandbox_command") == 0


class TestSweep:
    def test_processes_fifo_and_marks_completed(self, queue):
        recorder = Recorder()
        queue.register("work", recorder)
        for n in range(3):
            queue.enqueue("sandbox_create", {"n": n}, action="work", owner_id="p1")

        assert queue.sweep() == 3

        assert recorder.seen == [0, 1, 2]
        assert statuses(queue, "p1") == ["COMPLETED"] * 3

    def test_sweeping_twice_does_not_rerun_completed_jobs(self, queue):
        recorder = Recorder()
        queue.register("work", recorder)
        queue.enqueue("sandbox_create", {"n": 1}, action="work")

        queue.sweep()
        assert queue.sweep() == 0
        assert recorder.seen == [1]

    def test_never_exceeds_remaining_budget(self, session_factory, store, clock, breaker):
        from forgebox.rate_limiter import RateLimiter

        limiter = RateLimiter(store, {"sandbox_create": 2}, clock=clock)
        queue = JobQueue(session_factory, limiter, breaker)
        limiter.set_reservation_source(queue.pending_count)

        def handler(job):
            limiter.require("sandbox_create")

        queue.register("work", handler)
        for n in range(5):
            queue.enqueue("sandbox_create", {"n": n}, action="work", owner_id="p1")

        assert queue.sweep() == 2
        assert statuses(queue, "p1") == ["COMPLETED", "COMPLETED", "PENDING", "PENDING", "PENDING"]

        clock.advance(3600)
        assert queue.sweep() == 2

    def test_skipped_entirely_while_breaker_open(self, queue, breaker):
        recorder = Recorder()
        queue.register("work", recorder)
        queue.enqueue("sandbox_create", {"n": 1}, action="work")
        for _ in range(5):
            with pytest.raises(SandboxServiceError):
                breaker.execute(_upstream_down)

        assert queue.sweep() == 0
        assert recorder.seen == []

    def test_transient_error_releases_claim_without_consuming_attempt(self, queue):
        recorder = Recorder(fail_with=CircuitOpenError("sandbox", 30.0))
        queue.register("work", recorder)
        job_id = queue.enqueue("sandbox_create", {"n": 1}, action="work")
        queue.enqueue("sandbox_create", {"n": 2}, action="work")

        assert queue.sweep() == 0

        job = queue.get(job_id)
        assert job.status == "PENDING"
        assert job.attempts == 0
        assert "open" in job.last_error
        # The rest of that operation type waits for the next pass
        assert recorder.seen == [1]

    def test_failures_retry_until_max_attempts(self, queue):
        queue.register("work", Recorder(fail_with=RuntimeError("boom")))
        job_id = queue.enqueue("sandbox_create", {"n": 1}, action="work")

        for expected_attempts in (1, 2):
            queue.sweep()
            job = queue.get(job_id)
            assert job.status == "PENDING"
            assert job.attempts == expected_attempts

        queue.sweep()
        job = queue.get(job_id)
        assert job.status == "FAILED"
        assert job.attempts == 3
        assert job.last_error == "boom"
        assert job.completed_at is not None

    def test_job_failed_is_not_retried(self, queue):
        queue.register("work", Recorder(fail_with=JobFailed("run ended in ERROR", cause_kind="malformed_agent_output")))
        job_id = queue.enqueue("sandbox_create", {"n": 1}, action="work")

        queue.sweep()

        job = queue.get(job_id)
        assert job.status == "FAILED"
        assert job.attempts == 1
        assert job.last_error == "run ended in ERROR"

    def test_unknown_action_fails_job(self, queue):
        job_id = queue.enqueue("sandbox_create", {}, action="teleport")

        queue.sweep()

        job = queue.get(job_id)
        assert job.status == "FAILED"
        assert "teleport" in job.last_error

    def test_job_claimed_elsewhere_is_skipped(self, queue, session_factory):
        recorder = Recorder()
        queue.register("work", recorder)
        job_id = queue.enqueue("sandbox_create", {"n": 1}, action="work")
        # Another worker claims the job between listing and claiming
        assert queue._claim(job_id) is not None

        assert queue.sweep() == 0
        assert recorder.seen == []

    def test_overlapping_sweep_in_process_is_skipped(self, queue):
        inner = []
        queue.register("work", lambda job: inner.append(queue.sweep()))
        queue.enqueue("sandbox_create", {}, action="work")

        assert queue.sweep() == 1
        assert inner == [0]

    def test_handler_runs_with_reserved_capacity(self, session_factory, store, clock, breaker):
        from forgebox.rate_limiter import RateLimiter

        limiter = RateLimiter(store, {"sandbox_create": 2}, reserved_share=0.5, clock=clock)
        queue = JobQueue(session_factory, limiter, breaker)
        limiter.set_reservation_source(queue.pending_count)
        queue.register("work", lambda job: limiter.require("sandbox_create"))
        queue.enqueue("sandbox_create", {}, action="work")

        # Live traffic is held to the unreserved half while the job waits
        limiter.require("sandbox_create")
        with pytest.raises(RateLimitExceeded):
            limiter.require("sandbox_create")

        assert queue.sweep() == 1


class TestMaintenance:
    def test_requeue_stale_recovers_crashed_claims(self, session_factory, limiter, breaker):
        now = [utcnow()]
        queue = JobQueue(session_factory, limiter, breaker, claim_ttl_seconds=900, now=lambda: now[0])
        job_id = queue.enqueue("sandbox_create", {}, action="work")
        queue._claim(job_id)

        now[0] += timedelta(seconds=899)
        assert queue.requeue_stale() == 0
        now[0] += timedelta(seconds=2)
        assert queue.requeue_stale() == 1

        job = queue.get(job_id)
        assert job.status == "PENDING"
        assert job.last_error == "claim expired"

    def test_purge_finished_respects_retention(self, session_factory, limiter, breaker):
        now = [utcnow()]
        queue = JobQueue(session_factory, limiter, breaker, retention_days=7, now=lambda: now[0])
        queue.register("work", lambda job: None)
        done_id = queue.enqueue("sandbox_create", {}, action="work")
        queue.sweep()
        pending_id = queue.enqueue("sandbox_create", {}, action="other")
        queue.register("other", Recorder(fail_with=CircuitOpenError("sandbox", 1.0)))
        queue.sweep()

        now[0] += timedelta(days=6)
        assert queue.purge_finished() == 0
        now[0] += timedelta(days=2)
        assert queue.purge_finished() == 1

        with pytest.raises(JobNotFound):
            queue.get(done_id)
        assert queue.get(pending_id).status == "PENDING"

        db = session_factory()
        try:
            assert db.query(PendingJob).filter(PendingJob.status == JobStatus.PENDING).count() == 1
        finally:
            db.close()


def _upstream_down():
    raise SandboxServiceError("upstream 503", status_code=503)
