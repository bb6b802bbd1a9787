"""Durable job queue for operations deferred by the limiter or breaker.

Jobs are rows in ``pending_jobs``. The sweep drains them FIFO per operation
type, never spending more than the limiter's remaining budget for that type
in one pass. A job is claimed (PENDING -> PROCESSING, conditioned on its
status) before its handler runs, so overlapping sweeps in other processes
skip it; an in-process lock keeps sweeps in one process single-flight.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .circuit_breaker import CircuitBreaker
from .exceptions import JobFailed, JobNotFound, TransientError
from .models import JobStatus, PendingJob, utcnow
from .rate_limiter import RateLimiter, reserved_capacity
from .schemas import JobResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Job:
    """Detached view of a claimed job handed to handlers."""

    id: int
    operation_type: str
    action: str
    payload: Dict[str, Any] = field(default_factory=dict)
    owner_id: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3


JobHandler = Callable[[Job], Any]


class JobQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        limiter: RateLimiter,
        breaker: CircuitBreaker,
        max_attempts: int = 3,
        claim_ttl_seconds: float = 900.0,
        retention_days: int = 7,
        now: Callable[[], datetime] = utcnow,
        telemetry=None,
    ):
        self._session_factory = session_factory
        self.limiter = limiter
        self.breaker = breaker
        self.max_attempts = max_attempts
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self.retention = timedelta(days=retention_days)
        self.now = now
        self.telemetry = telemetry
        self._handlers: Dict[str, JobHandler] = {}
        self._sweep_lock = threading.Lock()

    def register(self, action: str, handler: JobHandler) -> None:
        self._handlers[action] = handler

    def _emit(self, event: str, job_id: int, operation_type: str, error_kind: Optional[str] = None, **attrs):
        if self.telemetry is not None:
            self.telemetry.emit(
                "job_queue", event, error_kind=error_kind, job_id=job_id, operation_type=operation_type, **attrs
            )

    # -- producers ----------------------------------------------------------

    def enqueue(
        self,
        operation_type: str,
        payload: Dict[str, Any],
        action: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> int:
        """Persist a deferred operation. Returns the job id."""
        db = self._session_factory()
        try:
            job = PendingJob(
                operation_type=operation_type,
                action=action or operation_type,
                payload=payload,
                owner_id=owner_id,
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=self.max_attempts,
                enqueued_at=self.now(),
            )
            db.add(job)
            db.commit()
            job_id = job.id
        finally:
            db.close()

        logger.info(f"[JobQueue] Enqueued job {job_id} ({operation_type}/{action or operation_type})")
        self._emit("enqueued", job_id, operation_type, action=action or operation_type)
        return job_id

    # -- queries ------------------------------------------------------------

    def get(self, job_id: int) -> JobResponse:
        db = self._session_factory()
        try:
            job = db.get(PendingJob, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            return JobResponse.model_validate(job)
        finally:
            db.close()

    def list_for_owner(self, owner_id: str) -> List[JobResponse]:
        db = self._session_factory()
        try:
            jobs = (
                db.query(PendingJob)
                .filter(PendingJob.owner_id == owner_id)
                .order_by(PendingJob.id)
                .all()
            )
            return [JobResponse.model_validate(job) for job in jobs]
        finally:
            db.close()

    def pending_count(self, operation_type: str) -> int:
        db = self._session_factory()
        try:
            return (
                db.query(func.count(PendingJob.id))
                .filter(
                    PendingJob.operation_type == operation_type,
                    PendingJob.status == JobStatus.PENDING,
                )
                .scalar()
                or 0
            )
        finally:
            db.close()

    def depth_by_status(self) -> Dict[str, int]:
        db = self._session_factory()
        try:
            rows = db.query(PendingJob.status, func.count(PendingJob.id)).group_by(PendingJob.status).all()
        finally:
            db.close()
        depth = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            depth[getattr(status, "value", status)] = count
        return depth

    # -- maintenance --------------------------------------------------------

    def requeue_stale(self) -> int:
        """Return jobs stuck in PROCESSING past the claim TTL to PENDING."""
        cutoff = self.now() - self.claim_ttl
        db = self._session_factory()
        try:
            count = (
                db.query(PendingJob)
                .filter(PendingJob.status == JobStatus.PROCESSING, PendingJob.claimed_at < cutoff)
                .update(
                    {
                        PendingJob.status: JobStatus.PENDING,
                        PendingJob.claimed_at: None,
                        PendingJob.last_error: "claim expired",
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        finally:
            db.close()
        if count:
            logger.warning(f"[JobQueue] Requeued {count} stale job(s) claimed before {cutoff.isoformat()}")
        return count

    def purge_finished(self, older_than: Optional[datetime] = None) -> int:
        """Delete COMPLETED/FAILED jobs finished before ``older_than`` (default: retention)."""
        cutoff = older_than or (self.now() - self.retention)
        db = self._session_factory()
        try:
            count = (
                db.query(PendingJob)
                .filter(
                    PendingJob.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]),
                    PendingJob.completed_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        if count:
            logger.info(f"[JobQueue] Purged {count} finished job(s)")
        return count

    # -- sweep --------------------------------------------------------------

    def _pending_by_type(self) -> Dict[str, List[int]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(PendingJob.id, PendingJob.operation_type)
                .filter(PendingJob.status == JobStatus.PENDING)
                .order_by(PendingJob.id)
                .all()
            )
        finally:
            db.close()
        grouped: Dict[str, List[int]] = {}
        for job_id, operation_type in rows:
            grouped.setdefault(operation_type, []).append(job_id)
        return grouped

    def _claim(self, job_id: int) -> Optional[Job]:
        db = self._session_factory()
        try:
            claimed = (
                db.query(PendingJob)
                .filter(PendingJob.id == job_id, PendingJob.status == JobStatus.PENDING)
                .update(
                    {
                        PendingJob.status: JobStatus.PROCESSING,
                        PendingJob.attempts: PendingJob.attempts + 1,
                        PendingJob.claimed_at: self.now(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if claimed != 1:
                return None
            row = db.get(PendingJob, job_id)
            return Job(
                id=row.id,
                operation_type=row.operation_type,
                action=row.action,
                payload=dict(row.payload or {}),
                owner_id=row.owner_id,
                attempts=row.attempts,
                max_attempts=row.max_attempts,
            )
        finally:
            db.close()

    def _finish(self, job_id: int, values: Dict[Any, Any]) -> None:
        db = self._session_factory()
        try:
            db.query(PendingJob).filter(
                PendingJob.id == job_id, PendingJob.status == JobStatus.PROCESSING
            ).update(values, synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def _mark_completed(self, job: Job) -> None:
        self._finish(
            job.id,
            {
                PendingJob.status: JobStatus.COMPLETED,
                PendingJob.completed_at: self.now(),
                PendingJob.last_error: None,
            },
        )
        logger.info(f"[JobQueue] Job {job.id} completed (attempt {job.attempts})")
        self._emit("completed", job.id, job.operation_type, attempts=job.attempts)

    def _release(self, job: Job, error: TransientError) -> None:
        """Undo a claim without consuming an attempt."""
        self._finish(
            job.id,
            {
                PendingJob.status: JobStatus.PENDING,
                PendingJob.attempts: PendingJob.attempts - 1,
                PendingJob.claimed_at: None,
                PendingJob.last_error: error.message,
            },
        )
        logger.info(f"[JobQueue] Job {job.id} deferred again: {error.message}")
        self._emit("deferred", job.id, job.operation_type, error_kind=error.kind)

    def _mark_failed_attempt(self, job: Job, error: str, error_kind: str, terminal: bool = False) -> None:
        exhausted = terminal or job.attempts >= job.max_attempts
        values: Dict[Any, Any] = {PendingJob.last_error: error[:4000], PendingJob.claimed_at: None}
        if exhausted:
            values[PendingJob.status] = JobStatus.FAILED
            values[PendingJob.completed_at] = self.now()
        else:
            values[PendingJob.status] = JobStatus.PENDING
        self._finish(job.id, values)

        if exhausted:
            logger.error(f"[JobQueue] Job {job.id} failed after {job.attempts} attempt(s): {error}")
            self._emit("failed", job.id, job.operation_type, error_kind=error_kind, attempts=job.attempts)
        else:
            logger.warning(
                f"[JobQueue] Job {job.id} attempt {job.attempts}/{job.max_attempts} failed, "
                f"will retry: {error}"
            )
            self._emit("retry", job.id, job.operation_type, error_kind=error_kind, attempts=job.attempts)

    def _run(self, job: Job) -> str:
        """Run one claimed job. Returns 'done', 'failed' or 'deferred'."""
        handler = self._handlers.get(job.action)
        if handler is None:
            self._mark_failed_attempt(
                job, f"No handler registered for action '{job.action}'", "unknown_action", terminal=True
            )
            return "failed"

        try:
            with reserved_capacity():
                handler(job)
        except TransientError as e:
            self._release(job, e)
            return "deferred"
        except JobFailed as e:
            self._mark_failed_attempt(job, e.message, e.cause_kind, terminal=True)
            return "failed"
        except Exception as e:
            logger.error(f"[JobQueue] Handler for job {job.id} raised", exc_info=True)
            self._mark_failed_attempt(job, str(e) or type(e).__name__, getattr(e, "kind", type(e).__name__))
            return "failed"

        self._mark_completed(job)
        return "done"

    def sweep(self) -> int:
        """Drain admissible pending jobs. Returns how many jobs were executed."""
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("[JobQueue] Sweep already running in this process, skipping")
            return 0
        try:
            return self._sweep()
        finally:
            self._sweep_lock.release()

    def _sweep(self) -> int:
        self.requeue_stale()

        if self.breaker.is_open():
            logger.info("[JobQueue] Circuit breaker is open, skipping sweep")
            return 0

        processed = 0
        for operation_type, job_ids in self._pending_by_type().items():
            budget = self.limiter.remaining(operation_type, include_reserved=True)
            if budget <= 0:
                logger.info(f"[JobQueue] No {operation_type} budget left this window, {len(job_ids)} job(s) wait")
                continue

            for job_id in job_ids:
                if budget <= 0:
                    break
                job = self._claim(job_id)
                if job is None:
                    # Claimed by a concurrent sweep
                    continue
                outcome = self._run(job)
                if outcome == "deferred":
                    break
                budget -= 1
                processed += 1

        if processed:
            logger.info(f"[JobQueue] Sweep processed {processed} job(s)")
        return processed
