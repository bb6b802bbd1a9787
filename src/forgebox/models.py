"""Database models for sandbox sessions, admission state, jobs and agent runs"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    Integer,
    JSON,
    String,
    Text,
)

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Sandbox session states; transitions only move forward"""

    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RunStage(str, Enum):
    """Agent run stages"""

    QUEUED = "QUEUED"  # Waiting on rate limiter / circuit breaker admission
    PLANNING = "PLANNING"
    CODING = "CODING"
    VALIDATING = "VALIDATING"
    REPAIRING = "REPAIRING"
    DONE = "DONE"
    ERROR = "ERROR"


class SandboxSession(Base):
    """A remote sandbox owned by one project/fragment"""

    __tablename__ = "sandbox_sessions"

    id = Column(String, primary_key=True, index=True)
    handle = Column(String, nullable=True)  # Upstream sandbox id, set once Running
    owner_id = Column(String, nullable=False, index=True)
    # Mirrors owner_id while the session is Provisioning/Running and is NULL
    # afterwards; the unique index enforces one active session per owner.
    active_owner_id = Column(String, nullable=True, unique=True)
    template = Column(String, nullable=True)
    status = Column(SQLEnum(SessionStatus), nullable=False, default=SessionStatus.PROVISIONING)
    status_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_used_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    stopped_at = Column(DateTime(timezone=True), nullable=True)


class RateLimitWindow(Base):
    """Fixed-window counter for one operation type"""

    __tablename__ = "rate_limit_windows"

    operation_type = Column(String, primary_key=True)
    window_start = Column(Float, nullable=False)  # Epoch seconds
    count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)


class CircuitBreakerState(Base):
    """Durable state for one circuit breaker, shared across processes"""

    __tablename__ = "circuit_breakers"

    name = Column(String, primary_key=True)
    state = Column(SQLEnum(BreakerState), nullable=False, default=BreakerState.CLOSED)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    opened_at = Column(Float, nullable=True)
    next_probe_at = Column(Float, nullable=True)
    probe_in_flight = Column(Boolean, nullable=False, default=False)
    probe_started_at = Column(Float, nullable=True)
    cooldown_seconds = Column(Float, nullable=False, default=60.0)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class PendingJob(Base):
    """Deferred operation waiting for admission; drained by the sweep"""

    __tablename__ = "pending_jobs"

    # Autoincrement id doubles as the FIFO ordering key
    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_type = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    owner_id = Column(String, nullable=True, index=True)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)

    enqueued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class AgentRun(Base):
    """One end-to-end generation / validation / repair cycle"""

    __tablename__ = "agent_runs"

    id = Column(String, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    fragment_id = Column(String, nullable=True, index=True)
    user_request = Column(Text, nullable=False)
    stage = Column(SQLEnum(RunStage), nullable=False, default=RunStage.PLANNING)
    # Stage to continue from when a queued run is resumed
    resume_stage = Column(SQLEnum(RunStage), nullable=True)

    repair_count = Column(Integer, nullable=False, default=0)
    max_repairs = Column(Integer, nullable=False, default=2)

    # Intermediate outputs persisted so a resumed run skips completed stages
    framework = Column(String, nullable=True)
    plan = Column(JSON, nullable=True)
    files = Column(JSON, nullable=True)
    sandbox_session_id = Column(String, nullable=True)
    last_report = Column(JSON, nullable=True)

    error_kind = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    error_detail = Column(JSON, nullable=True)
    job_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class TelemetryEvent(Base):
    """Lifecycle / error event recorded for every pipeline stage"""

    __tablename__ = "telemetry_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stage = Column(String, nullable=False, index=True)
    event = Column(String, nullable=False)
    run_id = Column(String, nullable=True, index=True)
    error_kind = Column(String, nullable=True)
    attributes = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
