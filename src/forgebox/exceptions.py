"""Custom exceptions for Forgebox.

Every error carries a ``kind`` (the taxonomy name used by telemetry and the
API) and can render itself as the structured error returned to callers.
Transient errors are absorbed by queueing; everything else is fatal for the
request that raised it.
"""

from typing import Any, Dict, Optional


class ForgeboxError(Exception):
    """Base exception for all Forgebox errors."""

    kind = "forgebox_error"
    transient = False

    def __init__(self, message: str, attempts: Optional[int] = None, last_error: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for callers and persisted run records."""
        data: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.attempts is not None:
            data["attempts"] = self.attempts
        if self.last_error is not None:
            data["last_error"] = self.last_error
        return data


class TransientError(ForgeboxError):
    """Admission was refused for now; the operation should be queued."""

    kind = "transient"
    transient = True

    def __init__(self, message: str, operation_type: str, retry_after: float = 0.0):
        super().__init__(message)
        self.operation_type = operation_type
        self.retry_after = max(0.0, retry_after)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["operation_type"] = self.operation_type
        data["retry_after"] = round(self.retry_after, 3)
        return data


class RateLimitExceeded(TransientError):
    """The operation's rate-limit window is exhausted."""

    kind = "rate_limit_exceeded"

    def __init__(self, operation_type: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded for {operation_type}; retry in {retry_after:.1f}s",
            operation_type=operation_type,
            retry_after=retry_after,
        )


class CircuitOpenError(TransientError):
    """The circuit breaker is short-circuiting calls to the upstream."""

    kind = "circuit_open"

    def __init__(self, name: str, retry_after: float, operation_type: str = "sandbox_create"):
        super().__init__(
            f"Circuit breaker '{name}' is open; retry in {retry_after:.1f}s",
            operation_type=operation_type,
            retry_after=retry_after,
        )
        self.name = name


class SandboxBusy(TransientError):
    """Another caller is already provisioning a sandbox for this owner."""

    kind = "sandbox_busy"

    def __init__(self, owner_id: str):
        super().__init__(
            f"Sandbox for {owner_id} is already being provisioned",
            operation_type="sandbox_create",
            retry_after=1.0,
        )
        self.owner_id = owner_id


class SandboxError(ForgeboxError):
    """Base exception for sandbox lifecycle errors."""

    kind = "sandbox_error"


class SandboxServiceError(SandboxError):
    """The remote sandbox service failed (network, 5xx, 429, crash).

    This is the only error class the circuit breaker counts as a failure.
    """

    kind = "sandbox_service_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SandboxTimeout(SandboxError):
    """A sandbox command exceeded its wall-clock timeout and was killed."""

    kind = "sandbox_timeout"

    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {timeout:.0f}s: {command}")
        self.command = command
        self.timeout = timeout


class SandboxNotFound(SandboxError):
    kind = "sandbox_not_found"


class InvalidSessionTransition(SandboxError):
    """A sandbox session status change would move backwards."""

    kind = "invalid_session_transition"


class AgentError(ForgeboxError):
    """Base exception for agent pipeline errors."""

    kind = "agent_error"


class TextGenerationError(AgentError):
    """The text-generation backend raised instead of returning text."""

    kind = "text_generation_error"


class MalformedAgentOutput(AgentError):
    """A pipeline stage kept returning output that could not be parsed."""

    kind = "malformed_agent_output"

    def __init__(self, stage: str, attempts: int, raw_output: str = "", reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"{stage} returned malformed output after {attempts} attempts{detail}",
            attempts=attempts,
            last_error=reason or None,
        )
        self.stage = stage
        self.raw_output = raw_output

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["stage"] = self.stage
        data["raw_output"] = self.raw_output[:2000]
        return data


class RepairBudgetExhausted(AgentError):
    """Validation kept failing after the maximum number of repair cycles."""

    kind = "repair_budget_exhausted"

    def __init__(self, repair_count: int, last_report: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Validation still failing after {repair_count} repair attempts",
            attempts=repair_count,
        )
        self.repair_count = repair_count
        self.last_report = last_report

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["last_report"] = self.last_report
        return data


class JobNotFound(ForgeboxError):
    kind = "job_not_found"


class RunNotFound(ForgeboxError):
    kind = "run_not_found"


class InvalidRunTransition(ForgeboxError):
    kind = "invalid_run_transition"


class JobFailed(ForgeboxError):
    """Raised by a job handler when its work failed for good; the job must not be retried."""

    kind = "job_failed"

    def __init__(self, message: str, cause_kind: Optional[str] = None):
        super().__init__(message)
        self.cause_kind = cause_kind or self.kind
