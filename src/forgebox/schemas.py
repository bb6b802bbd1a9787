"""Pydantic schemas for API requests and responses"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GenerationRequest(BaseModel):
    """Request to start a new agent run"""

    project_id: str = Field(..., min_length=1, description="Project the generated app belongs to")
    user_request: str = Field(..., min_length=1, description="Natural-language description of the app")
    fragment_id: Optional[str] = Field(None, description="Fragment that will own the sandbox")

    @field_validator("user_request")
    @classmethod
    def strip_request(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("user_request must not be blank")
        return v


class GenerationAccepted(BaseModel):
    run_id: str
    stage: str
    job_id: Optional[int] = None


class RunStatusResponse(BaseModel):
    """Current state of an agent run"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    fragment_id: Optional[str] = None
    stage: str
    repair_count: int
    max_repairs: int
    framework: Optional[str] = None
    plan: Optional[Dict[str, Any]] = None
    files: Optional[List[Dict[str, Any]]] = None
    sandbox_session_id: Optional[str] = None
    last_report: Optional[Dict[str, Any]] = None
    job_id: Optional[int] = None
    error: Optional[Dict[str, Any]] = Field(None, description="Structured error for runs in ERROR")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("stage", mode="before")
    @classmethod
    def stage_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class SandboxRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, description="Project or fragment id requesting a sandbox")
    framework: Optional[str] = Field(None, description="Stack whose template to boot")


class SandboxSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    handle: Optional[str] = None
    template: Optional[str] = None
    status: str
    status_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class SandboxRequestResponse(BaseModel):
    """Either a ready session or the job id the request was queued under"""

    status: str = Field(..., description="ready or pending")
    session: Optional[SandboxSessionResponse] = None
    job_id: Optional[int] = None
    retry_after: Optional[float] = None


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    operation_type: str
    action: str
    payload: Dict[str, Any]
    owner_id: Optional[str] = None
    status: str
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    enqueued_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class OperationUsage(BaseModel):
    count: int
    limit: int
    remaining: int
    window_resets_in: float


class BreakerSnapshot(BaseModel):
    name: str
    state: str
    consecutive_failures: int
    opened_at: Optional[float] = None
    next_probe_at: Optional[float] = None
    probe_in_flight: bool = False
    cooldown_seconds: float


class HealthResponse(BaseModel):
    """Operational health view"""

    status: str = Field(..., description="ok or degraded")
    breaker: BreakerSnapshot
    rate_limit_usage: Dict[str, OperationUsage]
    queue_depth: Dict[str, int]


class SweepResponse(BaseModel):
    processed: int = Field(..., description="Jobs executed in this pass")
    breaker_state: str
    queue_depth: Dict[str, int]
