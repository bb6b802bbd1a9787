"""Configuration module for Forgebox settings.

Several subsystems import it at startup (DB, state store, API, CLI). Values
come from ``FORGEBOX_*`` environment variables or a local ``.env`` file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RATE_LIMITS: Dict[str, int] = {
    # Sandbox creation is the scarce upstream resource
    "sandbox_create": 100,
    "sandbox_command": 1000,
    "code_generation": 200,
}


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="FORGEBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///forgebox.db"

    # Where limiter windows and breaker state live: sql | redis | memory
    state_backend: str = "sql"
    redis_url: str = "redis://localhost:6379/1"

    # Rate limiting
    rate_limit_window_seconds: float = 3600.0
    rate_limits: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))
    default_rate_limit: int = 100
    queue_reserved_share: float = 0.5

    # Circuit breaker (single breaker guarding the sandbox service)
    breaker_name: str = "sandbox"
    breaker_failure_threshold: int = 5
    breaker_cooldown_seconds: float = 60.0
    breaker_max_cooldown_seconds: float = 900.0
    breaker_backoff_multiplier: float = 2.0
    breaker_probe_timeout_seconds: float = 300.0

    # Job queue
    job_max_attempts: int = 3
    job_claim_ttl_seconds: float = 900.0
    job_retention_days: int = 7
    sweep_interval_seconds: float = 120.0
    sweep_in_process: bool = False

    # Agent pipeline
    max_repair_attempts: int = 2
    agent_max_output_attempts: int = 3
    anthropic_model: str = "claude-sonnet-4-5"
    selector_model: str = "claude-haiku-4-5"
    coder_max_tokens: int = 16000

    # Sandbox service
    sandbox_backend: str = "local"
    sandbox_api_url: Optional[str] = None
    sandbox_api_key: Optional[str] = None
    sandbox_root: str = ".forgebox/sandboxes"
    command_timeout_seconds: float = 120.0
    sandbox_create_timeout_seconds: float = 60.0

    # API
    api_key: Optional[str] = None
    env: str = "development"


settings = Settings()


def get_database_url() -> str:
    """Get database URL from environment or config.

    Priority:
    1. DATABASE_URL environment variable
    2. settings.database_url

    Relative SQLite paths are resolved against the repository root so that
    the API server, the CLI sweep and scripts all share one database file.
    """
    url = os.getenv("DATABASE_URL", settings.database_url)

    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        db_path = Path(url[len("sqlite:///"):])
        if not db_path.is_absolute():
            # src/forgebox/config.py -> src/forgebox -> src -> repo root
            repo_root = Path(__file__).resolve().parents[2]
            db_path = (repo_root / db_path).resolve()
        url = f"sqlite:///{db_path.as_posix()}"

    return url


def get_api_key() -> Optional[str]:
    """Return the API key, honouring FORGEBOX_API_KEY_FILE (Docker secrets)."""
    key_file = os.getenv("FORGEBOX_API_KEY_FILE")
    if key_file:
        path = Path(key_file)
        if path.exists():
            return path.read_text(encoding="utf-8").strip() or None
    return settings.api_key


def is_production() -> bool:
    return settings.env.lower() == "production"


def validate_startup_config(config: Optional[Settings] = None) -> None:
    """Reject configuration values that would break admission control.

    Raises:
        ValueError: Describing every invalid setting found.
    """
    cfg = config or settings
    problems = []

    if cfg.state_backend not in ("sql", "redis", "memory"):
        problems.append(f"state_backend must be sql, redis or memory (got {cfg.state_backend!r})")
    if cfg.sandbox_backend not in ("local", "http"):
        problems.append(f"sandbox_backend must be local or http (got {cfg.sandbox_backend!r})")
    if cfg.sandbox_backend == "http" and not cfg.sandbox_api_url:
        problems.append("sandbox_api_url is required when sandbox_backend=http")
    if cfg.rate_limit_window_seconds <= 0:
        problems.append("rate_limit_window_seconds must be positive")
    for operation, limit in cfg.rate_limits.items():
        if limit < 1:
            problems.append(f"rate limit for {operation!r} must be >= 1 (got {limit})")
    if cfg.default_rate_limit < 1:
        problems.append("default_rate_limit must be >= 1")
    if not 0 < cfg.queue_reserved_share <= 1:
        problems.append("queue_reserved_share must be in (0, 1]")
    if cfg.breaker_failure_threshold < 1:
        problems.append("breaker_failure_threshold must be >= 1")
    if cfg.breaker_cooldown_seconds <= 0:
        problems.append("breaker_cooldown_seconds must be positive")
    if cfg.breaker_max_cooldown_seconds < cfg.breaker_cooldown_seconds:
        problems.append("breaker_max_cooldown_seconds must be >= breaker_cooldown_seconds")
    if cfg.breaker_backoff_multiplier < 1:
        problems.append("breaker_backoff_multiplier must be >= 1")
    if cfg.job_max_attempts < 1:
        problems.append("job_max_attempts must be >= 1")
    if cfg.max_repair_attempts < 0:
        problems.append("max_repair_attempts must be >= 0")
    if cfg.agent_max_output_attempts < 1:
        problems.append("agent_max_output_attempts must be >= 1")
    if cfg.command_timeout_seconds <= 0:
        problems.append("command_timeout_seconds must be positive")

    if problems:
        raise ValueError("Invalid Forgebox configuration: " + "; ".join(problems))
