"""Sandbox services and session lifecycle management."""

from .base import CommandResult, SandboxService, ValidationReport
from .http import HttpSandboxService
from .lifecycle import SandboxLifecycleManager
from .local import LocalSandboxService

__all__ = [
    "CommandResult",
    "HttpSandboxService",
    "LocalSandboxService",
    "SandboxLifecycleManager",
    "SandboxService",
    "ValidationReport",
    "build_sandbox_service",
]


def build_sandbox_service(config) -> SandboxService:
    """Create the configured sandbox service adapter."""
    if config.sandbox_backend == "http":
        return HttpSandboxService(
            config.sandbox_api_url,
            api_key=config.sandbox_api_key,
            create_timeout=config.sandbox_create_timeout_seconds,
        )
    return LocalSandboxService(config.sandbox_root)
