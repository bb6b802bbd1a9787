"""Pytest configuration and fixtures for Forgebox tests"""

import os
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

# Ensure src directory is in Python path before any imports
project_root = Path(__file__).resolve().parent.parent
src_path = project_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["TESTING"] = "1"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from forgebox import models  # noqa: F401 - registers tables
from forgebox.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from forgebox.config import Settings
from forgebox.database import Base
from forgebox.exceptions import SandboxNotFound, SandboxServiceError
from forgebox.job_queue import JobQueue
from forgebox.orchestrator import build_service
from forgebox.rate_limiter import RateLimiter
from forgebox.sandbox.base import CommandResult
from forgebox.sandbox.lifecycle import SandboxLifecycleManager
from forgebox.store import MemoryStateStore
from forgebox.telemetry import TelemetryEmitter


class FakeClock:
    """Epoch-seconds clock the tests advance by hand."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSandboxService:
    """In-memory SandboxService.

    ``create_failures`` makes the next N creates raise SandboxServiceError;
    ``results`` maps a command to a list of CommandResults consumed in order
    (the last one repeats). Unknown commands succeed.
    """

    def __init__(self):
        self.created: List[str] = []
        self.destroyed: List[str] = []
        self.files: Dict[str, Dict[str, str]] = {}
        self.commands: List[tuple] = []
        self.results: Dict[str, List[CommandResult]] = {}
        self.create_failures = 0
        self.create_hook: Optional[Callable[[], None]] = None
        self._lock = threading.Lock()

    def create(self, template=None) -> str:
        if self.create_hook is not None:
            self.create_hook()
        with self._lock:
            if self.create_failures > 0:
                self.create_failures -= 1
                raise SandboxServiceError("upstream returned 503", status_code=503)
            handle = f"fake-{len(self.created) + 1}"
            self.created.append(handle)
            self.files[handle] = {}
        return handle

    def run_command(self, handle, command, timeout, on_output=None) -> CommandResult:
        if handle not in self.files:
            raise SandboxNotFound(f"Sandbox {handle} does not exist")
        self.commands.append((handle, command))
        queue = self.results.get(command)
        if queue:
            result = queue.pop(0) if len(queue) > 1 else queue[0]
        elif command.startswith("echo"):
            result = CommandResult(stdout="health_check\n", stderr="", exit_code=0)
        else:
            result = CommandResult(stdout="ok\n", stderr="", exit_code=0)
        if on_output is not None and result.stdout:
            on_output("stdout", result.stdout)
        return result

    def write_files(self, handle, files) -> None:
        if handle not in self.files:
            raise SandboxNotFound(f"Sandbox {handle} does not exist")
        self.files[handle].update(files)

    def destroy(self, handle) -> None:
        self.destroyed.append(handle)
        self.files.pop(handle, None)


PLAN_JSON = '{"steps": ["Create the page", "Add the counter component"], "assumptions": [], "risks": []}'
CODE_JSON = '{"files": [{"path": "app/page.tsx", "content": "export default function Page() { return null }"}], "summary": "A page"}'


class FakeGenerator:
    """TextGenerator that answers by stage, recognised from the system prompt.

    Each stage has a list of replies consumed in order (the last repeats).
    """

    def __init__(self, selector=None, planner=None, coder=None):
        self.replies = {
            "selector": list(selector or ["nextjs"]),
            "planner": list(planner or [PLAN_JSON]),
            "coder": list(coder or [CODE_JSON]),
        }
        self.calls: List[dict] = []

    @staticmethod
    def _stage(system: str) -> str:
        if system.startswith("You classify"):
            return "selector"
        if system.startswith("You are a senior engineer"):
            return "planner"
        return "coder"

    def generate(self, system, prompt, model=None, temperature=0.2, max_tokens=4096) -> str:
        stage = self._stage(system)
        self.calls.append({"stage": stage, "prompt": prompt, "model": model, "temperature": temperature})
        replies = self.replies[stage]
        return replies.pop(0) if len(replies) > 1 else replies[0]

    def prompts(self, stage: str) -> List[str]:
        return [call["prompt"] for call in self.calls if call["stage"] == stage]


@pytest.fixture(scope="function")
def db_engine():
    """Fresh in-memory database per test; StaticPool shares one connection."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def telemetry(session_factory):
    return TelemetryEmitter(session_factory)


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(
        store,
        {"sandbox_create": 100, "sandbox_command": 1000, "code_generation": 200},
        window_seconds=3600,
        clock=clock,
    )


@pytest.fixture
def breaker(store, clock, telemetry):
    return CircuitBreaker(
        "sandbox",
        store,
        CircuitBreakerConfig(failure_threshold=5, cooldown_seconds=60, max_cooldown_seconds=900),
        clock=clock,
        telemetry=telemetry,
    )


@pytest.fixture
def queue(session_factory, limiter, breaker, telemetry):
    job_queue = JobQueue(session_factory, limiter, breaker, max_attempts=3, telemetry=telemetry)
    limiter.set_reservation_source(job_queue.pending_count)
    return job_queue


@pytest.fixture
def sandbox_service():
    return FakeSandboxService()


@pytest.fixture
def lifecycle(session_factory, sandbox_service, limiter, breaker, telemetry):
    return SandboxLifecycleManager(session_factory, sandbox_service, limiter, breaker, telemetry=telemetry)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        values = dict(
            state_backend="memory",
            rate_limits={"sandbox_create": 100, "sandbox_command": 1000, "code_generation": 200},
            max_repair_attempts=2,
            agent_max_output_attempts=3,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def make_service(session_factory, store, clock, sandbox_service, generator, make_settings):
    """Build a ForgeboxService over the test database and fakes."""

    def _make(generator_override=None, **settings_overrides):
        return build_service(
            make_settings(**settings_overrides),
            session_factory=session_factory,
            store=store,
            generator=generator_override or generator,
            sandbox_service=sandbox_service,
            clock=clock,
        )

    return _make


@pytest.fixture
def service(make_service):
    return make_service()
