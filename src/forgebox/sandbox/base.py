"""Sandbox service protocol and the structured results it produces."""

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

# Sink for incremental output: called with ("stdout" | "stderr", chunk)
OutputSink = Callable[[str, str], None]

# Output kept per stream; older output is dropped from the front
MAX_CAPTURED_CHARS = 64 * 1024

# Exit code reported for killed (timed out) commands
TIMEOUT_EXIT_CODE = -1
# Shell "command not found"
COMMAND_NOT_FOUND_EXIT_CODE = 127


@dataclass
class CommandResult:
    """Raw result of one command executed by a sandbox service."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False
    duration_seconds: float = 0.0


@dataclass
class ValidationReport:
    """Structured outcome of running a command (or command sequence) in a sandbox."""

    stdout: str
    stderr: str
    exit_code: int
    passed: bool
    command: str = ""
    timed_out: bool = False
    skipped: bool = False
    duration_seconds: float = 0.0
    steps: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_result(cls, command: str, result: CommandResult) -> "ValidationReport":
        return cls(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            passed=result.exit_code == 0 and not result.timed_out,
            command=command,
            timed_out=result.timed_out,
            duration_seconds=result.duration_seconds,
        )

    @classmethod
    def combine(cls, reports: List["ValidationReport"]) -> "ValidationReport":
        """Merge per-step reports; the combined report fails if any step failed."""
        failed = [r for r in reports if not r.passed and not r.skipped]
        first_failure = failed[0] if failed else None
        return cls(
            stdout="\n".join(f"$ {r.command}\n{r.stdout}".rstrip() for r in reports),
            stderr="\n".join(f"$ {r.command}\n{r.stderr}".rstrip() for r in reports if r.stderr),
            exit_code=first_failure.exit_code if first_failure else 0,
            passed=not failed,
            command=" && ".join(r.command for r in reports),
            timed_out=any(r.timed_out for r in reports),
            skipped=bool(reports) and all(r.skipped for r in reports),
            duration_seconds=sum(r.duration_seconds for r in reports),
            steps=[
                {
                    "command": r.command,
                    "exit_code": r.exit_code,
                    "passed": r.passed,
                    "skipped": r.skipped,
                    "timed_out": r.timed_out,
                }
                for r in reports
            ],
        )

    def failure_context(self, limit: int = 8000) -> str:
        """Combined stdout/stderr fed back to the coder on a repair cycle."""
        text = f"Command: {self.command}\nExit code: {self.exit_code}\n"
        if self.timed_out:
            text += "The command timed out and was killed.\n"
        text += f"--- stderr ---\n{self.stderr}\n--- stdout ---\n{self.stdout}\n"
        return text[-limit:]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationReport":
        return cls(**data)


class SandboxService(Protocol):
    """Remote (or local) execution environment; assumed unreliable.

    Implementations raise ``SandboxServiceError`` for upstream failures and
    report command timeouts through ``CommandResult.timed_out``.
    """

    def create(self, template: Optional[str] = None) -> str:
        """Provision a sandbox and return its handle."""
        ...

    def run_command(
        self,
        handle: str,
        command: str,
        timeout: float,
        on_output: Optional[OutputSink] = None,
    ) -> CommandResult:
        ...

    def write_files(self, handle: str, files: Dict[str, str]) -> None:
        ...

    def destroy(self, handle: str) -> None:
        ...


def bounded_append(buffer: List[str], size: List[int], chunk: str) -> None:
    """Append ``chunk`` keeping roughly the last MAX_CAPTURED_CHARS characters."""
    buffer.append(chunk)
    size[0] += len(chunk)
    while size[0] > MAX_CAPTURED_CHARS and len(buffer) > 1:
        size[0] -= len(buffer.pop(0))
