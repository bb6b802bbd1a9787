"""Sandbox service backed by local working directories and subprocesses.

Each sandbox is a directory under ``root``; commands run through the shell
with that directory as cwd. Output is streamed line by line from reader
threads to the caller's sink, and a command that outlives its timeout has
its whole process group killed.
"""

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, IO, List, Optional

from ..exceptions import SandboxNotFound, SandboxServiceError
from .base import TIMEOUT_EXIT_CODE, CommandResult, OutputSink, bounded_append

logger = logging.getLogger(__name__)

# Grace period for reader threads to drain pipes after the process exits
READER_JOIN_TIMEOUT = 5.0


class LocalSandboxService:
    def __init__(self, root: str = ".forgebox/sandboxes", env: Optional[Dict[str, str]] = None):
        self.root = Path(root).resolve()
        self.env = env

    def _path(self, handle: str) -> Path:
        path = (self.root / handle).resolve()
        if path.parent != self.root or not path.is_dir():
            raise SandboxNotFound(f"Sandbox {handle} does not exist")
        return path

    def create(self, template: Optional[str] = None) -> str:
        handle = f"local-{uuid.uuid4().hex[:12]}"
        try:
            path = self.root / handle
            path.mkdir(parents=True, exist_ok=False)
            (path / ".forgebox-template").write_text(template or "", encoding="utf-8")
        except OSError as e:
            raise SandboxServiceError(f"Failed to create local sandbox: {e}") from e
        logger.info(f"[Sandbox] Created local sandbox {handle} (template={template})")
        return handle

    def write_files(self, handle: str, files: Dict[str, str]) -> None:
        base = self._path(handle)
        for rel_path, content in files.items():
            target = (base / rel_path).resolve()
            if base not in target.parents:
                raise ValueError(f"Refusing to write outside sandbox: {rel_path}")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")
            except OSError as e:
                raise SandboxServiceError(f"Failed to write {rel_path}: {e}") from e
        logger.debug(f"[Sandbox] Wrote {len(files)} file(s) to {handle}")

    def run_command(
        self,
        handle: str,
        command: str,
        timeout: float,
        on_output: Optional[OutputSink] = None,
    ) -> CommandResult:
        cwd = self._path(handle)
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                command,
                shell=True,
                cwd=cwd,
                env=self.env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise SandboxServiceError(f"Failed to start command in {handle}: {e}") from e

        captured = {"stdout": ([], [0]), "stderr": ([], [0])}
        readers = [
            threading.Thread(
                target=self._pump,
                args=(process.stdout, "stdout", captured["stdout"], on_output),
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(process.stderr, "stderr", captured["stderr"], on_output),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            exit_code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(f"[Sandbox] Command timed out after {timeout}s in {handle}: {command}")
            self._kill(process)
            exit_code = TIMEOUT_EXIT_CODE

        for reader in readers:
            reader.join(READER_JOIN_TIMEOUT)

        stderr = "".join(captured["stderr"][0])
        if timed_out:
            stderr += f"\n[TIMEOUT] Process exceeded {timeout}s timeout and was terminated.\n"

        return CommandResult(
            stdout="".join(captured["stdout"][0]),
            stderr=stderr,
            exit_code=exit_code,
            timed_out=timed_out,
            duration_seconds=time.monotonic() - started,
        )

    @staticmethod
    def _pump(stream: IO[str], name: str, sink: tuple, on_output: Optional[OutputSink]) -> None:
        buffer, size = sink
        for line in iter(stream.readline, ""):
            bounded_append(buffer, size, line)
            if on_output is not None:
                try:
                    on_output(name, line)
                except Exception as e:
                    logger.warning(f"[Sandbox] Output sink raised, continuing: {e}")
        stream.close()

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            process.kill()
        process.wait()

    def destroy(self, handle: str) -> None:
        path = self.root / handle
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
            logger.info(f"[Sandbox] Destroyed local sandbox {handle}")

