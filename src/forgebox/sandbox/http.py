"""Sandbox service client for a remote REST sandbox API.

Endpoints used:
    POST   /sandboxes                      {"template"} -> {"sandbox_id"}
    POST   /sandboxes/{id}/commands        {"cmd", "timeout"} -> NDJSON event stream
    PUT    /sandboxes/{id}/files           {"files": [{"path", "content"}]}
    DELETE /sandboxes/{id}

Command output is streamed as newline-delimited JSON events
(``{"type": "stdout"|"stderr", "data": ...}``) ending with
``{"type": "exit", "exit_code": N}``, so the caller's sink sees output as it
is produced. The wall-clock timeout is enforced on this side as well.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from ..exceptions import SandboxError, SandboxNotFound, SandboxServiceError
from .base import TIMEOUT_EXIT_CODE, CommandResult, OutputSink, bounded_append

logger = logging.getLogger(__name__)

# Extra time granted to the server to report a command timeout itself
TIMEOUT_GRACE_SECONDS = 10.0
CONNECT_TIMEOUT = 10.0


class HttpSandboxService:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        create_timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.create_timeout = create_timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def _check(self, response: requests.Response, action: str) -> None:
        if response.status_code == 404:
            raise SandboxNotFound(f"{action}: sandbox not found")
        if response.status_code == 429 or response.status_code >= 500:
            raise SandboxServiceError(
                f"{action} failed with HTTP {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise SandboxError(f"{action} rejected with HTTP {response.status_code}: {response.text[:500]}")

    def _request(self, method: str, path: str, action: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, f"{self.base_url}{path}", **kwargs)
        except requests.exceptions.RequestException as e:
            raise SandboxServiceError(f"{action} failed: {e}") from e
        self._check(response, action)
        return response

    def create(self, template: Optional[str] = None) -> str:
        response = self._request(
            "POST",
            "/sandboxes",
            "Create sandbox",
            json={"template": template},
            timeout=(CONNECT_TIMEOUT, self.create_timeout),
        )
        try:
            handle = response.json()["sandbox_id"]
        except (ValueError, KeyError) as e:
            raise SandboxServiceError(f"Create sandbox returned an unexpected body: {e}") from e
        logger.info(f"[Sandbox] Created remote sandbox {handle} (template={template})")
        return handle

    def write_files(self, handle: str, files: Dict[str, str]) -> None:
        payload = {"files": [{"path": path, "content": content} for path, content in files.items()]}
        self._request(
            "PUT",
            f"/sandboxes/{handle}/files",
            "Write files",
            json=payload,
            timeout=(CONNECT_TIMEOUT, 120),
        )

    def run_command(
        self,
        handle: str,
        command: str,
        timeout: float,
        on_output: Optional[OutputSink] = None,
    ) -> CommandResult:
        started = time.monotonic()
        deadline = started + timeout
        response = self._request(
            "POST",
            f"/sandboxes/{handle}/commands",
            "Run command",
            json={"cmd": command, "timeout": timeout},
            stream=True,
            timeout=(CONNECT_TIMEOUT, timeout + TIMEOUT_GRACE_SECONDS),
        )

        stdout: List[str] = []
        stderr: List[str] = []
        sizes = {"stdout": [0], "stderr": [0]}
        buffers = {"stdout": stdout, "stderr": stderr}
        exit_code: Optional[int] = None
        timed_out = False

        try:
            for line in response.iter_lines(decode_unicode=True):
                if time.monotonic() > deadline:
                    timed_out = True
                    break
                if not line:
                    continue
                event = self._parse_event(line)
                kind = event.get("type")
                if kind in buffers:
                    data = event.get("data", "")
                    bounded_append(buffers[kind], sizes[kind], data)
                    if on_output is not None:
                        try:
                            on_output(kind, data)
                        except Exception as e:
                            logger.warning(f"[Sandbox] Output sink raised, continuing: {e}")
                elif kind == "exit":
                    exit_code = int(event.get("exit_code", 1))
                    timed_out = bool(event.get("timed_out", False))
                    break
        except requests.exceptions.ReadTimeout:
            timed_out = True
        except requests.exceptions.RequestException as e:
            raise SandboxServiceError(f"Command stream for {handle} broke: {e}") from e
        finally:
            response.close()

        if exit_code is None and not timed_out:
            raise SandboxServiceError(f"Command stream for {handle} ended without an exit event")
        if timed_out:
            logger.warning(f"[Sandbox] Command timed out after {timeout}s in {handle}: {command}")
            exit_code = TIMEOUT_EXIT_CODE
            stderr.append(f"\n[TIMEOUT] Process exceeded {timeout}s timeout and was terminated.\n")

        return CommandResult(
            stdout="".join(stdout),
            stderr="".join(stderr),
            exit_code=exit_code,
            timed_out=timed_out,
            duration_seconds=time.monotonic() - started,
        )

    @staticmethod
    def _parse_event(line: str) -> Dict[str, Any]:
        try:
            event = json.loads(line)
        except json.JSONDecodeError as e:
            raise SandboxServiceError(f"Malformed command event: {line[:200]}") from e
        if not isinstance(event, dict):
            raise SandboxServiceError(f"Malformed command event: {line[:200]}")
        return event

    def destroy(self, handle: str) -> None:
        try:
            self._request("DELETE", f"/sandboxes/{handle}", "Destroy sandbox", timeout=(CONNECT_TIMEOUT, 30))
        except SandboxNotFound:
            logger.info(f"[Sandbox] Remote sandbox {handle} already gone")
            return
        logger.info(f"[Sandbox] Destroyed remote sandbox {handle}")
