"""Sandbox session lifecycle: create/reuse, execute, stop, transfer.

Sessions are rows in ``sandbox_sessions``. One owner (project or fragment)
has at most one active session; the unique ``active_owner_id`` column makes
concurrent ``get_or_create`` calls for the same owner race on an INSERT
instead of both provisioning. Status only moves forward:

    PROVISIONING -> RUNNING -> STOPPED | FAILED
    PROVISIONING -> STOPPED | FAILED

Every upstream call goes through the circuit breaker; creation and command
execution are also admitted by the rate limiter. Creation is admitted last,
after the owner row is inserted and the breaker lets the call through.
Denials surface as ``TransientError`` so the caller can enqueue the work.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..circuit_breaker import CircuitBreaker
from ..exceptions import (
    ForgeboxError,
    InvalidSessionTransition,
    SandboxBusy,
    SandboxError,
    SandboxNotFound,
    SandboxTimeout,
    TransientError,
)
from ..models import SandboxSession, SessionStatus, utcnow
from ..rate_limiter import RateLimiter
from ..schemas import SandboxSessionResponse
from .base import OutputSink, SandboxService, ValidationReport

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SessionStatus.PROVISIONING: {SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED},
    SessionStatus.RUNNING: {SessionStatus.STOPPED, SessionStatus.FAILED},
    SessionStatus.STOPPED: set(),
    SessionStatus.FAILED: set(),
}

HEALTH_CHECK_COMMAND = "echo 'health_check'"
HEALTH_CHECK_TIMEOUT = 5.0

SessionRef = Union[str, SandboxSessionResponse]


def _session_id(session: SessionRef) -> str:
    return session if isinstance(session, str) else session.id


class SandboxLifecycleManager:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        service: SandboxService,
        limiter: RateLimiter,
        breaker: CircuitBreaker,
        telemetry=None,
        command_timeout: float = 120.0,
        create_timeout: float = 60.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.service = service
        self.limiter = limiter
        self.breaker = breaker
        self.telemetry = telemetry
        self.command_timeout = command_timeout
        self.create_timeout = create_timeout
        self.now = now

    def _emit(self, event: str, error_kind: Optional[str] = None, **attrs) -> None:
        if self.telemetry is not None:
            self.telemetry.emit("sandbox", event, error_kind=error_kind, **attrs)

    # -- lookups ------------------------------------------------------------

    def get(self, session: SessionRef) -> SandboxSessionResponse:
        db = self._session_factory()
        try:
            row = db.get(SandboxSession, _session_id(session))
            if row is None:
                raise SandboxNotFound(f"Sandbox session {_session_id(session)} not found")
            return SandboxSessionResponse.model_validate(row)
        finally:
            db.close()

    def find_active(self, owner_id: str) -> Optional[SandboxSessionResponse]:
        """The owner's RUNNING session, if any."""
        db = self._session_factory()
        try:
            row = (
                db.query(SandboxSession)
                .filter(
                    SandboxSession.active_owner_id == owner_id,
                    SandboxSession.status == SessionStatus.RUNNING,
                )
                .first()
            )
            return SandboxSessionResponse.model_validate(row) if row else None
        finally:
            db.close()

    # -- state changes ------------------------------------------------------

    def _transition(
        self,
        session_id: str,
        new_status: SessionStatus,
        reason: Optional[str] = None,
        handle: Optional[str] = None,
    ) -> None:
        """Move a session forward; raises InvalidSessionTransition otherwise."""
        allowed_from = [s for s, targets in ALLOWED_TRANSITIONS.items() if new_status in targets]
        values = {SandboxSession.status: new_status}
        if reason is not None:
            values[SandboxSession.status_reason] = reason
        if handle is not None:
            values[SandboxSession.handle] = handle
        if new_status == SessionStatus.RUNNING:
            values[SandboxSession.last_used_at] = self.now()
        else:
            values[SandboxSession.active_owner_id] = None
            values[SandboxSession.stopped_at] = self.now()

        db = self._session_factory()
        try:
            updated = (
                db.query(SandboxSession)
                .filter(SandboxSession.id == session_id, SandboxSession.status.in_(allowed_from))
                .update(values, synchronize_session=False)
            )
            db.commit()
            if updated == 1:
                return
            row = db.get(SandboxSession, session_id)
        finally:
            db.close()

        if row is None:
            raise SandboxNotFound(f"Sandbox session {session_id} not found")
        raise InvalidSessionTransition(
            f"Sandbox session {session_id} cannot move from {row.status.value} to {new_status.value}"
        )

    def touch(self, session: SessionRef) -> None:
        db = self._session_factory()
        try:
            db.query(SandboxSession).filter(SandboxSession.id == _session_id(session)).update(
                {SandboxSession.last_used_at: self.now()}, synchronize_session=False
            )
            db.commit()
        finally:
            db.close()

    def _expire_stuck_provisioning(self, owner_id: str) -> None:
        """Fail PROVISIONING rows left behind by a crashed creator."""
        cutoff = self.now() - timedelta(seconds=self.create_timeout * 2)
        db = self._session_factory()
        try:
            expired = (
                db.query(SandboxSession)
                .filter(
                    SandboxSession.active_owner_id == owner_id,
                    SandboxSession.status == SessionStatus.PROVISIONING,
                    SandboxSession.created_at < cutoff,
                )
                .update(
                    {
                        SandboxSession.status: SessionStatus.FAILED,
                        SandboxSession.status_reason: "provisioning abandoned",
                        SandboxSession.active_owner_id: None,
                        SandboxSession.stopped_at: self.now(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        finally:
            db.close()
        if expired:
            logger.warning(f"[Sandbox] Expired abandoned provisioning session for {owner_id}")

    def _insert_provisioning(self, owner_id: str, template: Optional[str]) -> str:
        session_id = str(uuid.uuid4())
        db = self._session_factory()
        try:
            now = self.now()
            db.add(
                SandboxSession(
                    id=session_id,
                    owner_id=owner_id,
                    active_owner_id=owner_id,
                    template=template,
                    status=SessionStatus.PROVISIONING,
                    created_at=now,
                    last_used_at=now,
                )
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            raise SandboxBusy(owner_id)
        finally:
            db.close()
        return session_id

    def _discard_provisioning(self, session_id: str) -> None:
        """Delete a PROVISIONING row whose creation was never admitted."""
        db = self._session_factory()
        try:
            db.query(SandboxSession).filter(
                SandboxSession.id == session_id, SandboxSession.status == SessionStatus.PROVISIONING
            ).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def get_or_create(self, owner_id: str, template: Optional[str] = None) -> SandboxSessionResponse:
        """Return the owner's running sandbox, provisioning one if needed.

        A creation slot is only consumed once the owner's PROVISIONING row is
        held and the breaker has admitted the call, so a SandboxBusy or a
        lost half-open race leaves the window untouched.

        Raises:
            TransientError: Creation is not admissible right now (rate limit,
                open circuit, or a concurrent creation for the same owner)
            SandboxServiceError: The sandbox service failed to create it
        """
        existing = self.find_active(owner_id)
        if existing is not None:
            self.touch(existing)
            return existing

        self._expire_stuck_provisioning(owner_id)
        self.breaker.ensure_available(operation_type="sandbox_create")

        session_id = self._insert_provisioning(owner_id, template)
        try:
            with self.breaker.guard(operation_type="sandbox_create"):
                self.limiter.require("sandbox_create")
                handle = self.service.create(template)
        except TransientError as e:
            self._discard_provisioning(session_id)
            logger.info(f"[Sandbox] Creation for {owner_id} not admitted: {e.message}")
            raise
        except Exception as e:
            self._transition(session_id, SessionStatus.FAILED, reason=str(e)[:1000])
            self._emit("create_failed", error_kind=getattr(e, "kind", type(e).__name__), owner_id=owner_id)
            raise

        self._transition(session_id, SessionStatus.RUNNING, handle=handle)
        logger.info(f"[Sandbox] Session {session_id} running for {owner_id} (handle={handle})")
        self._emit("created", owner_id=owner_id, session_id=session_id, template=template)
        return self.get(session_id)

    def _require_running(self, session: SessionRef) -> SandboxSessionResponse:
        current = self.get(session)
        if current.status != SessionStatus.RUNNING.value:
            raise SandboxError(f"Sandbox session {current.id} is {current.status}, not RUNNING")
        return current

    def _lost(self, session_id: str, error: SandboxNotFound) -> None:
        """The upstream no longer knows the sandbox; retire the session."""
        logger.warning(f"[Sandbox] Session {session_id} vanished upstream: {error.message}")
        self._transition(session_id, SessionStatus.FAILED, reason="sandbox vanished upstream")

    def run(
        self,
        session: SessionRef,
        command: str,
        timeout: Optional[float] = None,
        on_output: Optional[OutputSink] = None,
        raise_on_timeout: bool = False,
    ) -> ValidationReport:
        """Run a command, streaming output to ``on_output``.

        A command exceeding ``timeout`` is killed and reported as failed
        (``timed_out=True``) unless ``raise_on_timeout`` is set.
        """
        current = self._require_running(session)
        timeout = timeout or self.command_timeout

        self.limiter.require("sandbox_command")
        try:
            result = self.breaker.execute(
                self.service.run_command,
                current.handle,
                command,
                timeout,
                on_output,
                operation_type="sandbox_command",
            )
        except SandboxNotFound as e:
            self._lost(current.id, e)
            raise
        self.touch(current)

        report = ValidationReport.from_result(command, result)
        if report.timed_out:
            self._emit(
                "command_timeout",
                error_kind=SandboxTimeout.kind,
                session_id=current.id,
                command=command,
                timeout=timeout,
            )
            if raise_on_timeout:
                raise SandboxTimeout(command, timeout)
        return report

    def write_files(self, session: SessionRef, files: Dict[str, str]) -> None:
        current = self._require_running(session)
        try:
            self.breaker.execute(self.service.write_files, current.handle, files, operation_type="sandbox_command")
        except SandboxNotFound as e:
            self._lost(current.id, e)
            raise
        self.touch(current)
        logger.info(f"[Sandbox] Wrote {len(files)} file(s) to session {current.id}")

    def stop(self, session: SessionRef, reason: str = "stopped") -> None:
        """Destroy the sandbox (best effort) and mark the session STOPPED."""
        current = self.get(session)
        if current.status in (SessionStatus.STOPPED.value, SessionStatus.FAILED.value):
            return
        if current.handle:
            try:
                self.service.destroy(current.handle)
            except SandboxError as e:
                # The row is retired regardless; the upstream reaps idle sandboxes itself
                logger.warning(f"[Sandbox] Destroy of {current.handle} failed: {e}")
        self._transition(current.id, SessionStatus.STOPPED, reason=reason)
        self._emit("stopped", session_id=current.id, reason=reason)

    def stop_for_owner(self, owner_id: str) -> int:
        """Stop every active session of an owner (used on owner deletion)."""
        db = self._session_factory()
        try:
            ids = [
                row.id
                for row in db.query(SandboxSession.id)
                .filter(SandboxSession.active_owner_id == owner_id)
                .all()
            ]
        finally:
            db.close()
        for session_id in ids:
            self.stop(session_id, reason="owner deleted")
        return len(ids)

    def transfer(self, session: SessionRef, new_owner_id: str) -> SandboxSessionResponse:
        """Reassign a running session to another owner without touching the sandbox."""
        session_id = _session_id(session)
        db = self._session_factory()
        try:
            updated = (
                db.query(SandboxSession)
                .filter(SandboxSession.id == session_id, SandboxSession.status == SessionStatus.RUNNING)
                .update(
                    {
                        SandboxSession.owner_id: new_owner_id,
                        SandboxSession.active_owner_id: new_owner_id,
                        SandboxSession.last_used_at: self.now(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            raise SandboxError(f"{new_owner_id} already owns an active sandbox")
        finally:
            db.close()

        if updated != 1:
            current = self.get(session_id)
            raise InvalidSessionTransition(
                f"Sandbox session {session_id} is {current.status}; only RUNNING sessions can be transferred"
            )
        logger.info(f"[Sandbox] Session {session_id} transferred to {new_owner_id}")
        self._emit("transferred", session_id=session_id, new_owner_id=new_owner_id)
        return self.get(session_id)

    def health_check(self, session: SessionRef) -> bool:
        """Echo probe; False when the sandbox does not answer correctly."""
        try:
            current = self._require_running(session)
            result = self.breaker.execute(
                self.service.run_command,
                current.handle,
                HEALTH_CHECK_COMMAND,
                HEALTH_CHECK_TIMEOUT,
                None,
                operation_type="sandbox_command",
            )
        except ForgeboxError as e:
            logger.warning(f"[Sandbox] Health check failed for {_session_id(session)}: {e}")
            return False
        return result.exit_code == 0 and not result.timed_out and "health_check" in result.stdout
