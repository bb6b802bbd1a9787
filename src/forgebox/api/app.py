"""FastAPI app factory with lifespan, middleware, and exception handling.

This module provides:
- create_app(): Factory that creates the FastAPI app with proper wiring
- lifespan: config validation, DB init and the optional in-process sweep loop
- BackgroundTaskSupervisor: restarts the sweep loop if it crashes
- Exception handlers mapping the error taxonomy onto HTTP responses
"""

import asyncio
import logging
import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded as HttpRateLimitExceeded

from ..config import is_production, settings, validate_startup_config
from ..database import init_db
from ..exceptions import (
    ForgeboxError,
    JobNotFound,
    RunNotFound,
    SandboxNotFound,
    SandboxServiceError,
    TransientError,
)
from ..logging_config import correlation_id_var
from ..orchestrator import ForgeboxService
from ..version import __version__
from .deps import Authenticator, limiter

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter(
    "forgebox_http_requests_total",
    "Total HTTP requests processed by the API",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "forgebox_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

NOT_FOUND_ERRORS = (RunNotFound, JobNotFound, SandboxNotFound)


class BackgroundTaskSupervisor:
    """Supervisor for background tasks with automatic restart on failure.

    A crashing task is restarted with exponential backoff (2s, 4s, ... capped
    at 60s) until ``max_restarts`` is reached; cancellation propagates.
    """

    def __init__(self, max_restarts: int = 5, sleep: Callable = asyncio.sleep):
        self._restart_counts: dict = {}
        self._max_restarts = max_restarts
        self._sleep = sleep

    async def supervise(self, name: str, coro_factory: Callable) -> None:
        while self._restart_counts.get(name, 0) < self._max_restarts:
            try:
                logger.info(f"[TASK-SUPERVISOR] Starting task: {name}")
                await coro_factory()
                logger.info(f"[TASK-SUPERVISOR] Task completed normally: {name}")
                break

            except asyncio.CancelledError:
                logger.info(f"[TASK-SUPERVISOR] Task cancelled: {name}")
                raise

            except Exception:
                self._restart_counts[name] = self._restart_counts.get(name, 0) + 1
                attempt = self._restart_counts[name]
                logger.error(
                    f"[TASK-SUPERVISOR] Task failed (attempt {attempt}/{self._max_restarts}): {name}",
                    exc_info=True,
                )
                backoff_seconds = min(2**attempt, 60)
                logger.info(f"[TASK-SUPERVISOR] Restarting task {name} in {backoff_seconds}s...")
                await self._sleep(backoff_seconds)

        if self._restart_counts.get(name, 0) >= self._max_restarts:
            logger.critical(
                f"[TASK-SUPERVISOR] Task {name} exceeded max restarts ({self._max_restarts}). Giving up."
            )

    def get_status(self) -> dict:
        return dict(self._restart_counts)


async def sweep_loop(service: ForgeboxService, interval: float) -> None:
    """Drain the job queue every ``interval`` seconds (single-node deployments)."""
    while True:
        processed = await asyncio.to_thread(service.sweep)
        if processed:
            logger.info(f"[JobQueue] Background sweep processed {processed} job(s)")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config, create tables, and start the supervised sweep loop if enabled."""
    validate_startup_config()
    if is_production() and not settings.api_key and not os.getenv("FORGEBOX_API_KEY_FILE"):
        raise RuntimeError(
            "FATAL: FORGEBOX_ENV=production but FORGEBOX_API_KEY is not set. "
            "Set FORGEBOX_API_KEY or FORGEBOX_API_KEY_FILE, or use FORGEBOX_ENV=development."
        )

    if os.getenv("TESTING") != "1":
        init_db()
    else:
        logger.info("[STARTUP] Skipping database init in TESTING mode")

    supervisor = None
    sweep_task = None
    if settings.sweep_in_process:
        service = app.state.service
        if service is None:
            from ..orchestrator import build_service

            service = app.state.service = build_service(settings)
        supervisor = BackgroundTaskSupervisor(max_restarts=5)
        sweep_task = asyncio.create_task(
            supervisor.supervise("job_sweep", lambda: sweep_loop(service, settings.sweep_interval_seconds))
        )
        logger.info(f"[STARTUP] In-process sweep every {settings.sweep_interval_seconds}s")

    logger.info("[STARTUP] Application ready for traffic")
    yield

    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        logger.info(f"[SHUTDOWN] Task supervisor status: {supervisor.get_status()}")
    logger.info("[SHUTDOWN] Application shutdown complete")


async def correlation_id_middleware(request: Request, call_next):
    """Propagate X-Correlation-ID (generating one if absent) into logs and the response."""
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    correlation_id_var.set(correlation_id)
    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


async def metrics_middleware(request: Request, call_next):
    if request.url.path == "/metrics":
        return await call_next(request)

    endpoint = _normalize_endpoint(request.url.path)
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=str(response.status_code)).inc()
    REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(duration)
    return response


def _normalize_endpoint(path: str) -> str:
    """Replace UUIDs and numeric ids with ``{id}`` to bound metric cardinality."""
    path = re.sub(
        r"[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}",
        "{id}",
        path,
        flags=re.IGNORECASE,
    )
    return re.sub(r"/\d+(?=/|$)", "/{id}", path)


async def transient_error_handler(request: Request, exc: TransientError):
    headers = {"Retry-After": str(max(1, int(exc.retry_after)))}
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": exc.message, "error": exc.to_dict(), "retry_after": round(exc.retry_after, 3)},
        headers=headers,
    )


async def forgebox_error_handler(request: Request, exc: ForgeboxError):
    if isinstance(exc, NOT_FOUND_ERRORS):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, SandboxServiceError):
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": exc.to_dict()})


async def global_exception_handler(request: Request, exc: Exception):
    """Opaque 500 with an error_id for log correlation; never a traceback."""
    error_id = str(uuid.uuid4())[:8]
    logger.error(f"Unhandled exception (error_id={error_id}): {exc}", exc_info=True)

    content = {
        "detail": "Internal server error",
        "error_id": error_id,
        "message": "An unexpected error occurred. Reference this error_id when reporting issues.",
    }
    if not is_production():
        content["error_type"] = type(exc).__name__
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def create_app(
    service: Optional[ForgeboxService] = None,
    authenticator: Optional[Authenticator] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Pre-built service (tests); built from settings on first request otherwise
        authenticator: Replaces the default X-API-Key authenticator
    """
    app = FastAPI(
        title="Forgebox",
        description="Admission control, sandbox lifecycle and agent pipeline for app generation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.authenticator = authenticator

    @app.middleware("http")
    async def add_correlation_id_middleware(request: Request, call_next):
        return await correlation_id_middleware(request, call_next)

    @app.middleware("http")
    async def add_metrics_middleware(request: Request, call_next):
        return await metrics_middleware(request, call_next)

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.state.limiter = limiter
    app.add_exception_handler(HttpRateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(TransientError, transient_error_handler)
    app.add_exception_handler(ForgeboxError, forgebox_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    from .routes import health_router, jobs_router, runs_router, sandboxes_router

    app.include_router(runs_router)
    app.include_router(sandboxes_router)
    app.include_router(jobs_router)
    app.include_router(health_router)

    return app

