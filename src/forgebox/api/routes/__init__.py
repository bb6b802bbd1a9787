from .health import router as health_router
from .jobs import router as jobs_router
from .runs import router as runs_router
from .sandboxes import router as sandboxes_router

__all__ = ["health_router", "jobs_router", "runs_router", "sandboxes_router"]
