"""Operational health view.

Always answers 200; ``status`` is ``degraded`` while the breaker is not
CLOSED so dashboards can alert without the probe itself failing.
"""

from fastapi import APIRouter, Depends

from ...orchestrator import ForgeboxService
from ...schemas import HealthResponse
from ..deps import get_service

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health(service: ForgeboxService = Depends(get_service)):
    return service.get_health()
