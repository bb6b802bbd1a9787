"""Job queue endpoints: the sweep trigger for an external scheduler, and job lookup."""

from fastapi import APIRouter, Depends

from ...orchestrator import ForgeboxService
from ...schemas import JobResponse, SweepResponse
from ..deps import Principal, get_service, require_principal

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/sweep", response_model=SweepResponse)
def sweep(
    service: ForgeboxService = Depends(get_service),
    principal: Principal = Depends(require_principal),
):
    processed = service.sweep()
    return SweepResponse(
        processed=processed,
        breaker_state=service.breaker.state().state.value,
        queue_depth=service.queue.depth_by_status(),
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: int,
    service: ForgeboxService = Depends(get_service),
    principal: Principal = Depends(require_principal),
):
    return service.queue.get(job_id)
