"""Agent run endpoints.

POST /runs creates the run and answers 202 immediately; the pipeline runs as
a background task. Clients poll GET /runs/{run_id}.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status

from ...orchestrator import ForgeboxService
from ...schemas import GenerationAccepted, GenerationRequest, RunStatusResponse
from ..deps import Principal, get_service, limiter, require_principal

router = APIRouter(prefix="/runs", tags=["runs"])


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=GenerationAccepted)
@limiter.limit("30/minute")
def request_generation(
    request: Request,
    body: GenerationRequest,
    background_tasks: BackgroundTasks,
    service: ForgeboxService = Depends(get_service),
    principal: Principal = Depends(require_principal),
):
    run_id = service.create_run(body.project_id, body.user_request, fragment_id=body.fragment_id)
    background_tasks.add_task(service.execute_run, run_id)
    run = service.get_run_status(run_id)
    return GenerationAccepted(run_id=run_id, stage=run.stage, job_id=run.job_id)


@router.get("/{run_id}", response_model=RunStatusResponse)
def get_run_status(
    run_id: str,
    service: ForgeboxService = Depends(get_service),
    principal: Principal = Depends(require_principal),
):
    return service.get_run_status(run_id)
