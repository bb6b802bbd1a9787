from fastapi import APIRouter, Depends, Request, Response, status

from ...orchestrator import ForgeboxService
from ...schemas import SandboxRequest, SandboxRequestResponse
from ..deps import Principal, get_service, limiter, require_principal

router = APIRouter(prefix="/sandboxes", tags=["sandboxes"])


@router.post("", response_model=SandboxRequestResponse)
@limiter.limit("60/minute")
def request_sandbox(
    request: Request,
    response: Response,
    body: SandboxRequest,
    service: ForgeboxService = Depends(get_service),
    principal: Principal = Depends(require_principal),
):
    """Return the owner's running sandbox, or 202 with the job id it was queued under."""
    result = service.request_sandbox(body.owner_id, framework=body.framework)
    if result.status == "pending":
        response.status_code = status.HTTP_202_ACCEPTED
        if result.retry_after:
            response.headers["Retry-After"] = str(max(1, int(result.retry_after)))
    return result
