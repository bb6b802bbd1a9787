"""API dependencies (auth, service access, HTTP rate limiting).

This module provides:
- Authenticator: the single authentication capability (X-API-Key)
- require_principal: dependency guarding every non-public route
- get_service: the process-wide ForgeboxService
- limiter: slowapi limiter keyed by client IP (HTTP abuse protection, separate
  from the upstream admission limiter)
"""

import hmac
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..config import get_api_key, is_production, settings
from ..orchestrator import ForgeboxService, build_service

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


@dataclass(frozen=True)
class Principal:
    name: str
    authenticated: bool = True


ANONYMOUS = Principal("anonymous", authenticated=False)


class Authenticator:
    """verify(request) -> Principal, or None when the caller is unauthenticated.

    - A configured key must match X-API-Key exactly.
    - Without a configured key, development mode lets callers through as
      ``anonymous``; production refuses everyone.
    """

    def __init__(
        self,
        expected_key: Callable[[], Optional[str]] = get_api_key,
        production: Callable[[], bool] = is_production,
    ):
        self._expected_key = expected_key
        self._production = production

    def verify(self, request: Request) -> Optional[Principal]:
        expected = self._expected_key()
        if not expected:
            if self._production():
                logger.error("[Auth] FORGEBOX_API_KEY is not configured in production; refusing request")
                return None
            return ANONYMOUS

        presented = request.headers.get(API_KEY_HEADER)
        if presented and hmac.compare_digest(presented.encode(), expected.encode()):
            return Principal("api-key")
        return None


def get_authenticator(request: Request) -> Authenticator:
    authenticator = getattr(request.app.state, "authenticator", None)
    return authenticator or Authenticator()


def require_principal(
    request: Request, authenticator: Authenticator = Depends(get_authenticator)
) -> Principal:
    principal = authenticator.verify(request)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Invalid or missing API key. Set {API_KEY_HEADER} header.",
        )
    return principal


_service_lock = threading.Lock()


def get_service(request: Request) -> ForgeboxService:
    """The app's service, built from settings on first use."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        with _service_lock:
            service = getattr(request.app.state, "service", None)
            if service is None:
                service = build_service(settings)
                request.app.state.service = service
    return service


# Rate limiter instance - used by routes via app.state.limiter
limiter = Limiter(key_func=get_remote_address)
