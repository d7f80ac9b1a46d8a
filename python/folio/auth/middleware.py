"""Admin authentication middleware for FastAPI.

Every operation in this service is an editor/admin operation. Requests must
carry the shared admin secret in the X-Folio-Admin header; session and user
handling live in the site frontend that calls this API.

Enforcement:
- Public paths (health, docs) are always allowed
- When no secret is configured (local/test only, validated at startup),
  every request is admitted
- Otherwise the header is compared in constant time
"""

import hmac

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp

from folio.errors import ApiErrorCode
from folio.logging import get_logger
from folio.responses import error_response

logger = get_logger(__name__)

ADMIN_HEADER = "x-folio-admin"

# Paths that don't require authentication
PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


class AdminAuthMiddleware(BaseHTTPMiddleware):
    """Shared-secret admin guard.

    Args:
        app: The ASGI application.
        admin_secret: Expected X-Folio-Admin value. None admits all requests.
    """

    def __init__(self, app: ASGIApp, admin_secret: str | None = None):
        super().__init__(app)
        self.admin_secret = admin_secret

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS or not self.admin_secret:
            return await call_next(request)

        header_value = request.headers.get(ADMIN_HEADER)
        if header_value is None:
            logger.warning("auth_failure", reason="admin_header_missing", path=request.url.path)
            return self._unauthenticated()

        if not hmac.compare_digest(header_value.encode(), self.admin_secret.encode()):
            logger.warning("auth_failure", reason="admin_header_mismatch", path=request.url.path)
            return self._unauthenticated()

        return await call_next(request)

    @staticmethod
    def _unauthenticated() -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content=error_response(ApiErrorCode.E_UNAUTHENTICATED, "Admin access required"),
        )
