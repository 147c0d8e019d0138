"""Internal header guard.

The ingress is only reachable from the BFF. In staging/prod every request
outside PUBLIC_PATHS must carry X-Relay-Internal with the shared secret.
"""

import hmac

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from relay.errors import ApiErrorCode
from relay.logging import get_logger
from relay.responses import error_response

logger = get_logger(__name__)

INTERNAL_HEADER = "x-relay-internal"

PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


class InternalHeaderMiddleware(BaseHTTPMiddleware):
    """Reject requests that lack the internal secret header."""

    def __init__(self, app: ASGIApp, internal_secret: str | None):
        super().__init__(app)
        self.internal_secret = internal_secret

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        header_value = request.headers.get(INTERNAL_HEADER)

        if header_value is None:
            logger.warning("internal_header_rejected", reason="missing")
            return JSONResponse(
                status_code=403,
                content=error_response(
                    ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required"
                ),
            )

        if not self.internal_secret:
            logger.error("internal_secret_not_configured")
            return JSONResponse(
                status_code=500,
                content=error_response(ApiErrorCode.E_INTERNAL, "Internal server error"),
            )

        # Constant-time comparison
        if not hmac.compare_digest(header_value.encode(), self.internal_secret.encode()):
            logger.warning("internal_header_rejected", reason="mismatch")
            return JSONResponse(
                status_code=403,
                content=error_response(
                    ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required"
                ),
            )

        return await call_next(request)
