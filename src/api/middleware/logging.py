"""Request logging middleware with request id propagation."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"

# Health check traffic is logged at debug level
QUIET_PATHS = frozenset({"/health", "/ready"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        path = request.url.path

        started = time.perf_counter()
        # Everything logged while handling the request carries its id
        with structlog.contextvars.bound_contextvars(request_id=request_id, path=path):
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000

            if path in QUIET_PATHS:
                log = logger.debug
            elif response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            else:
                log = logger.info
            log(
                "http_request",
                method=request.method,
                status_code=response.status_code,
                duration_ms=round(elapsed_ms, 2),
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
