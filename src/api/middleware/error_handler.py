"""Map domain exceptions onto HTTP error responses."""

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from src.domains.risk.errors import (
    CaseNotFoundError,
    InvalidCaseTransitionError,
    StateStoreUnavailableError,
)

logger = structlog.get_logger()

# First match wins, so subclasses go before their bases
ERROR_STATUS: list[tuple[type[Exception], int, str]] = [
    (InvalidCaseTransitionError, 409, "conflict"),
    (CaseNotFoundError, 404, "not_found"),
    (StateStoreUnavailableError, 503, "service_unavailable"),
    (ValueError, 400, "bad_request"),
    (PermissionError, 403, "forbidden"),
    (LookupError, 404, "not_found"),
]


def _classify(exc: Exception) -> tuple[int, str]:
    for exc_type, status_code, error in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code, error
    return 500, "internal_server_error"


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    status_code, error = _classify(exc)

    if status_code == 500:
        logger.exception("unhandled_exception", request_id=request_id, error=str(exc))
        message = "An unexpected error occurred"
    else:
        logger.warning(error, request_id=request_id, error=str(exc), path=request.url.path)
        message = str(exc)

    content = {"error": error, "message": message, "request_id": request_id}
    # Validation errors name the offending field or rule
    for attr in ("field", "rule_id"):
        if value := getattr(exc, attr, None):
            content[attr] = value
    return JSONResponse(status_code=status_code, content=content)
