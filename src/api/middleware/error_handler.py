"""Global exception handling."""

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from src.domains.experimentation.errors import (
    AssignmentConflictError,
    NumericalInstabilityError,
    TransientCollaboratorError,
)

logger = structlog.get_logger()


def _error(status_code: int, error: str, message: str, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "request_id": request_id},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")

    if isinstance(exc, AssignmentConflictError):
        logger.warning("assignment_conflict", request_id=request_id, error=str(exc))
        return _error(409, "conflict", str(exc), request_id)

    if isinstance(exc, TransientCollaboratorError):
        logger.warning("service_unavailable", request_id=request_id, error=str(exc))
        return _error(503, "service_unavailable", str(exc), request_id)

    if isinstance(exc, NumericalInstabilityError):
        logger.error("numerical_instability", request_id=request_id, error=str(exc))
        return _error(500, "numerical_instability", str(exc), request_id)

    # ConfigurationError and InputError are ValueErrors
    if isinstance(exc, ValueError):
        logger.warning("bad_request", request_id=request_id, error=str(exc))
        return _error(400, "bad_request", str(exc), request_id)

    if isinstance(exc, (KeyError, LookupError)):
        logger.warning("not_found", request_id=request_id, error=str(exc))
        return _error(404, "not_found", str(exc), request_id)

    logger.exception("unhandled_exception", request_id=request_id, error=str(exc))
    return _error(500, "internal_server_error", "An unexpected error occurred", request_id)
